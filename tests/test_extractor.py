from __future__ import annotations

import json
from collections.abc import Callable

import allure
import pytest

from tdd_conductor.orchestrator.extractor import (
    OutputExtractor,
    PayloadShape,
    extract_payload,
    scan_balanced,
)

pytestmark = [
    allure.epic("Agent Output"),
    allure.feature("Structured Payload Recovery"),
]


def test_clean_json_fence() -> None:
    text = '```json\n{"all_tests_passed": true, "tests_run": 3}\n```'

    found = OutputExtractor(PayloadShape.OBJECT).extract(text)

    assert found is not None
    assert found.strategy == "labelled_fence"
    assert found.value == {"all_tests_passed": True, "tests_run": 3}


def test_prose_around_fence() -> None:
    text = (
        "I updated calculator.py and ran pytest.\n"
        "Everything looks good now.\n\n"
        "```json\n"
        '{"phase": "green", "all_tests_passed": true, "notes": "added {edge} case"}\n'
        "```\n"
        "Let me know if you need anything else."
    )

    assert extract_payload(text, PayloadShape.OBJECT) == {
        "phase": "green",
        "all_tests_passed": True,
        "notes": "added {edge} case",
    }


def test_unlabelled_fence_is_accepted_when_shape_matches() -> None:
    text = 'Results:\n```\n[{"name": "adds", "code": "assert add(1, 2) == 3"}]\n```'

    found = OutputExtractor(PayloadShape.ARRAY).extract(text)

    assert found is not None
    assert found.strategy == "shaped_fence"
    assert found.value == [{"name": "adds", "code": "assert add(1, 2) == 3"}]


def test_marker_without_fence() -> None:
    text = (
        "Ran the suite: 4 of {n} were flaky before.\n"
        'Here is the result: {"summary": {"total": 4, "passed": 4, "failed": 0, "skipped": 0}}\n'
        "Done."
    )

    found = OutputExtractor(PayloadShape.OBJECT).extract(text)

    assert found is not None
    assert found.strategy == "marker_scan"
    assert found.value["summary"]["passed"] == 4


def test_first_balanced_object_in_plain_prose() -> None:
    text = 'Status update {"all_tests_passed": false, "failing": ["test_div_zero"]} end'

    found = OutputExtractor(PayloadShape.OBJECT).extract(text)

    assert found is not None
    assert found.strategy == "balanced_scan"
    assert found.value["all_tests_passed"] is False


def test_exhaustive_scan_prefers_longest_array() -> None:
    text = (
        "Notes [see docs] and {broken, object}. Tests: "
        '[{"name": "a"}] then the full list [{"name": "a"}, {"name": "b"}, {"name": "c"}]'
    )

    found = OutputExtractor(PayloadShape.ANY).extract(text)

    assert found is not None
    assert found.strategy == "exhaustive_scan"
    assert [item["name"] for item in found.value] == ["a", "b", "c"]


def test_shape_mismatch_is_skipped() -> None:
    text = '```json\n[1, 2, 3]\n```\nand then {"ok": true}'

    assert extract_payload(text, PayloadShape.OBJECT) == {"ok": True}
    assert extract_payload(text, PayloadShape.ARRAY) == [1, 2, 3]


@pytest.mark.parametrize(
    "text",
    [
        None,
        "",
        "   \n",
        "All tests pass, no JSON here.",
        '```json\n{"unterminated": true\n```',
        "{not: json} [also, not]",
        '{"a": 1]',
        '```json\n{"summary": {"total": 4, "passed": 4}, "tests": [{"name": "a"',
        'Final list: [{"name": "a"}, {"name": "b"',
    ],
)
def test_malformed_or_missing_payload_returns_none(text: str | None) -> None:
    assert OutputExtractor(PayloadShape.ANY).extract(text) is None


def test_scan_balanced_ignores_delimiters_inside_strings() -> None:
    text = 'x {"code": "if (a) { return \\"}\\" }", "n": [1, {"k": "]"}]} tail'
    start = text.index("{")

    candidate = scan_balanced(text, start)

    assert candidate == text[start : text.rindex("}") + 1]


def test_scan_balanced_rejects_mismatch_and_unterminated() -> None:
    assert scan_balanced("{]", 0) is None
    assert scan_balanced('{"a": [1, 2}', 0) is None
    assert scan_balanced('{"a": 1', 0) is None
    assert scan_balanced("abc", 0) is None


def test_exhaustive_scan_keeps_complete_spans_before_truncated_one() -> None:
    text = 'Notes {draft} then {"first": [1, 2]} and cut off {"second": {"ok": true}, "more": ['

    found = OutputExtractor(PayloadShape.ANY).extract(text)

    assert found is not None
    assert found.strategy == "exhaustive_scan"
    assert found.value == {"first": [1, 2]}


def test_find_all_lists_payloads_in_text_order_skipping_code_fences() -> None:
    text = (
        "Fixtures:\n"
        '```python\nusers = [{"name": "Alice"}]\n```\n'
        'Config:\n```json\n{"name": "calc"}\n```\n'
        'Result: {"all_tests_passed": true} and a list [1, 2]\n'
        '```\n{"unlabelled": true}\n```'
    )

    found = OutputExtractor(PayloadShape.ANY).find_all(text)

    assert [payload.value for payload in found] == [
        {"name": "calc"},
        {"all_tests_passed": True},
        [1, 2],
        {"unlabelled": True},
    ]
    assert [payload.strategy for payload in found] == [
        "labelled_fence",
        "balanced_scan",
        "balanced_scan",
        "shaped_fence",
    ]
    assert found == sorted(found, key=lambda payload: payload.position)


def test_find_all_only_reports_top_level_objects() -> None:
    text = '{"outer": {"inner": 1}} and {"other": 2}'

    found = OutputExtractor(PayloadShape.OBJECT).find_all(text)

    assert [payload.value for payload in found] == [{"outer": {"inner": 1}}, {"other": 2}]
    assert OutputExtractor(PayloadShape.OBJECT).find_all("  ") == []


_ROUND_TRIP_PAYLOADS = [
    {"phase": "green", "all_tests_passed": True, "tests_run": 3},
    [{"name": "test_add", "code": "assert add(1, 2) == 3"}, {"name": "test_sub", "code": ""}],
    {"summary": {"total": 2}, "tests": [[1, [2, []]], {"nested": {"deep": [{}]}}]},
    {"code": 'if (x) { return "}"; } // ] [', "quote": 'she said "hi"', "slash": "a\\b"},
    ["{not a delimiter}", "[nor this]", {"n": None, "f": -1.5}],
    [],
    {},
]


def _clean_fence(body: str) -> str:
    return f"```json\n{body}\n```"


def _prose_and_fence(body: str) -> str:
    return (
        "I updated calculator.py and reran the suite {twice}.\n\n"
        f"```json\n{body}\n```\n"
        "Let me know if anything else is needed."
    )


def _marker_without_fence(body: str) -> str:
    return f"Ran everything [quickly].\nHere is the result: {body}\nDone."


@pytest.mark.parametrize("wrap", [_clean_fence, _prose_and_fence, _marker_without_fence])
@pytest.mark.parametrize("payload", _ROUND_TRIP_PAYLOADS)
def test_wrapped_payload_round_trips(payload: object, wrap: Callable[[str], str]) -> None:
    text = wrap(json.dumps(payload))

    assert extract_payload(text, PayloadShape.ANY) == payload
