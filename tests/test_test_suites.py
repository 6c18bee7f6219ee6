from __future__ import annotations

import json

import allure
import pytest

from tdd_conductor.orchestrator.extractor import ExtractionError
from tdd_conductor.orchestrator.models import TestCounts, TestType
from tdd_conductor.orchestrator.test_suites import (
    detect_test_type,
    extract_test_list,
    parse_qa_report,
    parse_test_suites,
)

pytestmark = [
    allure.epic("Coding Sessions"),
    allure.feature("Test Suites"),
]

_GENERATED = """\
Unit tests for the calculator:

```python
def test_add():
    assert add(1, 2) == 3
```

More unit coverage:

```python
def test_sub():
    assert sub(3, 1) == 2
```

Integration tests hitting the REST API endpoint:

```python
def test_post_sum(client):
    assert client.post("/sum", json=[1, 2]).json() == 3
```

And an end-to-end check with Playwright:

```typescript
test("sum page", async ({ page }) => { await page.goto("/"); });
```

```json
{"tests": [{"name": "test_add", "code": "assert add(1, 2) == 3"}, {"name": "test_sub"}]}
```
"""


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("uses cypress to click through", TestType.E2E),
        ("End-to-end flow", TestType.E2E),
        ("calls the api", TestType.INTEGRATION),
        ("integration with the database", TestType.INTEGRATION),
        ("def test_add(): assert add(1, 2) == 3", TestType.UNIT),
    ],
)
def test_detect_test_type(text: str, expected: TestType) -> None:
    assert detect_test_type(text) == expected


def test_parse_test_suites_groups_blocks_by_type() -> None:
    suites = parse_test_suites(_GENERATED, "backend")

    by_name = {suite.name: suite for suite in suites}
    assert sorted(by_name) == ["e2e_backend", "integration_backend", "unit_backend"]
    assert by_name["unit_backend"].test_type == TestType.UNIT
    assert "def test_add" in by_name["unit_backend"].test_code
    assert "def test_sub" in by_name["unit_backend"].test_code
    assert "test_post_sum" in by_name["integration_backend"].test_code
    assert "page.goto" in by_name["e2e_backend"].test_code
    assert all('"tests"' not in suite.test_code for suite in suites)


def test_parse_test_suites_without_code_blocks() -> None:
    assert parse_test_suites("I could not write tests, sorry.", "frontend") == []


def test_extract_test_list_from_object_or_array() -> None:
    assert extract_test_list(_GENERATED) == [
        {"name": "test_add", "code": "assert add(1, 2) == 3"},
        {"name": "test_sub", "code": ""},
    ]
    array_output = "```json\n" + json.dumps([{"name": "t1", "code": "c1"}]) + "\n```"
    assert extract_test_list(array_output) == [{"name": "t1", "code": "c1"}]
    prose_output = 'Implement in this order: {"tests": [{"name": "t2"}]}'
    assert extract_test_list(prose_output) == [{"name": "t2", "code": ""}]


@pytest.mark.parametrize(
    "output",
    [
        "no payload",
        '```json\n{"summary": {}}\n```',
        '```json\n[{"code": "x"}]\n```',
        '```python\nusers = [{"name": "Alice", "age": 30}]\n```',
        '```\n[{"name": "unlabelled"}]\n```',
        'Seed rows: [{"name": "Alice"}]',
    ],
)
def test_extract_test_list_ignores_outputs_without_a_test_list(output: str) -> None:
    assert extract_test_list(output) is None


def test_parse_qa_report_with_summary_and_typed_tests() -> None:
    payload = {
        "summary": {"total": 3, "passed": 2, "failed": 1, "skipped": 0},
        "tests": [
            {"name": "a", "type": "unit", "status": "passed"},
            {"name": "b", "type": "unit", "status": "failed"},
            {"name": "c", "type": "e2e", "status": "passed"},
        ],
    }

    report = parse_qa_report(f"QA done.\n```json\n{json.dumps(payload)}\n```")

    assert report.summary == TestCounts(total=3, passed=2, failed=1, skipped=0)
    assert report.counts_for(TestType.UNIT) == TestCounts(total=2, passed=1, failed=1)
    assert report.counts_for(TestType.E2E) == TestCounts(total=1, passed=1)
    assert report.counts_for(TestType.INTEGRATION) == TestCounts()


def test_parse_qa_report_derives_missing_summary() -> None:
    payload = {"tests": [{"name": "a", "status": "passed"}, {"name": "b", "status": "skipped"}]}

    report = parse_qa_report(json.dumps(payload))

    assert report.summary == TestCounts(total=2, passed=1, failed=0, skipped=1)
    assert report.by_type == {}
    assert report.counts_for(TestType.UNIT) == report.summary


@pytest.mark.parametrize(
    "output",
    ["All green!", '```json\n{"status": "ok"}\n```', "```json\n[1, 2]\n```"],
)
def test_parse_qa_report_requires_structured_payload(output: str) -> None:
    with pytest.raises(ExtractionError):
        parse_qa_report(output)
