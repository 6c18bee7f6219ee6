from __future__ import annotations

import allure

from tdd_conductor.orchestrator.extractor import PayloadShape, extract_payload
from tdd_conductor.orchestrator.sanitization import sanitize_preview, strip_terminal_noise

pytestmark = [
    allure.epic("Agent Output"),
    allure.feature("Sanitization"),
]


def test_strip_terminal_noise_removes_colors_and_control_chars() -> None:
    raw = "\x1b[32mPASSED\x1b[0m test_add\r\n\x07done\x1b]0;title\x07"

    assert strip_terminal_noise(raw) == "PASSED test_add\ndone"


def test_colored_json_fence_is_still_extracted() -> None:
    raw = '\x1b[1m```json\x1b[0m\n{"all_tests_passed": \x1b[33mtrue\x1b[0m}\n```'

    assert extract_payload(raw, PayloadShape.OBJECT) == {"all_tests_passed": True}


def test_preview_redacts_credentials() -> None:
    raw = (
        "Authorization: Bearer abcdefghijklmnop\n"
        "ANTHROPIC_API_KEY=sk-ant-api03-secretvalue\n"
        "cursor-agent --api-key key_1234567890 --print\n"
        "git author dev@example.com"
    )

    preview = sanitize_preview(raw)

    assert "abcdefghijklmnop" not in preview
    assert "secretvalue" not in preview
    assert "key_1234567890" not in preview
    assert "ANTHROPIC_API_KEY=[redacted]" in preview
    assert "--api-key [redacted]" in preview
    assert "dev@example.com" not in preview


def test_preview_keeps_tail_of_long_output() -> None:
    raw = "x" * 50 + "Error: permission denied"

    preview = sanitize_preview(raw, max_chars=24)

    assert preview == "Error: permission denied"
    assert sanitize_preview("  \n\x1b[0m ") == ""
