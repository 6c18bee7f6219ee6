"""Scrubbing of agent output before it lands in job events and logs."""

from __future__ import annotations

import re

_MAX_PREVIEW_CHARS = 2_000

_ANSI_ESCAPE = re.compile(r"\x1b(?:\[[0-9;?]*[ -/]*[@-~]|\][^\x07\x1b]*(?:\x07|\x1b\\)|[@-Z\\-_])")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\b(authorization:\s*bearer|bearer)\s+[a-z0-9._\-]{8,}"), r"\1 [redacted]"),
    (re.compile(r"\b(sk-(?:ant-)?[A-Za-z0-9_\-]{8,})"), "[redacted]"),
    (re.compile(r"\b(gh[pousr]_[A-Za-z0-9]{20,})\b"), "[redacted]"),
    (
        re.compile(
            r"(?i)\b([a-z0-9_]*(?:api_key|token|secret|password))\s*[:=]\s*['\"]?[^'\"\s]+['\"]?",
        ),
        r"\1=[redacted]",
    ),
    (re.compile(r"(?i)(--(?:api-key|token))(?:=|\s+)\S+"), r"\1 [redacted]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[redacted-email]"),
)


def strip_terminal_noise(text: str) -> str:
    """Remove ANSI escapes and stray control characters; normalise CRLF."""
    without_escapes = _ANSI_ESCAPE.sub("", text)
    return _CONTROL_CHARS.sub("", without_escapes.replace("\r\n", "\n"))


def sanitize_preview(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Redact credentials and clamp the payload, keeping the tail.

    Agent failures usually surface at the end of the output, so the last
    ``max_chars`` characters are kept.
    """
    compact = strip_terminal_noise(text).strip()
    if not compact:
        return ""
    for pattern, replacement in _SECRET_PATTERNS:
        compact = pattern.sub(replacement, compact)
    if len(compact) <= max_chars:
        return compact
    return compact[-max_chars:]
