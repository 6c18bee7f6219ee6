"""Best-effort structured payload recovery from free-form agent output.

Agents are asked to answer with a fenced JSON block but regularly add
prose, mislabel the fence or drop it entirely. `OutputExtractor` runs an
ordered chain of strategies, each a pure ``text -> value | None`` function,
and the first one that yields a plausible, parseable payload wins. Early
strategies are strict to avoid picking up JSON-like fragments from prose;
the last one scans every top-level balanced span and stops at a
truncated one.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

from tdd_conductor.orchestrator.sanitization import strip_terminal_noise

EXTRACTOR_VERSION = "v1"

_JSON_FENCE = re.compile(r"```[ \t]*json[ \t]*\r?\n?(.*?)```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE = re.compile(r"```[ \t]*[\w+\-.]*[ \t]*\r?\n?(.*?)```", re.DOTALL)
_LANG_FENCE = re.compile(
    r"```[ \t]*(?P<lang>[\w+\-.]*)[ \t]*\r?\n?(?P<body>.*?)```",
    re.DOTALL,
)
_PAYLOAD_LANGS = frozenset({"", "json"})
_RESULT_MARKER = re.compile(
    r"(?i)(?:here\s+is|here's|here\s+are)\s+(?:the\s+|your\s+)?"
    r"(?:final\s+)?(?:result|results|output|json|payload|response|answer)s?\s*[:\-]?"
    r"|(?:final\s+)?(?:result|output|answer)\s*:",
)

_CLOSERS = {"{": "}", "[": "]"}
_MISMATCHED = -1
_UNTERMINATED = -2


class ExtractionError(ValueError):
    """A phase required a structured payload the agent output did not contain."""


class PayloadShape(str, Enum):
    """Outer structure the caller expects."""

    OBJECT = "object"
    ARRAY = "array"
    ANY = "any"

    @property
    def openers(self) -> tuple[str, ...]:
        if self is PayloadShape.OBJECT:
            return ("{",)
        if self is PayloadShape.ARRAY:
            return ("[",)
        return ("{", "[")


@dataclass(slots=True)
class ExtractedPayload:
    """Parsed payload and the strategy that found it."""

    value: Any
    strategy: str
    position: int = -1


Strategy = Callable[[str, PayloadShape], Any]


class OutputExtractor:
    """Locate and parse one structured payload inside agent text output."""

    def __init__(self, shape: PayloadShape = PayloadShape.ANY) -> None:
        self.shape = shape
        self._strategies: tuple[tuple[str, Strategy], ...] = (
            ("labelled_fence", _from_labelled_fence),
            ("shaped_fence", _from_shaped_fence),
            ("balanced_scan", _from_first_balanced),
            ("marker_scan", _from_marker),
            ("exhaustive_scan", _from_exhaustive_scan),
        )

    def extract(self, text: str | None) -> ExtractedPayload | None:
        """Return the first payload any strategy recovers, else None. Never raises."""

        if not text or not text.strip():
            return None
        text = strip_terminal_noise(text)
        for name, strategy in self._strategies:
            value = strategy(text, self.shape)
            if value is not None:
                return ExtractedPayload(value=value, strategy=name)
        return None

    def find_all(self, text: str | None) -> list[ExtractedPayload]:
        """Every payload of the expected shape, in the order it appears.

        Only ``json`` or unlabelled fences count as payload fences. Code
        fences are masked out so literals inside test code never surface,
        and outside fences only top-level balanced spans are considered.
        """

        if not text or not text.strip():
            return []
        text = strip_terminal_noise(text)
        found: list[ExtractedPayload] = []
        prose: list[str] = []
        cursor = 0
        for match in _LANG_FENCE.finditer(text):
            prose.append(text[cursor : match.start()])
            prose.append(" " * (match.end() - match.start()))
            cursor = match.end()
            lang = match.group("lang").lower()
            if lang not in _PAYLOAD_LANGS:
                continue
            value = _parse_candidate(match.group("body"), self.shape)
            if value is not None:
                found.append(
                    ExtractedPayload(
                        value=value,
                        strategy="labelled_fence" if lang else "shaped_fence",
                        position=match.start(),
                    ),
                )
        prose.append(text[cursor:])
        for start, _, value in _top_level_payloads("".join(prose), self.shape):
            found.append(ExtractedPayload(value=value, strategy="balanced_scan", position=start))
        found.sort(key=lambda payload: payload.position)
        return found


def extract_payload(text: str | None, shape: PayloadShape = PayloadShape.ANY) -> Any:
    """Shortcut returning only the parsed value (or None)."""

    found = OutputExtractor(shape).extract(text)
    return found.value if found is not None else None


def _from_labelled_fence(text: str, shape: PayloadShape) -> Any:
    for match in _JSON_FENCE.finditer(text):
        value = _parse_candidate(match.group(1), shape)
        if value is not None:
            return value
    return None


def _from_shaped_fence(text: str, shape: PayloadShape) -> Any:
    for match in _ANY_FENCE.finditer(text):
        value = _parse_candidate(match.group(1), shape)
        if value is not None:
            return value
    return None


def _from_first_balanced(text: str, shape: PayloadShape) -> Any:
    start = _first_opener(text, shape, offset=0)
    if start is None:
        return None
    candidate = scan_balanced(text, start)
    if candidate is None:
        return None
    return _parse_candidate(candidate, shape)


def _from_marker(text: str, shape: PayloadShape) -> Any:
    for marker in _RESULT_MARKER.finditer(text):
        start = _first_opener(text, shape, offset=marker.end())
        if start is None:
            continue
        candidate = scan_balanced(text, start)
        if candidate is None:
            continue
        value = _parse_candidate(candidate, shape)
        if value is not None:
            return value
    return None


def _from_exhaustive_scan(text: str, shape: PayloadShape) -> Any:
    # Longest parseable array wins; otherwise the first parseable object.
    longest_array: list[Any] | None = None
    longest_array_chars = -1
    first_object: dict[str, Any] | None = None
    for start, end, value in _top_level_payloads(text, shape):
        if isinstance(value, dict):
            if first_object is None:
                first_object = value
        elif end - start > longest_array_chars:
            longest_array = value
            longest_array_chars = end - start
    return longest_array if longest_array is not None else first_object


def _top_level_payloads(text: str, shape: PayloadShape) -> Iterator[tuple[int, int, Any]]:
    """Yield ``(start, end, value)`` for parseable spans not nested in another one.

    A balanced span that does not parse is stepped into. An opener that never
    closes ends the scan: whatever follows belongs to a truncated payload.
    """

    index = 0
    while index < len(text):
        if text[index] not in _CLOSERS:
            index += 1
            continue
        end = _span_end(text, index)
        if end == _UNTERMINATED:
            return
        value = _parse_candidate(text[index : end + 1], shape) if end >= 0 else None
        if value is None:
            index += 1
            continue
        yield index, end + 1, value
        index = end + 1


def scan_balanced(text: str, start: int) -> str | None:
    """Return the balanced ``{...}``/``[...]`` substring opening at ``start``.

    Delimiters inside JSON string literals are ignored, honoring backslash
    escapes. Returns None on a mismatched closer or unterminated input.
    """

    if start >= len(text) or text[start] not in _CLOSERS:
        return None
    end = _span_end(text, start)
    return text[start : end + 1] if end >= 0 else None


def _span_end(text: str, start: int) -> int:
    stack: list[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in ("}", "]"):
            if not stack or stack.pop() != char:
                return _MISMATCHED
            if not stack:
                return index
    return _UNTERMINATED


def _first_opener(text: str, shape: PayloadShape, *, offset: int) -> int | None:
    positions = [text.find(opener, offset) for opener in shape.openers]
    found = [position for position in positions if position != -1]
    return min(found) if found else None


def _parse_candidate(raw: str, shape: PayloadShape) -> Any:
    candidate = raw.strip()
    if not _looks_plausible(candidate, shape):
        return None
    try:
        value = json.loads(candidate)
    except (json.JSONDecodeError, RecursionError):
        return None
    if shape is PayloadShape.OBJECT and not isinstance(value, dict):
        return None
    if shape is PayloadShape.ARRAY and not isinstance(value, list):
        return None
    if not isinstance(value, dict | list):
        return None
    return value


def _looks_plausible(candidate: str, shape: PayloadShape) -> bool:
    if len(candidate) < 2:
        return False
    opener = candidate[0]
    if opener not in shape.openers:
        return False
    return candidate[-1] == _CLOSERS[opener]
