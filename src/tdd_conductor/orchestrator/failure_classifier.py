"""Deterministic agent failure classification for the retry policy.

Agent processes report failures only as text, so classification is plain
substring matching against known provider signatures.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

FAILURE_CLASSIFIER_VERSION = 1


class FailureKind(str, Enum):
    RESOURCE_EXHAUSTED = "resource_exhausted"
    CONNECTION = "connection"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    FATAL = "fatal"


_RESOURCE_EXHAUSTED_PATTERNS: tuple[str, ...] = (
    "resource_exhausted",
    "resource exhausted",
    "quota exceeded",
    "overloaded",
)
_CONNECTION_PATTERNS: tuple[str, ...] = (
    "connecterror",
    "connection error",
    "connection reset",
    "connection refused",
    "econnreset",
    "network error",
    "temporarily unavailable",
    "could not resolve host",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "ratelimit",
    "too many requests",
    "try again later",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "command timeout",
    "timed out",
)

# Signatures that turn an exit-code-0 run into a failure.
_EMBEDDED_FAILURE_SIGNATURES: tuple[str, ...] = (
    "resource_exhausted",
    "connecterror",
)

_TRANSIENT_RULES: tuple[tuple[FailureKind, tuple[str, ...]], ...] = (
    (FailureKind.RESOURCE_EXHAUSTED, _RESOURCE_EXHAUSTED_PATTERNS),
    (FailureKind.CONNECTION, _CONNECTION_PATTERNS),
    (FailureKind.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: FailureKind
    transient: bool
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_kind": self.kind.value,
            "transient": self.transient,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(error_text: str | None, *, timed_out: bool = False) -> FailureClassification:
    """Classify one failed invocation as transient (retry) or fatal."""

    haystack = (error_text or "").lower()
    if timed_out:
        return FailureClassification(
            kind=FailureKind.TIMEOUT,
            transient=False,
            matched_pattern=None,
        )

    for kind, patterns in _TRANSIENT_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(kind=kind, transient=True, matched_pattern=pattern)

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=FailureKind.TIMEOUT,
            transient=False,
            matched_pattern=pattern,
        )

    return FailureClassification(kind=FailureKind.FATAL, transient=False, matched_pattern=None)


def detect_failure_signature(text: str) -> str | None:
    """Return the provider failure signature embedded in agent output, if any."""

    return _first_match(text.lower(), _EMBEDDED_FAILURE_SIGNATURES)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
