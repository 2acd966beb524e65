"""Deterministic workflow failure classification for step retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from auto_resume_queue.queue.models import ErrorKind

WORKFLOW_FAILURE_CLASSIFIER_VERSION = 1

# Rules are checked in order; the first matching rule wins.
_NETWORK_PATTERNS: tuple[str, ...] = (
    r"connection.*refused",
    r"network.*error",
    r"timeout",
    r"connection.*reset",
)
_SESSION_PATTERNS: tuple[str, ...] = (
    r"session.*not.*found",
    r"session.*expired",
    r"no.*active.*session",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    r"authentication.*failed",
    r"unauthorized",
    r"permission.*denied",
)
_SYNTAX_PATTERNS: tuple[str, ...] = (
    r"command.*not.*found",
    r"invalid.*command",
    r"invalid.*syntax",
    r"syntax.*error",
)
_USAGE_LIMIT_PATTERNS: tuple[str, ...] = (
    r"rate.*limit",
    r"usage.*limit",
    r"quota.*exceeded",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    r"timed.*out",
)

_RULES: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.NETWORK, _NETWORK_PATTERNS),
    (ErrorKind.SESSION, _SESSION_PATTERNS),
    (ErrorKind.AUTH, _AUTH_PATTERNS),
    (ErrorKind.SYNTAX, _SYNTAX_PATTERNS),
    (ErrorKind.USAGE_LIMIT, _USAGE_LIMIT_PATTERNS),
    (ErrorKind.TIMEOUT, _TIMEOUT_PATTERNS),
)


@dataclass(slots=True)
class WorkflowFailureClassification:
    """Normalized failure classification result."""

    error_kind: ErrorKind
    matched_pattern: str | None

    @property
    def recoverable(self) -> bool:
        return self.error_kind.recoverable

    def to_event_details(self, *, phase: str) -> dict[str, object]:
        """Serialize classifier diagnostics for logs and checkpoints."""

        return {
            "classifier_version": WORKFLOW_FAILURE_CLASSIFIER_VERSION,
            "phase": phase,
            "error_kind": self.error_kind.value,
            "recoverable": self.recoverable,
            "matched_pattern": self.matched_pattern,
        }


def classify_workflow_failure(message: str) -> WorkflowFailureClassification:
    """Classify step failure output; unmatched or empty text is a generic error."""

    haystack = _normalize_text(message)
    for error_kind, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return WorkflowFailureClassification(error_kind=error_kind, matched_pattern=pattern)
    return WorkflowFailureClassification(error_kind=ErrorKind.GENERIC, matched_pattern=None)


def classify_error(message: str) -> ErrorKind:
    return classify_workflow_failure(message).error_kind


def _normalize_text(message: str) -> str:
    return (message or "").lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if re.search(pattern, haystack):
            return pattern
    return None
