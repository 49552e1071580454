"""Deterministic execution failure classification for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from specrun.scheduler.models import FailureClass

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "429",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "econnreset",
    "econnrefused",
    "timeout",
    "network",
)
_SERVER_OVERLOAD_PATTERNS: tuple[str, ...] = (
    "502",
    "503",
    "overloaded",
)

_API_ERROR_PREFIXES: tuple[str, ...] = (
    "API Error:",
    "Internal Server Error",
    "overloaded_error",
)
_API_ERROR_MAX_INLINE_CHARS = 200


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def transient(self) -> bool:
        return self.failure_class.is_transient


def classify_failure(error: object) -> FailureClassification:
    """Classify an execution error into a deterministic retry class.

    Only exceptions are considered; any other value is fatal.
    """

    if not isinstance(error, BaseException):
        return FailureClassification(
            failure_class=FailureClass.FATAL,
            matched_rule="not_an_exception",
            matched_pattern=None,
        )

    haystack = str(error).lower()

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMIT,
            matched_rule="rate_limit",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _NETWORK_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.NETWORK,
            matched_rule="network",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _SERVER_OVERLOAD_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.SERVER_OVERLOAD,
            matched_rule="server_overload",
            matched_pattern=pattern,
        )

    if isinstance(error, (ConnectionError, TimeoutError)):
        return FailureClassification(
            failure_class=FailureClass.NETWORK,
            matched_rule="builtin_network_error",
            matched_pattern=None,
        )

    return FailureClassification(
        failure_class=FailureClass.FATAL,
        matched_rule="fallback_fatal",
        matched_pattern=None,
    )


def is_transient(error: object) -> bool:
    """Return True when retrying the failed execution may succeed."""

    return classify_failure(error).transient


def looks_like_api_error(output: str) -> bool:
    """Detect agent output that reports success but is an API error text."""

    text = output.strip()
    if not text:
        return False
    if text.startswith(_API_ERROR_PREFIXES):
        return True
    return len(text) < _API_ERROR_MAX_INLINE_CHARS and any(
        prefix in text for prefix in _API_ERROR_PREFIXES
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
