from __future__ import annotations

import allure
import pytest

from specrun.scheduler.failure_classifier import (
    classify_failure,
    is_transient,
    looks_like_api_error,
)
from specrun.scheduler.models import FailureClass

pytestmark = [
    allure.epic("Spec Execution"),
    allure.feature("Retry & Failure Policy"),
]


@pytest.mark.parametrize(
    ("message", "failure_class", "pattern"),
    [
        ("Rate limit exceeded", FailureClass.RATE_LIMIT, "rate limit"),
        ("error: rate_limit_error", FailureClass.RATE_LIMIT, "rate_limit"),
        ("HTTP 429 Too Many Requests", FailureClass.RATE_LIMIT, "429"),
        ("read ECONNRESET", FailureClass.NETWORK, "econnreset"),
        ("connect ECONNREFUSED 127.0.0.1:443", FailureClass.NETWORK, "econnrefused"),
        ("Agent timeout after 60s", FailureClass.NETWORK, "timeout"),
        ("network unreachable", FailureClass.NETWORK, "network"),
        ("502 Bad Gateway", FailureClass.SERVER_OVERLOAD, "502"),
        ("503 Service Unavailable", FailureClass.SERVER_OVERLOAD, "503"),
        ("model is overloaded", FailureClass.SERVER_OVERLOAD, "overloaded"),
    ],
)
def test_transient_signatures(message: str, failure_class: FailureClass, pattern: str) -> None:
    classification = classify_failure(RuntimeError(message))

    assert classification.failure_class == failure_class
    assert classification.matched_pattern == pattern
    assert classification.transient
    assert is_transient(RuntimeError(message))


def test_builtin_network_errors_are_transient() -> None:
    classification = classify_failure(ConnectionResetError("peer went away"))

    assert classification.failure_class == FailureClass.NETWORK
    assert classification.matched_rule == "builtin_network_error"
    assert is_transient(TimeoutError())


def test_other_exceptions_are_fatal() -> None:
    classification = classify_failure(ValueError("syntax error in generated code"))

    assert classification.failure_class == FailureClass.FATAL
    assert classification.matched_rule == "fallback_fatal"
    assert not classification.transient


@pytest.mark.parametrize("value", ["rate limit", 429, None, {"error": "timeout"}])
def test_non_exception_values_are_fatal(value: object) -> None:
    classification = classify_failure(value)

    assert classification.failure_class == FailureClass.FATAL
    assert classification.matched_rule == "not_an_exception"
    assert not is_transient(value)


def test_rate_limit_wins_over_network_when_both_match() -> None:
    classification = classify_failure(RuntimeError("429 after network timeout"))

    assert classification.failure_class == FailureClass.RATE_LIMIT


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("API Error: 500 internal", True),
        ("Internal Server Error", True),
        ('{"type":"overloaded_error"}', True),
        ("Done. " + "x" * 300 + " API Error: mentioned in a long report", False),
        ("Short note about API Error: seen earlier", True),
        ("Implemented the feature.", False),
        ("", False),
    ],
)
def test_looks_like_api_error(output: str, expected: bool) -> None:
    assert looks_like_api_error(output) is expected
