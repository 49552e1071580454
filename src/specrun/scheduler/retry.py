"""Single-spec execution with transient-failure retries and exponential backoff."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from specrun.scheduler.failure_classifier import FailureClassification, classify_failure
from specrun.scheduler.models import ExecutionResult, FailureClass, SpecNode

logger = logging.getLogger(__name__)


class SpecExecutor(Protocol):
    """Runs one spec to completion."""

    def run(self, spec: SpecNode) -> ExecutionResult:
        """Execute the spec once and report the outcome."""


class ExecutionError(RuntimeError):
    """Base class for per-spec execution errors."""

    def __init__(self, message: str, *, spec_name: str, attempts: int, transient: bool) -> None:
        super().__init__(message)
        self.spec_name = spec_name
        self.attempts = attempts
        self.transient = transient


class TransientExecutionError(ExecutionError):
    """Retries exhausted on a transient failure."""

    def __init__(self, message: str, *, spec_name: str, attempts: int) -> None:
        super().__init__(message, spec_name=spec_name, attempts=attempts, transient=True)


class FatalExecutionError(ExecutionError):
    """Non-retryable failure."""

    def __init__(self, message: str, *, spec_name: str, attempts: int) -> None:
        super().__init__(message, spec_name=spec_name, attempts=attempts, transient=False)


class ExecutionFailedError(RuntimeError):
    """An executor returned a failed result instead of raising."""

    def __init__(self, message: str, *, result: ExecutionResult) -> None:
        super().__init__(message)
        self.result = result


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry budget and exponential backoff parameters."""

    max_attempts: int = 3
    base_delay_ms: int = 5000
    max_backoff_ms: int = 60000

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0.")
        if self.max_backoff_ms < 0:
            raise ValueError("max_backoff_ms must be >= 0.")


def compute_backoff_ms(attempt: int, policy: RetryPolicy) -> int:
    """Delay before the attempt that follows ``attempt`` (1-based)."""

    if attempt < 1:
        raise ValueError("attempt must be >= 1.")
    return min(policy.max_backoff_ms, policy.base_delay_ms * (2 ** (attempt - 1)))


class AttemptEventKind(str, Enum):
    STARTED = "started"
    FAILED = "failed"
    BACKOFF = "backoff"


@dataclass(frozen=True, slots=True)
class AttemptEvent:
    """Observable retry lifecycle step of one spec."""

    spec_name: str
    kind: AttemptEventKind
    attempt: int
    error: str | None = None
    failure_class: FailureClass | None = None
    delay_ms: int | None = None


@dataclass(slots=True)
class RetryOutcome:
    """Final result of ``run_with_retry``."""

    spec: SpecNode
    success: bool
    attempts: int
    cost_usd: float = 0.0
    duration_seconds: float = 0.0
    error: ExecutionError | None = None
    classification: FailureClassification | None = None
    results: list[ExecutionResult] = field(default_factory=list)


def run_with_retry(  # noqa: PLR0913
    spec: SpecNode,
    executor: SpecExecutor,
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    on_event: Callable[[AttemptEvent], None] | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> RetryOutcome:
    """Run one spec, retrying transient failures up to ``policy.max_attempts``.

    Fatal failures end the run immediately. Cost and duration of every attempt
    are accumulated. When ``should_stop`` returns True between attempts the
    last error is surfaced without another try.
    """

    outcome = RetryOutcome(spec=spec, success=False, attempts=0)

    def _emit(event: AttemptEvent) -> None:
        if on_event is not None:
            on_event(event)

    while True:
        outcome.attempts += 1
        attempt = outcome.attempts
        _emit(AttemptEvent(spec_name=spec.name, kind=AttemptEventKind.STARTED, attempt=attempt))
        logger.debug("Spec %s attempt %d/%d started", spec.name, attempt, policy.max_attempts)

        error = _attempt(spec, executor, outcome)
        if error is None:
            outcome.success = True
            outcome.error = None
            outcome.classification = None
            return outcome

        classification = _classify(error)
        outcome.classification = classification
        message = str(error) or type(error).__name__
        _emit(
            AttemptEvent(
                spec_name=spec.name,
                kind=AttemptEventKind.FAILED,
                attempt=attempt,
                error=message,
                failure_class=classification.failure_class,
            ),
        )

        if not classification.transient:
            logger.warning(
                "Spec %s failed with a fatal error on attempt %d: %s",
                spec.name,
                attempt,
                message,
            )
            outcome.error = FatalExecutionError(message, spec_name=spec.name, attempts=attempt)
            return outcome

        if attempt >= policy.max_attempts:
            logger.warning(
                "Spec %s exhausted %d attempts on transient error: %s",
                spec.name,
                attempt,
                message,
            )
            outcome.error = TransientExecutionError(message, spec_name=spec.name, attempts=attempt)
            return outcome

        if _stopped(should_stop, spec, outcome, message):
            return outcome

        delay_ms = compute_backoff_ms(attempt, policy)
        _emit(
            AttemptEvent(
                spec_name=spec.name,
                kind=AttemptEventKind.BACKOFF,
                attempt=attempt,
                error=message,
                failure_class=classification.failure_class,
                delay_ms=delay_ms,
            ),
        )
        logger.info(
            "Spec %s transient failure (%s), retrying in %d ms (attempt %d/%d)",
            spec.name,
            classification.matched_rule,
            delay_ms,
            attempt + 1,
            policy.max_attempts,
        )
        sleep(delay_ms / 1000)
        if _stopped(should_stop, spec, outcome, message):
            return outcome


def _classify(error: Exception) -> FailureClassification:
    if isinstance(error, ExecutionFailedError) and error.result.failure_class is not None:
        return FailureClassification(
            failure_class=error.result.failure_class,
            matched_rule="executor_reported",
            matched_pattern=None,
        )
    return classify_failure(error)


def _stopped(
    should_stop: Callable[[], bool] | None,
    spec: SpecNode,
    outcome: RetryOutcome,
    message: str,
) -> bool:
    if should_stop is None or not should_stop():
        return False
    logger.info("Spec %s: cancellation requested, not retrying", spec.name)
    outcome.error = TransientExecutionError(
        message,
        spec_name=spec.name,
        attempts=outcome.attempts,
    )
    return True


def _attempt(spec: SpecNode, executor: SpecExecutor, outcome: RetryOutcome) -> Exception | None:
    started = time.monotonic()
    try:
        result = executor.run(spec)
    except Exception as error:  # noqa: BLE001
        outcome.duration_seconds += time.monotonic() - started
        return error

    outcome.results.append(result)
    outcome.cost_usd += result.cost_usd
    outcome.duration_seconds += result.duration_seconds or (time.monotonic() - started)
    if result.success:
        return None
    return ExecutionFailedError(result.error or "Execution failed", result=result)
