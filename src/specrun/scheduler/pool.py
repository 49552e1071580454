"""Bounded-concurrency worker pool that executes a dependency graph level by level."""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
import uuid
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from specrun.scheduler.graph import DependencyGraph
from specrun.scheduler.models import (
    BatchKind,
    BatchResult,
    StatusChange,
    WorkItem,
    WorkStatus,
)
from specrun.scheduler.notifications import NotificationHub, NotificationSink
from specrun.scheduler.retry import (
    AttemptEvent,
    AttemptEventKind,
    RetryPolicy,
    SpecExecutor,
    run_with_retry,
)
from specrun.storage.common import utc_now

logger = logging.getLogger(__name__)

MAX_AUTO_CONCURRENCY = 5
MEMORY_PER_WORKER_BYTES = 2 * 1024**3
AUTO_CONCURRENCY = "auto"

_RERUN_STATUSES = frozenset({WorkStatus.FAILED, WorkStatus.BLOCKED, WorkStatus.PENDING})


class PoolBusyError(RuntimeError):
    """A batch is already running on this pool."""


@dataclass(slots=True)
class BatchOptions:
    """Per-batch scheduling knobs."""

    concurrency: int | str | None = None
    sequential_first: int = 0
    kind: BatchKind = BatchKind.BATCH


def auto_detect_concurrency(
    *,
    cpu_count: int | None = None,
    available_memory_bytes: int | None = None,
) -> int:
    """Pick a worker count in ``[1, MAX_AUTO_CONCURRENCY]``.

    One worker per CPU, capped by the available memory at two GiB per worker.
    Memory is ignored when the platform cannot report it.
    """

    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    memory = (
        available_memory_bytes if available_memory_bytes is not None else _available_memory_bytes()
    )
    limit = min(cpus, MAX_AUTO_CONCURRENCY)
    if memory is not None:
        limit = min(limit, memory // MEMORY_PER_WORKER_BYTES)
    return max(1, limit)


def resolve_concurrency(value: int | str | None) -> int:
    """Explicit values are used as-is (minimum 1); ``None``/``auto`` auto-detects."""

    if value is None:
        return auto_detect_concurrency()
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"", AUTO_CONCURRENCY}:
            return auto_detect_concurrency()
        try:
            value = int(normalized)
        except ValueError as error:
            raise ValueError(f"Invalid concurrency value: {value!r}") from error
    return max(1, value)


def _available_memory_bytes() -> int | None:
    try:
        return os.sysconf("SC_AVPHYS_PAGES") * os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, OSError, ValueError):
        return None


class WorkerPool:
    """Executes spec batches through a retrying executor.

    Levels run strictly in order. Inside a level up to ``concurrency`` specs run
    at once; specs whose dependency failed or was blocked are marked blocked
    and never executed. Each batch gets a fresh status table guarded by one
    lock. Status changes are published to the sinks outside of that lock.
    """

    def __init__(  # noqa: PLR0913
        self,
        executor: SpecExecutor,
        *,
        policy: RetryPolicy | None = None,
        sinks: Iterable[NotificationSink] = (),
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
        handle_signals: bool = True,
    ) -> None:
        self.executor = executor
        self.policy = policy or RetryPolicy()
        self.notifications = NotificationHub(sinks)
        self._sleep = sleep or self._sleep_with_stop
        self._clock = clock
        self._handle_signals = handle_signals
        self._lock = threading.Lock()
        self._batch_lock = threading.Lock()
        self._cancel = threading.Event()
        self._items: dict[str, WorkItem] = {}

    @property
    def is_running(self) -> bool:
        return self._batch_lock.locked()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Stop admitting new work; in-flight executions finish."""

        if not self._cancel.is_set():
            logger.warning("Cancellation requested; in-flight specs will finish")
        self._cancel.set()

    def snapshot(self) -> dict[str, WorkStatus]:
        """Copy of the current (or last) batch status table."""

        with self._lock:
            return {name: item.status for name, item in self._items.items()}

    def items(self) -> dict[str, WorkItem]:
        """Detached copies of the current work items."""

        with self._lock:
            return {
                name: WorkItem(
                    spec=item.spec,
                    attempt=item.attempt,
                    status=item.status,
                    cost_usd=item.cost_usd,
                    duration_seconds=item.duration_seconds,
                    error=item.error,
                    failure_class=item.failure_class,
                    blocked_by=item.blocked_by,
                )
                for name, item in self._items.items()
            }

    def active_specs(self) -> list[str]:
        with self._lock:
            return sorted(
                name for name, item in self._items.items() if item.status == WorkStatus.RUNNING
            )

    def run_batch(
        self,
        graph: DependencyGraph,
        options: BatchOptions | None = None,
    ) -> BatchResult:
        """Execute every spec of ``graph`` and return the aggregate result.

        Graph errors (unresolved or circular dependencies) are raised before
        anything is executed.
        """

        options = options or BatchOptions()
        levels = graph.topo_sort()
        concurrency = resolve_concurrency(options.concurrency)

        if not self._batch_lock.acquire(blocking=False):
            raise PoolBusyError("A batch is already running on this worker pool.")
        try:
            self._cancel.clear()
            with self._lock:
                self._items = {
                    name: WorkItem(spec=graph.node(name)) for level in levels for name in level
                }
            run_id = uuid.uuid4().hex
            started_at = self._clock()
            started = time.monotonic()
            logger.info(
                "Batch %s (%s): %d specs in %d levels, concurrency=%d, sequential_first=%d",
                run_id,
                options.kind.value,
                len(graph),
                len(levels),
                concurrency,
                options.sequential_first,
            )
            with self._signal_handlers():
                self._run_levels(
                    graph,
                    levels,
                    concurrency=concurrency,
                    sequential_first=options.sequential_first,
                )
            with self._lock:
                outcomes = tuple(
                    self._items[name].to_outcome() for level in levels for name in level
                )
            result = BatchResult(
                run_id=run_id,
                kind=options.kind,
                started_at=started_at,
                finished_at=self._clock(),
                concurrency=concurrency,
                levels=tuple(tuple(level) for level in levels),
                outcomes=outcomes,
                wall_clock_seconds=time.monotonic() - started,
                cancelled=self._cancel.is_set(),
                satisfied=tuple(sorted(graph.satisfied)),
            )
        finally:
            self._batch_lock.release()

        logger.info(
            "Batch %s finished: succeeded=%d failed=%d blocked=%d not_started=%d cost=$%.4f",
            result.run_id,
            len(result.succeeded),
            len(result.failed),
            len(result.blocked),
            len(result.not_started),
            result.total_cost_usd,
        )
        return result

    def rerun_failed(self, prior: BatchResult, options: BatchOptions | None = None) -> BatchResult:
        """Re-execute the failed, blocked and never-started specs of ``prior``.

        Specs that succeeded in ``prior`` count as satisfied dependencies.
        """

        base = options or BatchOptions()
        rerun_nodes = [
            outcome.spec for outcome in prior.outcomes if outcome.status in _RERUN_STATUSES
        ]
        satisfied = [*prior.succeeded, *prior.satisfied]
        if rerun_nodes:
            logger.info(
                "Rerunning %d spec(s) from batch %s: %s",
                len(rerun_nodes),
                prior.run_id,
                ", ".join(node.name for node in rerun_nodes),
            )
        else:
            logger.info("Batch %s has nothing to rerun", prior.run_id)
        graph = DependencyGraph.build(rerun_nodes, satisfied=satisfied)
        return self.run_batch(
            graph,
            BatchOptions(
                concurrency=base.concurrency,
                sequential_first=base.sequential_first,
                kind=BatchKind.RERUN,
            ),
        )

    def _run_levels(
        self,
        graph: DependencyGraph,
        levels: list[list[str]],
        *,
        concurrency: int,
        sequential_first: int,
    ) -> None:
        sequential_left = max(0, sequential_first)
        for index, level in enumerate(levels):
            if self._cancel.is_set():
                logger.warning("Cancelled before level %d; remaining specs not started", index)
                return
            runnable = self._block_unrunnable(graph, level)
            logger.info("Level %d: %d runnable of %d", index, len(runnable), len(level))

            sequential = runnable[:sequential_left]
            parallel = runnable[sequential_left:]
            sequential_left -= len(sequential)
            if sequential:
                self._run_group(sequential, workers=1)
            if parallel:
                self._run_group(parallel, workers=concurrency)

    def _block_unrunnable(self, graph: DependencyGraph, level: list[str]) -> list[str]:
        runnable: list[str] = []
        changes: list[StatusChange] = []
        with self._lock:
            for name in level:
                blockers = tuple(
                    dependency
                    for dependency in graph.dependencies_of(name)
                    if self._items[dependency].status in {WorkStatus.FAILED, WorkStatus.BLOCKED}
                )
                if not blockers:
                    runnable.append(name)
                    continue
                item = self._items[name]
                item.blocked_by = blockers
                item.error = f"Blocked by: {', '.join(blockers)}"
                changes.append(self._transition_locked(item, WorkStatus.BLOCKED))
        for change in changes:
            logger.info("Spec %s blocked by failed dependencies", change.spec_name)
            self.notifications.publish(change)
        return runnable

    def _run_group(self, names: list[str], *, workers: int) -> None:
        with ThreadPoolExecutor(
            max_workers=max(1, min(workers, len(names))),
            thread_name_prefix="specrun-worker",
        ) as pool:
            futures = [pool.submit(self._run_item, name) for name in names]
            for future in futures:
                future.result()

    def _run_item(self, name: str) -> None:
        with self._lock:
            if self._cancel.is_set():
                return
            item = self._items[name]
            change = self._transition_locked(item, WorkStatus.RUNNING)
        self.notifications.publish(change)

        outcome = run_with_retry(
            item.spec,
            self.executor,
            self.policy,
            sleep=self._sleep,
            on_event=self._record_attempt,
            should_stop=self._cancel.is_set,
        )

        with self._lock:
            item.attempt = outcome.attempts
            item.cost_usd = outcome.cost_usd
            item.duration_seconds = outcome.duration_seconds
            if outcome.success:
                change = self._transition_locked(item, WorkStatus.SUCCEEDED)
            else:
                item.error = str(outcome.error) if outcome.error is not None else None
                if outcome.classification is not None:
                    item.failure_class = outcome.classification.failure_class
                change = self._transition_locked(item, WorkStatus.FAILED)
        self.notifications.publish(change)

    def _record_attempt(self, event: AttemptEvent) -> None:
        if event.kind != AttemptEventKind.STARTED:
            return
        with self._lock:
            item = self._items.get(event.spec_name)
            if item is not None:
                item.attempt = event.attempt

    def _transition_locked(self, item: WorkItem, status: WorkStatus) -> StatusChange:
        change = StatusChange(
            spec_name=item.spec.name,
            from_status=item.status,
            to_status=status,
            timestamp=self._clock(),
        )
        item.status = status
        return change

    def _sleep_with_stop(self, seconds: float) -> None:
        self._cancel.wait(max(0.0, seconds))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not self._handle_signals or not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Received %s", name)
            self.cancel()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
