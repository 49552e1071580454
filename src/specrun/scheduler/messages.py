"""Typed request/response messages answered from a live worker pool."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum

from specrun.scheduler.graph import DependencyGraph
from specrun.scheduler.models import SpecNode, WorkItem, WorkStatus
from specrun.scheduler.pool import BatchOptions, PoolBusyError, WorkerPool

logger = logging.getLogger(__name__)


class MessageKind(str, Enum):
    QUERY_AGENTS = "query-agents"
    QUERY_TASKS = "query-tasks"
    SUBMIT_TASK = "submit-task"
    GET_TASK = "get-task"


class ErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    BUSY = "busy"
    INVALID_REQUEST = "invalid_request"
    INTERNAL_ERROR = "internal_error"


def _request_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class QueryAgents:
    """Ask which specs are currently being executed."""

    request_id: str = field(default_factory=_request_id)

    @property
    def kind(self) -> MessageKind:
        return MessageKind.QUERY_AGENTS


@dataclass(frozen=True, slots=True)
class QueryTasks:
    """List work items, optionally filtered by status."""

    status: WorkStatus | None = None
    request_id: str = field(default_factory=_request_id)

    @property
    def kind(self) -> MessageKind:
        return MessageKind.QUERY_TASKS


@dataclass(frozen=True, slots=True)
class SubmitTask:
    """Run one spec as its own batch while the pool is idle."""

    spec: SpecNode
    request_id: str = field(default_factory=_request_id)

    @property
    def kind(self) -> MessageKind:
        return MessageKind.SUBMIT_TASK


@dataclass(frozen=True, slots=True)
class GetTask:
    """Fetch the work item of one spec."""

    spec_name: str
    request_id: str = field(default_factory=_request_id)

    @property
    def kind(self) -> MessageKind:
        return MessageKind.GET_TASK


Request = QueryAgents | QueryTasks | SubmitTask | GetTask


@dataclass(frozen=True, slots=True)
class MessageOk:
    request_id: str
    kind: MessageKind
    payload: dict[str, object]

    @property
    def ok(self) -> bool:
        return True

    def to_dict(self) -> dict[str, object]:
        return {
            "type": "response:success",
            "request_id": self.request_id,
            "kind": self.kind.value,
            "payload": self.payload,
        }


@dataclass(frozen=True, slots=True)
class MessageError:
    request_id: str
    code: ErrorCode
    message: str
    details: dict[str, object] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self) -> dict[str, object]:
        return {
            "type": "response:error",
            "request_id": self.request_id,
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
            },
        }


MessageResult = MessageOk | MessageError


class InvalidRequestError(ValueError):
    """Raw payload cannot be turned into a typed request."""


def parse_request(raw: dict[str, object]) -> Request:  # noqa: C901
    """Build a typed request from a decoded JSON-like payload."""

    kind_value = raw.get("kind", raw.get("type"))
    try:
        kind = MessageKind(str(kind_value))
    except ValueError as error:
        raise InvalidRequestError(f"Unknown message kind: {kind_value!r}") from error

    request_id = str(raw.get("request_id") or _request_id())
    if kind == MessageKind.QUERY_AGENTS:
        return QueryAgents(request_id=request_id)
    if kind == MessageKind.QUERY_TASKS:
        status_value = raw.get("status")
        if status_value is None:
            return QueryTasks(request_id=request_id)
        try:
            return QueryTasks(status=WorkStatus(str(status_value)), request_id=request_id)
        except ValueError as error:
            raise InvalidRequestError(f"Unknown task status: {status_value!r}") from error
    if kind == MessageKind.GET_TASK:
        spec_name = raw.get("spec_name")
        if not isinstance(spec_name, str) or not spec_name:
            raise InvalidRequestError("get-task requires a non-empty spec_name.")
        return GetTask(spec_name=spec_name, request_id=request_id)

    spec = raw.get("spec")
    if not isinstance(spec, dict) or not isinstance(spec.get("name"), str) or not spec["name"]:
        raise InvalidRequestError("submit-task requires spec.name.")
    depends_on = spec.get("depends_on") or []
    if not isinstance(depends_on, list):
        raise InvalidRequestError("spec.depends_on must be a list.")
    path = spec.get("path")
    return SubmitTask(
        spec=SpecNode.create(
            spec["name"],
            path=str(path) if path else None,
            depends_on=[str(item) for item in depends_on],
        ),
        request_id=request_id,
    )


class SchedulerMessageHandler:
    """Answers typed requests from the state of one worker pool."""

    def __init__(self, pool: WorkerPool, *, batch_options: BatchOptions | None = None) -> None:
        self.pool = pool
        self.batch_options = batch_options or BatchOptions(concurrency=1)

    def handle_raw(self, raw: dict[str, object]) -> MessageResult:
        try:
            request = parse_request(raw)
        except InvalidRequestError as error:
            return MessageError(
                request_id=str(raw.get("request_id") or ""),
                code=ErrorCode.INVALID_REQUEST,
                message=str(error),
            )
        return self.handle(request)

    def handle(self, request: Request) -> MessageResult:
        logger.debug("Handling %s request %s", request.kind.value, request.request_id)
        try:
            if isinstance(request, QueryAgents):
                return self._query_agents(request)
            if isinstance(request, QueryTasks):
                return self._query_tasks(request)
            if isinstance(request, GetTask):
                return self._get_task(request)
            return self._submit_task(request)
        except Exception as error:  # noqa: BLE001
            logger.exception("Error handling %s request %s", request.kind.value, request.request_id)
            return MessageError(
                request_id=request.request_id,
                code=ErrorCode.INTERNAL_ERROR,
                message=str(error) or type(error).__name__,
            )

    def _query_agents(self, request: QueryAgents) -> MessageResult:
        return MessageOk(
            request_id=request.request_id,
            kind=request.kind,
            payload={
                "running": self.pool.is_running,
                "active_specs": self.pool.active_specs(),
            },
        )

    def _query_tasks(self, request: QueryTasks) -> MessageResult:
        items = self.pool.items()
        tasks = [
            _item_payload(item)
            for _, item in sorted(items.items())
            if request.status is None or item.status == request.status
        ]
        return MessageOk(request_id=request.request_id, kind=request.kind, payload={"tasks": tasks})

    def _get_task(self, request: GetTask) -> MessageResult:
        item = self.pool.items().get(request.spec_name)
        if item is None:
            return MessageError(
                request_id=request.request_id,
                code=ErrorCode.NOT_FOUND,
                message=f"Unknown spec: {request.spec_name}",
            )
        return MessageOk(
            request_id=request.request_id,
            kind=request.kind,
            payload={"task": _item_payload(item)},
        )

    def _submit_task(self, request: SubmitTask) -> MessageResult:
        if self.pool.is_running:
            return _busy(request)
        succeeded = [
            name for name, status in self.pool.snapshot().items() if status == WorkStatus.SUCCEEDED
        ]
        try:
            graph = DependencyGraph.build([request.spec], satisfied=succeeded)
        except ValueError as error:
            return MessageError(
                request_id=request.request_id,
                code=ErrorCode.INVALID_REQUEST,
                message=str(error),
            )
        try:
            result = self.pool.run_batch(graph, self.batch_options)
        except PoolBusyError:
            return _busy(request)
        outcome = result.outcome(request.spec.name)
        return MessageOk(
            request_id=request.request_id,
            kind=request.kind,
            payload={
                "run_id": result.run_id,
                "spec_name": request.spec.name,
                "status": outcome.status.value if outcome is not None else None,
                "error": outcome.error if outcome is not None else None,
                "cost_usd": result.total_cost_usd,
            },
        )


def _busy(request: SubmitTask) -> MessageError:
    return MessageError(
        request_id=request.request_id,
        code=ErrorCode.BUSY,
        message="A batch is already running.",
    )


def _item_payload(item: WorkItem) -> dict[str, object]:
    return {
        "spec_name": item.spec.name,
        "status": item.status.value,
        "attempt": item.attempt,
        "cost_usd": item.cost_usd,
        "error": item.error,
        "blocked_by": list(item.blocked_by),
    }
