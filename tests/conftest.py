"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest

import specrun
from specrun.scheduler.models import ExecutionResult, SpecNode

ECHO_AGENT_RUN_TEMPLATE = (
    f"{sys.executable} -m specrun.scheduler.backend.echo_agent run "
    "--spec-name {spec_name} --prompt-file {prompt_file} --cost 0.25"
)
ECHO_AGENT_AUDIT_TEMPLATE = (
    f"{sys.executable} -m specrun.scheduler.backend.echo_agent audit "
    "--spec-dir {spec_dir} --output-dir {output_dir} --cost 0.1"
)

Behavior = ExecutionResult | Exception | Callable[[SpecNode], ExecutionResult]


class FakeExecutor:
    """Scripted executor: each spec name maps to the results of its attempts.

    The last scripted behavior repeats once the script runs out; unscripted
    specs succeed. Calls and peak parallelism are recorded.
    """

    def __init__(
        self,
        script: dict[str, list[Behavior]] | None = None,
        *,
        delay: float = 0.0,
        cost_usd: float = 0.0,
    ) -> None:
        self.script = {name: list(items) for name, items in (script or {}).items()}
        self.delay = delay
        self.cost_usd = cost_usd
        self.calls: list[str] = []
        self.intervals: dict[str, tuple[float, float]] = {}
        self.max_active = 0
        self._active = 0
        self._lock = threading.Lock()

    def run(self, spec: SpecNode) -> ExecutionResult:
        with self._lock:
            attempt = self.calls.count(spec.name)
            self.calls.append(spec.name)
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        started = time.monotonic()
        try:
            if self.delay:
                time.sleep(self.delay)
            behavior = self._behavior(spec.name, attempt)
            if isinstance(behavior, Exception):
                raise behavior
            if callable(behavior):
                return behavior(spec)
            return behavior
        finally:
            with self._lock:
                self._active -= 1
                self.intervals[spec.name] = (started, time.monotonic())

    def calls_for(self, name: str) -> int:
        return self.calls.count(name)

    def _behavior(self, name: str, attempt: int) -> Behavior:
        items = self.script.get(name)
        if not items:
            return ExecutionResult(success=True, cost_usd=self.cost_usd, duration_seconds=0.01)
        return items[min(attempt, len(items) - 1)]


def spec(name: str, *depends_on: str) -> SpecNode:
    return SpecNode.create(name, depends_on=depends_on)


def failure(error: str, *, cost_usd: float = 0.0) -> ExecutionResult:
    return ExecutionResult(success=False, error=error, cost_usd=cost_usd, duration_seconds=0.01)


def write_spec(spec_dir: Path, name: str, body: str = "", *, depends: tuple[str, ...] = ()) -> Path:
    spec_dir.mkdir(parents=True, exist_ok=True)
    frontmatter = ""
    if depends:
        frontmatter = f"---\ndepends: [{', '.join(depends)}]\n---\n\n"
    path = spec_dir / name
    path.write_text(f"{frontmatter}# {name}\n\n{body or 'Build it.'}\n", "utf-8")
    return path


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep SPECRUN_* variables of the developer shell out of the tests."""
    for name in list(os.environ):
        if name.startswith("SPECRUN_"):
            monkeypatch.delenv(name, raising=False)
    # Agent subprocesses import specrun from the source tree.
    source_root = str(Path(specrun.__file__).resolve().parent.parent)
    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join([source_root, existing]) if existing else source_root,
    )

