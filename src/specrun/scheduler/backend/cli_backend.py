"""Subprocess-based spec executor for CLI agents."""

from __future__ import annotations

import json
import os
import re
import shlex
import string
import subprocess
import time
import uuid
from collections.abc import Callable
from pathlib import Path

from specrun.scheduler.backend.base import (
    BackendRunError,
    CommandRunRequest,
    CommandRunResult,
    CommandTemplateError,
)
from specrun.scheduler.failure_classifier import looks_like_api_error
from specrun.scheduler.models import ExecutionResult, FailureClass, SpecNode

TIMEOUT_EXIT_CODE = 124
INTERRUPTED_EXIT_CODE = 130

_COST_MARKER = re.compile(
    r'"?(?:total_cost_usd|cost_usd)"?\s*[:=]\s*([0-9]+(?:\.[0-9]+)?)',
    re.IGNORECASE,
)
_ERROR_TAIL_CHARS = 500


class CliSpecExecutor:
    """Run each spec through a command template such as ``claude -p {prompt}``.

    Every attempt gets its own directory under ``workdir`` holding the prompt
    file and the captured stdout/stderr.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        command_template: str,
        model: str,
        timeout_seconds: int,
        workdir: Path,
        cwd: Path | None = None,
        shutdown_requested: Callable[[], bool] | None = None,
        graceful_shutdown_seconds: int | None = None,
    ) -> None:
        self.command_template = command_template
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.workdir = workdir.resolve()
        self.cwd = cwd
        self.shutdown_requested = shutdown_requested
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def run(self, spec: SpecNode) -> ExecutionResult:
        if not Path(spec.path).is_file():
            return ExecutionResult(
                success=False,
                error=f"Spec file not found: {spec.path}",
                failure_class=FailureClass.FATAL,
            )
        attempt_dir = self.workdir / _safe_name(spec.name) / uuid.uuid4().hex[:12]
        attempt_dir.mkdir(parents=True, exist_ok=True)

        prompt = build_spec_prompt(spec)
        prompt_file = attempt_dir / "prompt.md"
        prompt_file.write_text(prompt, "utf-8")

        run_args, command_head = build_run_args(
            command_template=self.command_template,
            values={
                "spec_path": spec.path,
                "spec_name": spec.name,
                "prompt": prompt,
                "prompt_file": str(prompt_file),
                "model": self.model,
            },
            required_any=("prompt", "prompt_file", "spec_path"),
        )

        env = os.environ.copy()
        env["SPECRUN_SPEC_NAME"] = spec.name
        env["SPECRUN_SPEC_PATH"] = spec.path
        env["SPECRUN_AGENT_MODEL"] = self.model

        try:
            execution = run_command(
                CommandRunRequest(
                    run_args=run_args,
                    command_head=command_head,
                    stdout_path=attempt_dir / "stdout.log",
                    stderr_path=attempt_dir / "stderr.log",
                    timeout_seconds=self.timeout_seconds,
                    cwd=self.cwd,
                    env=env,
                    shutdown_requested=self.shutdown_requested,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                ),
            )
        except BackendRunError as error:
            return ExecutionResult(
                success=False,
                error=str(error),
                failure_class=FailureClass.FATAL,
            )
        return interpret_agent_output(execution, timeout_seconds=self.timeout_seconds)


def build_spec_prompt(spec: SpecNode) -> str:
    """Wrap the spec content with the implementation instructions."""

    spec_path = Path(spec.path)
    content = spec_path.read_text("utf-8") if spec_path.is_file() else ""
    return (
        f"Implement the following specification in the current working directory.\n"
        f"\n"
        f"## Specification: {spec.name}\n"
        f"\n"
        f"{content.strip()}\n"
        f"\n"
        f"Work until every requirement of the specification is met. "
        f"Do not ask questions; make reasonable decisions and continue.\n"
    )


def interpret_agent_output(
    execution: CommandRunResult,
    *,
    timeout_seconds: int,
) -> ExecutionResult:
    """Map a finished agent command to an execution result."""

    stdout = execution.read_stdout()
    stderr = execution.read_stderr()
    payload = _parse_json_payload(stdout)
    cost = extract_cost_usd(stdout, stderr, payload=payload)
    result_text = _result_text(stdout, payload)

    if execution.interrupted:
        return ExecutionResult(
            success=False,
            cost_usd=cost,
            duration_seconds=execution.duration_seconds,
            error="Agent stopped after batch cancellation",
            output=result_text,
            failure_class=FailureClass.FATAL,
        )
    if execution.timed_out:
        return ExecutionResult(
            success=False,
            cost_usd=cost,
            duration_seconds=execution.duration_seconds,
            error=f"Agent timeout after {timeout_seconds}s",
            output=result_text,
        )
    if execution.exit_code != 0:
        detail = _tail(stderr.strip() or result_text.strip())
        error = f"Agent exited with code {execution.exit_code}"
        return ExecutionResult(
            success=False,
            cost_usd=cost,
            duration_seconds=execution.duration_seconds,
            error=f"{error}: {detail}" if detail else error,
            output=result_text,
        )
    if payload is not None and payload.get("is_error") is True:
        return ExecutionResult(
            success=False,
            cost_usd=cost,
            duration_seconds=execution.duration_seconds,
            error=_tail(result_text.strip()) or "Agent reported an error",
            output=result_text,
        )
    if looks_like_api_error(result_text):
        return ExecutionResult(
            success=False,
            cost_usd=cost,
            duration_seconds=execution.duration_seconds,
            error=f"Agent exited successfully but returned an API error: {_tail(result_text)}",
            output=result_text,
            failure_class=FailureClass.FATAL,
        )
    return ExecutionResult(
        success=True,
        cost_usd=cost,
        duration_seconds=execution.duration_seconds,
        output=result_text,
    )


def extract_cost_usd(
    stdout: str,
    stderr: str = "",
    *,
    payload: dict[str, object] | None = None,
) -> float:
    """Best-effort cost extraction from structured or textual agent output."""

    if payload is not None:
        for key in ("total_cost_usd", "cost_usd"):
            value = payload.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return float(value)
    for text in (stdout, stderr):
        matches = _COST_MARKER.findall(text)
        if matches:
            return float(matches[-1])
    return 0.0


def run_command(request: CommandRunRequest) -> CommandRunResult:
    """Run an agent command, capturing output into the request's log files."""

    request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
    request.stderr_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with (
            request.stdout_path.open("w", encoding="utf-8") as stdout_handle,
            request.stderr_path.open("w", encoding="utf-8") as stderr_handle,
        ):
            return _run_subprocess_with_shutdown(
                request=request,
                stdout_handle=stdout_handle,
                stderr_handle=stderr_handle,
            )
    except FileNotFoundError as error:
        raise BackendRunError(f"Agent command not found: {request.command_head}") from error
    except OSError as error:
        raise BackendRunError(f"Agent command failed to start: {error}") from error


def build_run_args(
    *,
    command_template: str,
    values: dict[str, str],
    required_any: tuple[str, ...],
    os_name: str | None = None,
) -> tuple[str | list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise CommandTemplateError("Agent command template is empty.")
    if not any(f"{{{name}}}" in stripped for name in required_any):
        placeholders = ", ".join(f"{{{name}}}" for name in required_any)
        raise CommandTemplateError(
            f"Agent command template must include one of: {placeholders}.",
        )

    current_os_name = os_name or os.name
    try:
        if current_os_name == "nt":
            rendered = _render_windows_command_template(template=stripped, values=values).strip()
            if not rendered:
                raise CommandTemplateError("Agent command template rendered empty command.")
            return rendered, rendered.split(maxsplit=1)[0]

        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except (KeyError, IndexError) as error:
        raise CommandTemplateError(
            f"Unsupported command template placeholder: {error}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise CommandTemplateError("Agent command template rendered empty command.")
    return argv, argv[0]


def _render_windows_command_template(*, template: str, values: dict[str, str]) -> str:
    formatter = string.Formatter()
    rendered_parts: list[str] = []
    in_double_quotes = False

    for literal_text, field_name, _format_spec, _conversion in formatter.parse(template):
        rendered_parts.append(literal_text)
        in_double_quotes = _advance_windows_quote_state(literal_text, in_double_quotes)
        if field_name is None:
            continue

        value_text = values[field_name]
        if in_double_quotes:
            rendered_parts.append(value_text.replace('"', '\\"'))
            continue
        rendered_parts.append(subprocess.list2cmdline([value_text]))

    return "".join(rendered_parts)


def _advance_windows_quote_state(literal_text: str, in_double_quotes: bool) -> bool:
    for index, char in enumerate(literal_text):
        if char != '"':
            continue
        backslashes = 0
        scan_index = index - 1
        while scan_index >= 0 and literal_text[scan_index] == "\\":
            backslashes += 1
            scan_index -= 1
        if backslashes % 2 == 1:
            continue
        in_double_quotes = not in_double_quotes
    return in_double_quotes


def _run_subprocess_with_shutdown(
    *,
    request: CommandRunRequest,
    stdout_handle,
    stderr_handle,
) -> CommandRunResult:
    process = subprocess.Popen(  # noqa: S603
        request.run_args,
        cwd=request.cwd,
        env=request.env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = request.graceful_shutdown_seconds

    def _result(
        exit_code: int,
        *,
        timed_out: bool = False,
        interrupted: bool = False,
    ) -> CommandRunResult:
        return CommandRunResult(
            exit_code=exit_code,
            timed_out=timed_out,
            interrupted=interrupted,
            stdout_path=request.stdout_path,
            stderr_path=request.stderr_path,
            duration_seconds=time.monotonic() - start_monotonic,
        )

    while True:
        returncode = process.poll()
        if returncode is not None:
            return _result(returncode)

        now = time.monotonic()
        if now - start_monotonic >= request.timeout_seconds:
            _terminate_process(process)
            return _result(TIMEOUT_EXIT_CODE, timed_out=True)

        if (
            graceful_seconds is not None
            and request.shutdown_requested is not None
            and request.shutdown_requested()
        ):
            if shutdown_deadline is None:
                shutdown_deadline = now + max(0, graceful_seconds)
            if now >= shutdown_deadline:
                _terminate_process(process)
                return _result(INTERRUPTED_EXIT_CODE, interrupted=True)

        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _parse_json_payload(stdout: str) -> dict[str, object] | None:
    text = stdout.strip()
    if not text.startswith("{"):
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def _result_text(stdout: str, payload: dict[str, object] | None) -> str:
    if payload is not None and isinstance(payload.get("result"), str):
        return str(payload["result"])
    return stdout


def _tail(text: str) -> str:
    if len(text) <= _ERROR_TAIL_CHARS:
        return text
    return "..." + text[-_ERROR_TAIL_CHARS:]


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._") or "spec"
