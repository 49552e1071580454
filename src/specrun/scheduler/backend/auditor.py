"""Subprocess-based auditor that asks a CLI agent to write gap specs."""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path

from specrun.scheduler.backend.base import BackendRunError, CommandRunRequest
from specrun.scheduler.backend.cli_backend import (
    build_run_args,
    interpret_agent_output,
    run_command,
)
from specrun.scheduler.deps import list_spec_files, load_spec_node
from specrun.scheduler.models import AuditResult, SpecNode

logger = logging.getLogger(__name__)


class AuditError(RuntimeError):
    """The audit command failed, so no gap list is available."""


class CliAuditor:
    """Audit the codebase against the original specs with a CLI agent."""

    def __init__(
        self,
        *,
        command_template: str,
        model: str,
        timeout_seconds: int,
        workdir: Path,
    ) -> None:
        self.command_template = command_template
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.workdir = workdir.resolve()

    def audit(
        self,
        original_specs: list[SpecNode],
        codebase: Path,
        output_dir: Path,
    ) -> AuditResult:
        output_dir = output_dir.resolve()
        attempt_dir = self.workdir / "audit" / uuid.uuid4().hex[:12]
        attempt_dir.mkdir(parents=True, exist_ok=True)
        output_dir.mkdir(parents=True, exist_ok=True)

        prompt = build_audit_prompt(original_specs, output_dir)
        prompt_file = attempt_dir / "prompt.md"
        prompt_file.write_text(prompt, "utf-8")

        run_args, command_head = build_run_args(
            command_template=self.command_template,
            values={
                "spec_dir": str(_spec_dir(original_specs)),
                "output_dir": str(output_dir),
                "prompt": prompt,
                "prompt_file": str(prompt_file),
                "model": self.model,
            },
            required_any=("prompt", "prompt_file", "output_dir"),
        )
        env = os.environ.copy()
        env["SPECRUN_AUDIT_OUTPUT_DIR"] = str(output_dir)
        env["SPECRUN_AGENT_MODEL"] = self.model

        try:
            execution = run_command(
                CommandRunRequest(
                    run_args=run_args,
                    command_head=command_head,
                    stdout_path=attempt_dir / "stdout.log",
                    stderr_path=attempt_dir / "stderr.log",
                    timeout_seconds=self.timeout_seconds,
                    cwd=codebase,
                    env=env,
                ),
            )
        except BackendRunError as error:
            raise AuditError(f"Audit failed: {error}") from error
        result = interpret_agent_output(execution, timeout_seconds=self.timeout_seconds)
        if not result.success:
            raise AuditError(f"Audit failed: {result.error}")

        gap_specs = [load_spec_node(path) for path in list_spec_files(output_dir)]
        logger.info("Audit wrote %d gap spec(s) to %s", len(gap_specs), output_dir)
        return AuditResult(
            gap_specs=gap_specs,
            cost_usd=result.cost_usd,
        )


def build_audit_prompt(original_specs: list[SpecNode], output_dir: Path) -> str:
    """Concatenate the original specs under audit instructions."""

    sections: list[str] = []
    for spec in original_specs:
        path = Path(spec.path)
        content = path.read_text("utf-8") if path.is_file() else ""
        sections.append(f"### {spec.name}\n\n{content.strip()}")
    joined = "\n\n---\n\n".join(sections)
    return (
        f"## Outcome\n"
        f"\n"
        f"Audit the codebase against the specifications below. For any work that\n"
        f"remains incomplete, unimplemented, or incorrect, write new spec files\n"
        f"in {output_dir}/.\n"
        f"\n"
        f"Each output spec must be a self-contained .md file focused on a single\n"
        f"concern and named descriptively (e.g. fix-auth-token-refresh.md).\n"
        f"If everything is implemented, write no files.\n"
        f"\n"
        f"## Specifications\n"
        f"\n"
        f"{joined}\n"
    )


def _spec_dir(original_specs: list[SpecNode]) -> Path:
    parents = {Path(spec.path).parent for spec in original_specs}
    if len(parents) == 1:
        return parents.pop()
    return Path(os.path.commonpath([str(parent) for parent in parents])) if parents else Path()
