"""Local deterministic agent for CLI executor and auditor integration tests.

``run`` marks a spec as implemented inside the workspace, unless a
``<spec>.fail`` file there holds an error text to fail with. ``audit`` writes
one gap spec for every original spec that is not marked yet.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

MARKER_DIR = ".echo-agent"


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic demo execution."""

    parser = argparse.ArgumentParser(prog="echo_agent")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run")
    run_parser.add_argument("--spec-name", required=True)
    run_parser.add_argument("--prompt-file")
    _add_common_arguments(run_parser)
    run_parser.add_argument("--fail-with")
    run_parser.add_argument("--exit-code", type=int, default=1)

    audit_parser = subparsers.add_parser("audit")
    audit_parser.add_argument("--spec-dir", required=True)
    audit_parser.add_argument("--output-dir", required=True)
    _add_common_arguments(audit_parser)

    args = parser.parse_args(argv)
    workspace = Path(args.workspace)
    if args.command == "run":
        return _run(args, workspace)
    return _audit(args, workspace)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--workspace", default=".")
    parser.add_argument("--cost", type=float, default=0.0)


def _run(args: argparse.Namespace, workspace: Path) -> int:
    fail_marker = workspace / MARKER_DIR / f"{args.spec_name}.fail"
    fail_with = args.fail_with
    if fail_with is None and fail_marker.exists():
        fail_with = fail_marker.read_text("utf-8").strip() or "failed"
    if fail_with:
        sys.stderr.write(f"{fail_with}\n")
        _emit(result=fail_with, cost=args.cost)
        return args.exit_code

    marker = workspace / MARKER_DIR / f"{args.spec_name}.done"
    marker.parent.mkdir(parents=True, exist_ok=True)
    prompt_chars = 0
    if args.prompt_file:
        prompt_chars = len(Path(args.prompt_file).read_text("utf-8"))
    marker.write_text(f"{prompt_chars}\n", "utf-8")
    _emit(result=f"Implemented {args.spec_name}", cost=args.cost)
    return 0


def _audit(args: argparse.Namespace, workspace: Path) -> int:
    spec_dir = Path(args.spec_dir)
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    gaps = 0
    for spec_path in sorted(spec_dir.glob("*.md")):
        if (workspace / MARKER_DIR / f"{spec_path.name}.done").exists():
            continue
        (output_dir / spec_path.name).write_text(
            f"---\nsource: audit\n---\n\n# Gap: {spec_path.name}\n\nNot implemented yet.\n",
            "utf-8",
        )
        gaps += 1
    _emit(result=f"Found {gaps} gap(s)", cost=args.cost)
    return 0


def _emit(*, result: str, cost: float) -> None:
    sys.stdout.write(json.dumps({"result": result, "total_cost_usd": cost, "is_error": False}))
    sys.stdout.write("\n")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
