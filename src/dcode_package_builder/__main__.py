"""Entry point for `python -m dcode_package_builder` and the `dcode-builder` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from pathlib import Path

from pydantic import ValidationError

from dcode_package_builder.errors import BuildError
from dcode_package_builder.executor import AgentExecutor, ClaudeCliExecutor
from dcode_package_builder.models import (
    BuildRequest,
    CapabilityTier,
    ParallelBuildRequest,
    ParallelTask,
    PullRequestConfig,
)
from dcode_package_builder.orchestrator import SequentialBuildOrchestrator
from dcode_package_builder.parallel import ParallelBuildOrchestrator
from dcode_package_builder.publish import check_credentials
from dcode_package_builder.settings import RuntimeSettings


TIER_CHOICES = [tier.value for tier in CapabilityTier]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Build a package by driving a coding agent through scaffold, implement, verify and repair"
    )
    parser.add_argument("--spec-file", type=Path, default=None, help="Markdown package specification")
    parser.add_argument(
        "--requirements-file",
        type=Path,
        default=None,
        help="Static project requirements written once into the workspace",
    )
    parser.add_argument(
        "--tasks-file",
        type=Path,
        default=None,
        help="JSON list of independent sub-tasks; selects the parallel build path",
    )
    parser.add_argument("--plan", action="store_true", help="Run high-tier architecture planning before scaffolding")
    parser.add_argument("--publish", action="store_true", help="Branch, commit, push and open a draft PR after success")
    parser.add_argument("--branch-name", default=None, help="Branch for the publish step (default: feat/<package>)")
    parser.add_argument("--base-branch", default="main", help="Pull request base branch")
    parser.add_argument("--base-path", default=None, help="Parent directory for build workspaces")
    parser.add_argument("--scaffold-tier", default="mid", choices=TIER_CHOICES)
    parser.add_argument("--implement-tier", default="mid", choices=TIER_CHOICES)
    parser.add_argument(
        "--executor",
        default="cli",
        choices=["cli", "deepagent"],
        help="Agent executor: the coding-agent CLI, or an in-process deep agent",
    )
    parser.add_argument(
        "--resume",
        default=None,
        metavar="RUN_ID",
        help="Resume a checkpointed run (combine with --tasks-file for a parallel run)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_tasks(tasks_file: Path) -> tuple[ParallelTask, ...]:
    if not tasks_file.is_file():
        raise FileNotFoundError(f"Tasks file does not exist: {tasks_file}")
    payload = json.loads(tasks_file.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise ValueError(f"Tasks file must contain a JSON list: {tasks_file}")
    return tuple(ParallelTask.model_validate(item) for item in payload)


def read_input(path: Path | None, label: str) -> str:
    if path is None:
        raise ValueError(f"--{label} is required")
    if not path.is_file():
        raise FileNotFoundError(f"Requested input file does not exist: {path}")
    return path.read_text(encoding="utf-8")


def build_executor(kind: str, settings: RuntimeSettings) -> AgentExecutor:
    if kind == "deepagent":
        from dcode_package_builder.agent_runtime import DeepAgentExecutor

        return DeepAgentExecutor(settings=settings)
    return ClaudeCliExecutor(settings=settings)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        if args.base_path is not None:
            settings = replace(settings, base_path=args.base_path).normalized()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    agent_cli = settings.agent_cli if args.executor == "cli" else None
    orchestrator_kwargs = {
        "executor": build_executor(args.executor, settings),
        "settings": settings,
        "preflight": lambda request: check_credentials(require_github=request.publish, agent_cli=agent_cli),
    }
    pr_config = PullRequestConfig(branch_name=args.branch_name, base_branch=args.base_branch)

    try:
        if args.tasks_file is not None:
            orchestrator = ParallelBuildOrchestrator(**orchestrator_kwargs)
            if args.resume:
                result = orchestrator.resume(args.resume)
            else:
                request = ParallelBuildRequest(
                    spec_content=read_input(args.spec_file, "spec-file"),
                    requirements_content=read_input(args.requirements_file, "requirements-file"),
                    tasks=load_tasks(args.tasks_file),
                    base_path=args.base_path,
                    publish=args.publish,
                    pr_config=pr_config.model_copy(update={"labels": ("automated", "parallel-build")}),
                )
                result = orchestrator.run(request)
        else:
            orchestrator = SequentialBuildOrchestrator(**orchestrator_kwargs)
            if args.resume:
                result = orchestrator.resume(args.resume)
            else:
                request = BuildRequest(
                    spec_content=read_input(args.spec_file, "spec-file"),
                    requirements_content=read_input(args.requirements_file, "requirements-file"),
                    base_path=args.base_path,
                    scaffold_tier=CapabilityTier(args.scaffold_tier),
                    implement_tier=CapabilityTier(args.implement_tier),
                    use_architecture_planning=args.plan,
                    publish=args.publish,
                    pr_config=pr_config,
                )
                result = orchestrator.run(request)
    except (OSError, ValueError, ValidationError) as exc:
        logging.error("Unable to load build input: %s", exc)
        return 1
    except BuildError as exc:
        logging.error("Build failed: %s", exc)
        if exc.details:
            print(json.dumps(exc.details, indent=2, default=str))
        print("success=False")
        return 1

    print(f"success={result.success}")
    print(result.model_dump_json(indent=2))
    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
