from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .models import ComplianceResult, FailureCategory
from .utils import as_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComplianceCommand:
    command: str
    category: FailureCategory


DEFAULT_COMPLIANCE_COMMANDS: tuple[ComplianceCommand, ...] = (
    ComplianceCommand("npm install", FailureCategory.DEPENDENCY_INSTALL),
    ComplianceCommand("npm run build", FailureCategory.TYPE_BUILD),
    ComplianceCommand("npm run lint", FailureCategory.LINT),
    ComplianceCommand("npm test", FailureCategory.TEST),
)


class ComplianceVerifier(Protocol):
    def verify(self, working_dir: str) -> ComplianceResult:
        ...


class CommandComplianceVerifier:
    """Runs install, build, lint and test in order and stops at the first failure.

    The transcript accumulates a ``=== cmd ===`` section per command (with a
    ``STDERR:`` block when present); the failing command's section is headed
    ``=== cmd (FAILED) ===``. A command that exceeds its timeout fails with
    that command's category, as does one that cannot be started (for example
    a missing working directory).
    """

    def __init__(
        self,
        commands: tuple[ComplianceCommand, ...] | list[ComplianceCommand] = DEFAULT_COMPLIANCE_COMMANDS,
        *,
        timeout_seconds: int = 300,
    ) -> None:
        if not commands:
            raise ValueError("at least one compliance command is required")
        self.commands = tuple(commands)
        self.timeout_seconds = timeout_seconds

    def verify(self, working_dir: str) -> ComplianceResult:
        logger.info("Running compliance checks in: %s", working_dir)
        commands_run: list[str] = []
        output = ""

        for step in self.commands:
            commands_run.append(step.command)
            logger.info("Executing: %s", step.command)
            failure_output: str | None = None
            try:
                completed = subprocess.run(
                    step.command,
                    shell=True,
                    cwd=Path(working_dir),
                    capture_output=True,
                    text=True,
                    timeout=self.timeout_seconds,
                    check=False,
                )
            except subprocess.TimeoutExpired as exc:
                failure_output = f"{as_text(exc.stdout)}Command timed out after {self.timeout_seconds}s"
            except OSError as exc:
                failure_output = f"Could not start command: {exc}"
            else:
                if completed.returncode != 0:
                    failure_output = (completed.stdout or "") + (
                        completed.stderr or f"Command exited with code {completed.returncode}"
                    )

            if failure_output is not None:
                output += f"\n=== {step.command} (FAILED) ===\n{failure_output}"
                logger.error("Compliance check failed: %s", step.command)
                return ComplianceResult(
                    success=False,
                    output=output,
                    commands_run=commands_run,
                    failed_command=step.command,
                    failure_category=step.category,
                    failure_output=failure_output,
                )

            output += f"\n=== {step.command} ===\n{completed.stdout or ''}"
            if completed.stderr:
                output += f"\nSTDERR:\n{completed.stderr}"

        logger.info("All compliance checks passed")
        return ComplianceResult(success=True, output=output, commands_run=commands_run)
