from __future__ import annotations

from typing import Any


class BuildError(RuntimeError):
    """Base class for orchestration failures.

    ``non_retryable`` marks failures that a durable-execution layer must not
    retry automatically; ``details`` carries inspection data for the caller.
    """

    non_retryable: bool = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class WorkspaceSetupError(BuildError):
    """Workspace directory or requirements document could not be created."""

    non_retryable = True


class AgentInvocationError(BuildError):
    """The agent executor failed to run or its output could not be parsed."""

    non_retryable = True

    def __init__(
        self,
        step_name: str,
        error: str,
        *,
        raw_output: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(f"Agent invocation failed during '{step_name}': {error}", details=details)
        self.step_name = step_name
        self.error = error
        self.raw_output = raw_output


class RepairBudgetExhaustedError(BuildError):
    """Compliance checks kept failing until the repair budget ran out."""

    non_retryable = True

    def __init__(
        self,
        *,
        max_attempts: int,
        workspace_path: str,
        total_cost: float,
        last_session_id: str,
    ) -> None:
        super().__init__(
            f"Failed to meet publishing requirements after {max_attempts} repair attempts. "
            f"Manual review required. Check audit_trace.jsonl in {workspace_path} for details.",
            details={
                "workspace_path": workspace_path,
                "total_cost": total_cost,
                "last_session_id": last_session_id,
            },
        )
        self.max_attempts = max_attempts
        self.workspace_path = workspace_path
        self.total_cost = total_cost
        self.last_session_id = last_session_id


class MergedValidationError(BuildError):
    """Compliance checks failed on the merged result of a parallel build."""

    non_retryable = True

    def __init__(self, *, workspace_path: str, output: str, conflicts: list[str]) -> None:
        super().__init__(
            f"Merged build failed validation: {output[:500]}. "
            f"Check audit_trace.jsonl in {workspace_path} for details.",
            details={"workspace_path": workspace_path, "conflicts": list(conflicts)},
        )
        self.workspace_path = workspace_path
        self.conflicts = list(conflicts)


class MissingCredentialsError(BuildError):
    non_retryable = True

    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            f"Missing required credentials: {', '.join(missing)}",
            details={"missing": list(missing)},
        )
        self.missing = list(missing)
