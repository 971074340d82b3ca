from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils import slugify_name


# Well-known workspace filenames.
REQUIREMENTS_FILENAME = "CLAUDE.md"
AUDIT_FILENAME = "audit_trace.jsonl"
SPEC_FILENAME = "PACKAGE_SPEC.md"


class CapabilityTier(str, Enum):
    """Cost/quality level of the agent handling a step."""

    LOW = "low"
    MID = "mid"
    HIGH = "high"


class PermissionMode(str, Enum):
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    FULL = "full"


class FailureCategory(str, Enum):
    """Closed set of compliance failure classes."""

    DEPENDENCY_INSTALL = "dependency_install"
    TYPE_BUILD = "type_build"
    LINT = "lint"
    TEST = "test"
    UNCLASSIFIED = "unclassified"


class ValidationStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    NOT_APPLICABLE = "N/A"


class StepName(str, Enum):
    WORKSPACE_SETUP = "workspace_setup"
    ARCHITECTURE_PLANNING = "architecture_planning"
    SCAFFOLD = "scaffold"
    IMPLEMENT = "implement"
    VALIDATION_INITIAL = "validation_initial"
    VALIDATION_MERGED = "validation_merged"

    @staticmethod
    def validation_attempt(pass_number: int) -> str:
        """Step name for the ``pass_number``-th verification pass (1-based)."""
        if pass_number < 1:
            raise ValueError(f"pass_number must be >= 1, got: {pass_number}")
        if pass_number == 1:
            return StepName.VALIDATION_INITIAL.value
        return f"validation_attempt_{pass_number}"

    @staticmethod
    def repair(attempt: int) -> str:
        if attempt < 1:
            raise ValueError(f"repair attempt must be >= 1, got: {attempt}")
        return f"repair_{attempt}"

    @staticmethod
    def parallel(task_name: str) -> str:
        return f"parallel_{task_name}"


# Tool sets granted per phase.
PLANNING_TOOLS: tuple[str, ...] = ("Read", "Grep", "Glob")
SCAFFOLD_TOOLS: tuple[str, ...] = ("Read", "Write", "Bash")
IMPLEMENT_TOOLS: tuple[str, ...] = ("Read", "Write", "Edit", "Bash")
REPAIR_TOOLS: tuple[str, ...] = ("Read", "Edit", "Bash")
DEFAULT_TASK_TOOLS: tuple[str, ...] = ("Read", "Write", "Edit", "Bash")


class PullRequestConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    branch_name: str | None = None
    base_branch: str = "main"
    title: str | None = None
    body: str | None = None
    draft: bool = True
    labels: tuple[str, ...] = ("automated", "needs-review")


class BuildRequest(BaseModel):
    """Immutable input for one build run."""

    model_config = ConfigDict(frozen=True)

    spec_content: str
    requirements_content: str
    base_path: str | None = None
    scaffold_tier: CapabilityTier = CapabilityTier.MID
    implement_tier: CapabilityTier = CapabilityTier.MID
    use_architecture_planning: bool = False
    publish: bool = False
    pr_config: PullRequestConfig = Field(default_factory=PullRequestConfig)

    @field_validator("spec_content", "requirements_content")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be non-empty")
        return value


class ParallelTask(BaseModel):
    """One independent sub-task of a decomposed build."""

    model_config = ConfigDict(frozen=True)

    name: str
    branch_name: str
    instruction: str
    tier: CapabilityTier = CapabilityTier.MID
    allowed_tools: tuple[str, ...] = DEFAULT_TASK_TOOLS

    @field_validator("name", "branch_name", "instruction")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be non-empty")
        return value.strip()


class ParallelBuildRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    spec_content: str
    requirements_content: str
    tasks: tuple[ParallelTask, ...]
    base_path: str | None = None
    publish: bool = False
    pr_config: PullRequestConfig = Field(
        default_factory=lambda: PullRequestConfig(labels=("automated", "parallel-build"))
    )

    @model_validator(mode="after")
    def _validate_tasks(self) -> "ParallelBuildRequest":
        if not self.tasks:
            raise ValueError("parallel build requires at least one task")
        names = [task.name for task in self.tasks]
        if len(set(names)) != len(names):
            raise ValueError("parallel task names must be unique")
        branches = [task.branch_name for task in self.tasks]
        if len(set(branches)) != len(branches):
            raise ValueError("parallel task branch names must be unique")
        slugs = [slugify_name(branch, max_length=len(branch)) for branch in branches]
        if len(set(slugs)) != len(slugs):
            raise ValueError("parallel task branch names must map to distinct workspace names")
        return self


class AgentInvocation(BaseModel):
    """Everything the agent executor needs for one call."""

    model_config = ConfigDict(frozen=True)

    instruction: str
    working_dir: str
    session_id: str | None = None
    continue_recent: bool = False
    allowed_tools: tuple[str, ...] = IMPLEMENT_TOOLS
    permission_mode: PermissionMode = PermissionMode.ACCEPT_EDITS
    tier: CapabilityTier = CapabilityTier.MID
    system_prompt_append: str | None = None
    timeout_seconds: int = 600


class AgentResult(BaseModel):
    success: bool
    result: str = ""
    cost_usd: float = 0.0
    duration_ms: int = 0
    # Opaque; forwarded to the next invocation, never parsed.
    session_id: str = ""
    num_turns: int | None = None
    error: str | None = None
    raw_output: str | None = None


class ComplianceResult(BaseModel):
    success: bool
    output: str
    commands_run: list[str] = Field(default_factory=list)
    failed_command: str | None = None
    failure_category: FailureCategory | None = None
    failure_output: str | None = None

    @model_validator(mode="after")
    def _failure_is_classified(self) -> "ComplianceResult":
        if not self.success and self.failure_category is None:
            self.failure_category = FailureCategory.UNCLASSIFIED
        return self


class AuditEntry(BaseModel):
    workflow_run_id: str
    step_name: str
    timestamp: str = ""
    cost_usd: float = 0.0
    session_id: str | None = None
    model: CapabilityTier | None = None
    validation_status: ValidationStatus = ValidationStatus.NOT_APPLICABLE
    failure_category: FailureCategory | None = None
    error_log_size_chars: int | None = None
    duration_ms: int | None = None
    num_turns: int | None = None
    error: str | None = None


class PublishStepResult(BaseModel):
    success: bool
    stdout: str = ""
    stderr: str = ""
    commit_hash: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    error: str | None = None


class PublishResult(BaseModel):
    branch_name: str
    committed: bool = False
    pushed: bool = False
    commit_hash: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    errors: list[str] = Field(default_factory=list)


class BuildResult(BaseModel):
    success: bool
    run_id: str
    workspace_path: str
    total_cost: float
    session_id: str
    repair_attempts: int
    verification_passes: int
    publish: PublishResult | None = None

    @property
    def audit_path(self) -> Path:
        return Path(self.workspace_path) / AUDIT_FILENAME


class ParallelTaskResult(BaseModel):
    task_name: str
    branch_name: str
    success: bool
    cost: float = 0.0
    session_id: str | None = None
    workspace_path: str | None = None
    error: str | None = None


class MergeResult(BaseModel):
    merged_branches: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
    # Branches whose copy-back hit an I/O error; some of their paths may already be in the base.
    failed_branches: list[str] = Field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.conflicts and not self.failed_branches


class ParallelBuildResult(BaseModel):
    success: bool
    run_id: str
    workspace_path: str
    total_cost: float
    task_results: list[ParallelTaskResult]
    merge: MergeResult
    publish: PublishResult | None = None

    def failed_tasks(self) -> list[ParallelTaskResult]:
        return [result for result in self.task_results if not result.success]


def dump_state_value(model: BaseModel) -> dict[str, Any]:
    """JSON-compatible dict for graph state."""
    return model.model_dump(mode="json")
