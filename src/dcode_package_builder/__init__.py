from importlib.metadata import version

from .audit import AuditLedger
from .compliance import DEFAULT_COMPLIANCE_COMMANDS, CommandComplianceVerifier, ComplianceCommand, ComplianceVerifier
from .errors import (
    AgentInvocationError,
    BuildError,
    MergedValidationError,
    MissingCredentialsError,
    RepairBudgetExhaustedError,
    WorkspaceSetupError,
)
from .executor import AgentExecutor, ClaudeCliExecutor
from .model_selection import (
    ARCHITECTURAL_PATTERNS,
    ARCHITECTURAL_SIGNALS,
    RuntimeModelSelection,
    select_repair_tier,
)
from .models import (
    AgentInvocation,
    AgentResult,
    AuditEntry,
    BuildRequest,
    BuildResult,
    CapabilityTier,
    ComplianceResult,
    FailureCategory,
    MergeResult,
    ParallelBuildRequest,
    ParallelBuildResult,
    ParallelTask,
    ParallelTaskResult,
    PermissionMode,
    PublishResult,
    PullRequestConfig,
    StepName,
    ValidationStatus,
)
from .orchestrator import SequentialBuildOrchestrator, premium_build_request, simple_build_request
from .parallel import ParallelBuildOrchestrator
from .publish import GitPublisher, check_credentials, publish_build
from .settings import RuntimeSettings
from .workspace import WorkspaceManager


def get_version() -> str:
    try:
        return version("dcode-package-builder")
    except Exception:
        return "0.0.0"


__all__ = [
    "ARCHITECTURAL_PATTERNS",
    "ARCHITECTURAL_SIGNALS",
    "AgentExecutor",
    "AgentInvocation",
    "AgentInvocationError",
    "AgentResult",
    "AuditEntry",
    "AuditLedger",
    "BuildError",
    "BuildRequest",
    "BuildResult",
    "CapabilityTier",
    "ClaudeCliExecutor",
    "CommandComplianceVerifier",
    "ComplianceCommand",
    "ComplianceResult",
    "ComplianceVerifier",
    "DEFAULT_COMPLIANCE_COMMANDS",
    "FailureCategory",
    "GitPublisher",
    "MergeResult",
    "MergedValidationError",
    "MissingCredentialsError",
    "ParallelBuildOrchestrator",
    "ParallelBuildRequest",
    "ParallelBuildResult",
    "ParallelTask",
    "ParallelTaskResult",
    "PermissionMode",
    "PublishResult",
    "PullRequestConfig",
    "RepairBudgetExhaustedError",
    "RuntimeModelSelection",
    "RuntimeSettings",
    "SequentialBuildOrchestrator",
    "StepName",
    "ValidationStatus",
    "WorkspaceManager",
    "WorkspaceSetupError",
    "check_credentials",
    "get_version",
    "premium_build_request",
    "publish_build",
    "select_repair_tier",
    "simple_build_request",
]
