"""Prompt text for each build phase."""

from __future__ import annotations

from .models import REQUIREMENTS_FILENAME, SPEC_FILENAME, CapabilityTier, ComplianceResult, ParallelTask

ARCHITECTURAL_REASONING_TRIGGER = "THINK HARD about the root cause of these errors"
REPAIR_SYSTEM_PROMPT = "Focus only on fixing the reported errors. Prefer surgical edits over file rewrites."


def _fenced(text: str) -> str:
    return f"```\n{text}\n```"


def planning_instruction(spec_content: str) -> str:
    return f"""ULTRATHINK about the best architecture for this package:

{spec_content}

Consider deeply:
- Type safety patterns (generics vs. unions vs. branded types)
- Error handling strategy (Result types vs. exceptions)
- Module boundary purity and separation of concerns
- API surface consistency and future extensibility

Consider long-horizon implications and global design consistency.

Create a detailed implementation plan including:
- File structure and module organization
- Type hierarchy and relationships
- Error handling strategy
- Test strategy

Output your analysis and plan. Do not modify any files."""


def scaffold_instruction(spec_content: str) -> str:
    return f"""Create the package structure for the following specification:

{spec_content}

Generate these files based on the requirements in {REQUIREMENTS_FILENAME}:
- package manifest (with all required scripts and dependencies)
- compiler configuration (strict mode enabled)
- test runner configuration (coverage thresholds per requirements)
- lint configuration (strict rules per requirements)
- README.md (with usage examples)

Create the src/ and __tests__/ directory structure."""


def implement_instruction() -> str:
    return f"""Now implement the full package based on the specification we discussed.

Create:
- All source files in src/
- Comprehensive tests in __tests__/
- Doc comments on all public exports

Ensure all requirements from {REQUIREMENTS_FILENAME} are met."""


def repair_instruction(result: ComplianceResult, tier: CapabilityTier) -> str:
    """Compose the repair prompt for a failed compliance pass.

    The HIGH tier gets a deliberate root-cause prompt that allows coordinated
    changes across files. LOW and MID get a scoped, minimal-edit prompt.
    """
    transcript = _fenced(result.output)
    if tier == CapabilityTier.HIGH:
        return f"""{ARCHITECTURAL_REASONING_TRIGGER}:

{transcript}

Analyze the architectural or design issues causing these failures.
Fix with minimal, surgical changes addressing the root cause.
Do not regenerate entire files.

Consider whether this is a symptom of a deeper architectural issue that requires
coordinated changes across multiple files, and make those coordinated changes if so."""

    failed = f"\nFailing command: {result.failed_command}\n" if result.failed_command else ""
    return f"""The compliance check failed. Here is the error log:

{transcript}
{failed}
Fix these issues. You created these files, so you know the intent.
- Make minimal, targeted changes
- Do not regenerate entire files
- Address the root cause, not just the symptoms"""


def parallel_task_instruction(task: ParallelTask) -> str:
    return f"""{task.instruction}

The package specification is in {SPEC_FILENAME} and the project requirements are in
{REQUIREMENTS_FILENAME}, both at the workspace root. Other parts of the package are being
built at the same time in separate copies of this workspace, so change only what this
task ("{task.name}") asks for."""
