"""Sequential build orchestrator: setup, planning, scaffold, implement, then a bounded verify/repair loop."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypedDict

from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, StateGraph

from .audit import AuditLedger
from .compliance import CommandComplianceVerifier, ComplianceVerifier
from .errors import AgentInvocationError, MissingCredentialsError, RepairBudgetExhaustedError
from .executor import AgentExecutor, ClaudeCliExecutor
from .instructions import (
    REPAIR_SYSTEM_PROMPT,
    implement_instruction,
    planning_instruction,
    repair_instruction,
    scaffold_instruction,
)
from .model_selection import select_repair_tier
from .models import (
    IMPLEMENT_TOOLS,
    PLANNING_TOOLS,
    REPAIR_TOOLS,
    SCAFFOLD_TOOLS,
    AgentInvocation,
    AgentResult,
    AuditEntry,
    BuildRequest,
    BuildResult,
    CapabilityTier,
    ComplianceResult,
    PermissionMode,
    PublishResult,
    StepName,
    ValidationStatus,
    dump_state_value,
)
from .publish import GitPublisher, publish_build
from .settings import RuntimeSettings
from .utils import new_run_id
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)

# Returns the names of missing credentials/tools; empty when ready.
Preflight = Callable[[BuildRequest], list[str]]


class BuildGraphState(TypedDict, total=False):
    run_id: str
    request: dict[str, Any]
    workspace_path: str
    session_id: str | None
    total_cost: float
    repair_attempts: int
    verification_passes: int
    compliance: dict[str, Any] | None
    publish_result: dict[str, Any] | None


def simple_build_request(spec_content: str, requirements_content: str, **overrides: Any) -> BuildRequest:
    """Mid tier throughout, no architecture planning."""
    fields: dict[str, Any] = {
        "scaffold_tier": CapabilityTier.MID,
        "implement_tier": CapabilityTier.MID,
        "use_architecture_planning": False,
        **overrides,
    }
    return BuildRequest(spec_content=spec_content, requirements_content=requirements_content, **fields)


def premium_build_request(spec_content: str, requirements_content: str, **overrides: Any) -> BuildRequest:
    """Architecture planning at the high tier before scaffolding."""
    fields: dict[str, Any] = {
        "scaffold_tier": CapabilityTier.MID,
        "implement_tier": CapabilityTier.MID,
        "use_architecture_planning": True,
        **overrides,
    }
    return BuildRequest(spec_content=spec_content, requirements_content=requirements_content, **fields)


def agent_audit_entry(
    *,
    run_id: str,
    step_name: str,
    tier: CapabilityTier,
    result: AgentResult,
) -> AuditEntry:
    return AuditEntry(
        workflow_run_id=run_id,
        step_name=step_name,
        cost_usd=result.cost_usd,
        session_id=result.session_id or None,
        model=tier,
        validation_status=ValidationStatus.NOT_APPLICABLE if result.success else ValidationStatus.FAIL,
        duration_ms=result.duration_ms,
        num_turns=result.num_turns,
        error=result.error,
    )


def validation_audit_entry(*, run_id: str, step_name: str, compliance: ComplianceResult) -> AuditEntry:
    return AuditEntry(
        workflow_run_id=run_id,
        step_name=step_name,
        validation_status=ValidationStatus.PASS if compliance.success else ValidationStatus.FAIL,
        failure_category=compliance.failure_category,
        error_log_size_chars=None if compliance.success else len(compliance.output),
    )


def open_checkpointer(path: Path) -> tuple[sqlite3.Connection, SqliteSaver]:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    return conn, SqliteSaver(conn)


class SequentialBuildOrchestrator:
    """Drives one build through a LangGraph state machine checkpointed to SQLite.

    Graph::

        setup -> [planning] -> scaffold -> implement -> verify
        verify -> repair -> verify          (while passes < max)
        verify -> publish -> END            (on success, when requested)
        verify -> END                       (on success, or budget exhausted)

    The session token, cost accumulator and repair counter live in graph
    state, so ``resume(run_id)`` continues an interrupted run from its last
    completed node. Agent failures raise ``AgentInvocationError``; an
    exhausted repair budget raises ``RepairBudgetExhaustedError``.
    """

    def __init__(
        self,
        *,
        executor: AgentExecutor | None = None,
        verifier: ComplianceVerifier | None = None,
        publisher: GitPublisher | None = None,
        workspaces: WorkspaceManager | None = None,
        settings: RuntimeSettings | None = None,
        preflight: Preflight | None = None,
        checkpointer: Any | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.executor = executor if executor is not None else ClaudeCliExecutor(settings=self.settings)
        self.verifier = (
            verifier
            if verifier is not None
            else CommandComplianceVerifier(timeout_seconds=self.settings.compliance_timeout_seconds)
        )
        self.publisher = publisher if publisher is not None else GitPublisher(settings=self.settings)
        self.workspaces = workspaces if workspaces is not None else WorkspaceManager(self.settings)
        self.preflight = preflight

        self._conn: sqlite3.Connection | None = None
        if checkpointer is None:
            self._conn, checkpointer = open_checkpointer(self.settings.checkpoint_path())
        self._checkpointer = checkpointer
        self.graph = self._build_graph().compile(checkpointer=self._checkpointer)

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(BuildGraphState)
        graph.add_node("setup", self._setup_node)
        graph.add_node("planning", self._planning_node)
        graph.add_node("scaffold", self._scaffold_node)
        graph.add_node("implement", self._implement_node)
        graph.add_node("verify", self._verify_node)
        graph.add_node("repair", self._repair_node)
        graph.add_node("publish", self._publish_node)

        graph.add_edge(START, "setup")
        graph.add_conditional_edges(
            "setup",
            self._setup_route,
            {
                "planning": "planning",
                "scaffold": "scaffold",
            },
        )
        graph.add_edge("planning", "scaffold")
        graph.add_edge("scaffold", "implement")
        graph.add_edge("implement", "verify")
        graph.add_conditional_edges(
            "verify",
            self._verify_route,
            {
                "repair": "repair",
                "publish": "publish",
                "end": END,
            },
        )
        graph.add_edge("repair", "verify")
        graph.add_edge("publish", END)
        return graph

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # -- helpers --

    @staticmethod
    def _request(state: BuildGraphState) -> BuildRequest:
        return BuildRequest.model_validate(state["request"])

    @staticmethod
    def _ledger(state: BuildGraphState) -> AuditLedger:
        return AuditLedger(Path(state["workspace_path"]))

    def _invoke_agent(
        self,
        state: BuildGraphState,
        *,
        step_name: str,
        instruction: str,
        tier: CapabilityTier,
        allowed_tools: tuple[str, ...],
        permission_mode: PermissionMode = PermissionMode.ACCEPT_EDITS,
        session_id: str | None = None,
        system_prompt_append: str | None = None,
    ) -> dict[str, Any]:
        """Run one agent step, append its audit entry and return the state update.

        Raises:
            AgentInvocationError: If the executor reports failure.
        """
        invocation = AgentInvocation(
            instruction=instruction,
            working_dir=state["workspace_path"],
            session_id=session_id,
            allowed_tools=allowed_tools,
            permission_mode=permission_mode,
            tier=tier,
            system_prompt_append=system_prompt_append,
            timeout_seconds=self.settings.agent_timeout_seconds,
        )
        logger.info("Step %s: invoking agent (tier=%s, resume=%s)", step_name, tier.value, bool(session_id))
        result = self.executor.execute(invocation)
        total_cost = float(state.get("total_cost", 0.0)) + result.cost_usd
        self._ledger(state).append(
            agent_audit_entry(run_id=state["run_id"], step_name=step_name, tier=tier, result=result)
        )
        if not result.success:
            logger.error("Step %s failed: %s", step_name, result.error)
            raise AgentInvocationError(
                step_name,
                result.error or "unknown agent error",
                raw_output=result.raw_output,
                details={
                    "workspace_path": state["workspace_path"],
                    "session_id": result.session_id or None,
                    "total_cost": total_cost,
                },
            )
        logger.info("Step %s complete: cost=$%.4f", step_name, result.cost_usd)
        return {
            "session_id": result.session_id or session_id,
            "total_cost": total_cost,
        }

    # -- nodes --

    def _setup_node(self, state: BuildGraphState) -> dict[str, Any]:
        request = self._request(state)
        if self.preflight is not None:
            missing = self.preflight(request)
            if missing:
                raise MissingCredentialsError(missing)

        workspace = self.workspaces.create_workspace(
            run_id=state["run_id"],
            requirements_content=request.requirements_content,
            base_path=request.base_path,
        )
        AuditLedger(workspace).append(
            AuditEntry(workflow_run_id=state["run_id"], step_name=StepName.WORKSPACE_SETUP.value)
        )
        return {"workspace_path": str(workspace)}

    def _setup_route(self, state: BuildGraphState) -> str:
        return "planning" if self._request(state).use_architecture_planning else "scaffold"

    def _planning_node(self, state: BuildGraphState) -> dict[str, Any]:
        request = self._request(state)
        return self._invoke_agent(
            state,
            step_name=StepName.ARCHITECTURE_PLANNING.value,
            instruction=planning_instruction(request.spec_content),
            tier=CapabilityTier.HIGH,
            allowed_tools=PLANNING_TOOLS,
            permission_mode=PermissionMode.PLAN,
        )

    def _scaffold_node(self, state: BuildGraphState) -> dict[str, Any]:
        request = self._request(state)
        return self._invoke_agent(
            state,
            step_name=StepName.SCAFFOLD.value,
            instruction=scaffold_instruction(request.spec_content),
            tier=request.scaffold_tier,
            allowed_tools=SCAFFOLD_TOOLS,
            session_id=state.get("session_id"),
        )

    def _implement_node(self, state: BuildGraphState) -> dict[str, Any]:
        request = self._request(state)
        return self._invoke_agent(
            state,
            step_name=StepName.IMPLEMENT.value,
            instruction=implement_instruction(),
            tier=request.implement_tier,
            allowed_tools=IMPLEMENT_TOOLS,
            session_id=state.get("session_id"),
        )

    def _verify_node(self, state: BuildGraphState) -> dict[str, Any]:
        passes = int(state.get("verification_passes", 0)) + 1
        compliance = self.verifier.verify(state["workspace_path"])
        self._ledger(state).append(
            validation_audit_entry(
                run_id=state["run_id"],
                step_name=StepName.validation_attempt(passes),
                compliance=compliance,
            )
        )
        if compliance.success:
            logger.info("Verification pass %d succeeded", passes)
        else:
            logger.warning(
                "Verification pass %d failed at %s (%s)",
                passes,
                compliance.failed_command,
                compliance.failure_category.value if compliance.failure_category else "unclassified",
            )
        return {"verification_passes": passes, "compliance": dump_state_value(compliance)}

    def _verify_route(self, state: BuildGraphState) -> str:
        compliance = ComplianceResult.model_validate(state["compliance"])
        if compliance.success:
            return "publish" if self._request(state).publish else "end"
        if int(state.get("verification_passes", 0)) >= self.settings.max_repair_attempts:
            return "end"
        return "repair"

    def _repair_node(self, state: BuildGraphState) -> dict[str, Any]:
        compliance = ComplianceResult.model_validate(state["compliance"])
        attempt = int(state.get("repair_attempts", 0)) + 1
        tier = select_repair_tier(compliance)
        logger.info("Repair attempt %d using %s tier", attempt, tier.value)
        update = self._invoke_agent(
            state,
            step_name=StepName.repair(attempt),
            instruction=repair_instruction(compliance, tier),
            tier=tier,
            allowed_tools=REPAIR_TOOLS,
            session_id=state.get("session_id"),
            system_prompt_append=REPAIR_SYSTEM_PROMPT,
        )
        update["repair_attempts"] = attempt
        return update

    def _publish_node(self, state: BuildGraphState) -> dict[str, Any]:
        request = self._request(state)
        published = publish_build(
            self.publisher,
            workspace_path=state["workspace_path"],
            spec_content=request.spec_content,
            pr_config=request.pr_config,
            total_cost=float(state.get("total_cost", 0.0)),
            repair_attempts=int(state.get("repair_attempts", 0)),
        )
        return {"publish_result": dump_state_value(published)}

    # -- entry points --

    def _config(self, run_id: str) -> dict[str, Any]:
        return {
            "recursion_limit": self.settings.recursion_limit,
            "configurable": {"thread_id": run_id},
        }

    def run(self, request: BuildRequest, *, run_id: str | None = None) -> BuildResult:
        """Execute a build to completion.

        Raises:
            WorkspaceSetupError: Workspace could not be created; no agent cost was incurred.
            AgentInvocationError: An agent step failed.
            RepairBudgetExhaustedError: Compliance still failing after the final verification pass.
            MissingCredentialsError: The injected preflight reported missing tools.
        """
        run_id = run_id or new_run_id()
        logger.info("Starting build run %s", run_id)
        initial_state: BuildGraphState = {
            "run_id": run_id,
            "request": dump_state_value(request),
            "session_id": None,
            "total_cost": 0.0,
            "repair_attempts": 0,
            "verification_passes": 0,
            "compliance": None,
            "publish_result": None,
        }
        final_state = self.graph.invoke(initial_state, config=self._config(run_id))
        return self._finish(final_state)

    def resume(self, run_id: str) -> BuildResult:
        """Continue an interrupted run from its last checkpoint.

        Raises:
            ValueError: If no checkpoint exists for ``run_id``.
        """
        config = self._config(run_id)
        snapshot = self.graph.get_state(config)
        if not snapshot.values:
            raise ValueError(f"No checkpoint found for run '{run_id}'")
        if snapshot.next:
            logger.info("Resuming build run %s at %s", run_id, ", ".join(snapshot.next))
            final_state = self.graph.invoke(None, config=config)
        else:
            logger.info("Build run %s already finished; returning recorded outcome", run_id)
            final_state = snapshot.values
        return self._finish(final_state)

    def _finish(self, state: BuildGraphState) -> BuildResult:
        compliance = state.get("compliance")
        if compliance is None or not compliance.get("success"):
            logger.error(
                "Build run %s failed after %d verification passes",
                state["run_id"],
                int(state.get("verification_passes", 0)),
            )
            raise RepairBudgetExhaustedError(
                max_attempts=self.settings.max_repair_attempts,
                workspace_path=state["workspace_path"],
                total_cost=float(state.get("total_cost", 0.0)),
                last_session_id=state.get("session_id") or "",
            )

        publish = state.get("publish_result")
        result = BuildResult(
            success=True,
            run_id=state["run_id"],
            workspace_path=state["workspace_path"],
            total_cost=float(state.get("total_cost", 0.0)),
            session_id=state.get("session_id") or "",
            repair_attempts=int(state.get("repair_attempts", 0)),
            verification_passes=int(state.get("verification_passes", 0)),
            publish=PublishResult.model_validate(publish) if publish is not None else None,
        )
        logger.info(
            "Build run %s succeeded: cost=$%.4f repairs=%d",
            result.run_id,
            result.total_cost,
            result.repair_attempts,
        )
        return result
