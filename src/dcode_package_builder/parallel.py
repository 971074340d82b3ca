"""Parallel build orchestrator: fan independent sub-tasks out to isolated workspaces, merge, verify."""

from __future__ import annotations

import logging
import operator
import sqlite3
from collections.abc import Callable
from pathlib import Path
from typing import Annotated, Any, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Send

from .audit import AuditLedger
from .compliance import CommandComplianceVerifier, ComplianceVerifier
from .errors import MergedValidationError, MissingCredentialsError
from .executor import AgentExecutor, ClaudeCliExecutor
from .instructions import parallel_task_instruction
from .models import (
    SPEC_FILENAME,
    AgentInvocation,
    AgentResult,
    AuditEntry,
    ComplianceResult,
    MergeResult,
    ParallelBuildRequest,
    ParallelBuildResult,
    ParallelTask,
    ParallelTaskResult,
    PermissionMode,
    PublishResult,
    StepName,
    dump_state_value,
)
from .orchestrator import agent_audit_entry, open_checkpointer, validation_audit_entry
from .publish import GitPublisher, publish_build
from .settings import RuntimeSettings
from .utils import new_run_id
from .workspace import WorkspaceManager, snapshot_manifest

logger = logging.getLogger(__name__)


class ParallelGraphState(TypedDict, total=False):
    run_id: str
    request: dict[str, Any]
    workspace_path: str
    base_manifest: dict[str, str]
    task_results: Annotated[list[dict[str, Any]], operator.add]
    merge_result: dict[str, Any] | None
    total_cost: float
    compliance: dict[str, Any] | None
    publish_result: dict[str, Any] | None


class SubTaskState(TypedDict):
    run_id: str
    workspace_path: str
    task: dict[str, Any]


class ParallelBuildOrchestrator:
    """Runs independent sub-tasks concurrently, each in its own copy of a shared base workspace.

    Graph::

        setup --Send--> run_task (one per task, concurrent) -> merge -> verify -> [publish] -> END

    Sub-tasks never observe each other's edits and a failed sub-task never
    cancels its siblings. After the join, changes are merged back into the
    base in task order; conflicting branches are collected by name rather
    than aborting. The orchestrator is the only writer of the base audit
    ledger, so sub-task entries are appended after the join.
    """

    def __init__(
        self,
        *,
        executor: AgentExecutor | None = None,
        verifier: ComplianceVerifier | None = None,
        publisher: GitPublisher | None = None,
        workspaces: WorkspaceManager | None = None,
        settings: RuntimeSettings | None = None,
        preflight: Callable[[ParallelBuildRequest], list[str]] | None = None,
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
        graph = StateGraph(ParallelGraphState)
        graph.add_node("setup", self._setup_node)
        graph.add_node("run_task", self._run_task_node)
        graph.add_node("merge", self._merge_node)
        graph.add_node("verify", self._verify_node)
        graph.add_node("publish", self._publish_node)

        graph.add_edge(START, "setup")
        graph.add_conditional_edges("setup", self._fan_out, ["run_task"])
        graph.add_edge("run_task", "merge")
        graph.add_edge("merge", "verify")
        graph.add_conditional_edges(
            "verify",
            self._verify_route,
            {
                "publish": "publish",
                "end": END,
            },
        )
        graph.add_edge("publish", END)
        return graph

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @staticmethod
    def _request(state: ParallelGraphState) -> ParallelBuildRequest:
        return ParallelBuildRequest.model_validate(state["request"])

    # -- nodes --

    def _setup_node(self, state: ParallelGraphState) -> dict[str, Any]:
        request = self._request(state)
        if self.preflight is not None:
            missing = self.preflight(request)
            if missing:
                raise MissingCredentialsError(missing)

        workspace = self.workspaces.create_workspace(
            run_id=state["run_id"],
            requirements_content=request.requirements_content,
            base_path=request.base_path,
            seed_files={SPEC_FILENAME: request.spec_content},
        )
        AuditLedger(workspace).append(
            AuditEntry(workflow_run_id=state["run_id"], step_name=StepName.WORKSPACE_SETUP.value)
        )
        return {"workspace_path": str(workspace), "base_manifest": snapshot_manifest(workspace)}

    def _fan_out(self, state: ParallelGraphState) -> list[Send]:
        request = self._request(state)
        logger.info("Fanning out %d parallel tasks", len(request.tasks))
        return [
            Send(
                "run_task",
                {
                    "run_id": state["run_id"],
                    "workspace_path": state["workspace_path"],
                    "task": dump_state_value(task),
                },
            )
            for task in request.tasks
        ]

    def _run_task_node(self, state: SubTaskState) -> dict[str, Any]:
        task = ParallelTask.model_validate(state["task"])
        base_workspace = Path(state["workspace_path"])
        sub_workspace: Path | None = None
        try:
            sub_workspace = self.workspaces.create_sub_workspace(base_workspace, task.branch_name)
            agent_result = self.executor.execute(
                AgentInvocation(
                    instruction=parallel_task_instruction(task),
                    working_dir=str(sub_workspace),
                    allowed_tools=task.allowed_tools,
                    permission_mode=PermissionMode.ACCEPT_EDITS,
                    tier=task.tier,
                    timeout_seconds=self.settings.agent_timeout_seconds,
                )
            )
        except Exception as exc:  # noqa: BLE001 - one failed sub-task must not cancel its siblings.
            agent_result = AgentResult(success=False, error=str(exc) or type(exc).__name__)

        if agent_result.success:
            logger.info("Parallel task %s complete: cost=$%.4f", task.name, agent_result.cost_usd)
        else:
            logger.error("Parallel task %s failed: %s", task.name, agent_result.error)
        result = ParallelTaskResult(
            task_name=task.name,
            branch_name=task.branch_name,
            success=agent_result.success,
            cost=agent_result.cost_usd,
            session_id=agent_result.session_id or None,
            workspace_path=str(sub_workspace) if sub_workspace is not None else None,
            error=agent_result.error,
        )
        return {"task_results": [dump_state_value(result)]}

    def _merge_node(self, state: ParallelGraphState) -> dict[str, Any]:
        request = self._request(state)
        base_workspace = Path(state["workspace_path"])
        order = {task.name: index for index, task in enumerate(request.tasks)}
        tiers = {task.name: task.tier for task in request.tasks}
        results = sorted(
            (ParallelTaskResult.model_validate(item) for item in state.get("task_results", [])),
            key=lambda item: order[item.task_name],
        )

        ledger = AuditLedger(base_workspace)
        for result in results:
            ledger.append(
                agent_audit_entry(
                    run_id=state["run_id"],
                    step_name=StepName.parallel(result.task_name),
                    tier=tiers[result.task_name],
                    result=AgentResult(
                        success=result.success,
                        cost_usd=result.cost,
                        session_id=result.session_id or "",
                        error=result.error,
                    ),
                )
            )

        sub_workspaces = [Path(result.workspace_path) for result in results if result.workspace_path]
        try:
            merge = self.workspaces.merge_sub_workspaces(
                base_workspace,
                state.get("base_manifest", {}),
                [
                    (result.branch_name, Path(result.workspace_path))
                    for result in results
                    if result.success and result.workspace_path
                ],
            )
        finally:
            self.workspaces.cleanup_sub_workspaces(sub_workspaces)

        if merge.conflicts:
            logger.warning("Merge finished with conflicts: %s", ", ".join(merge.conflicts))
        if merge.failed_branches:
            logger.error("Merge could not apply branches: %s", ", ".join(merge.failed_branches))
        return {
            "merge_result": dump_state_value(merge),
            "total_cost": sum(result.cost for result in results),
        }

    def _verify_node(self, state: ParallelGraphState) -> dict[str, Any]:
        compliance = self.verifier.verify(state["workspace_path"])
        AuditLedger(Path(state["workspace_path"])).append(
            validation_audit_entry(
                run_id=state["run_id"],
                step_name=StepName.VALIDATION_MERGED.value,
                compliance=compliance,
            )
        )
        return {"compliance": dump_state_value(compliance)}

    def _verify_route(self, state: ParallelGraphState) -> str:
        compliance = ComplianceResult.model_validate(state["compliance"])
        if compliance.success and self._request(state).publish:
            return "publish"
        return "end"

    def _publish_node(self, state: ParallelGraphState) -> dict[str, Any]:
        request = self._request(state)
        published = publish_build(
            self.publisher,
            workspace_path=state["workspace_path"],
            spec_content=request.spec_content,
            pr_config=request.pr_config,
            total_cost=float(state.get("total_cost", 0.0)),
            repair_attempts=0,
        )
        return {"publish_result": dump_state_value(published)}

    # -- entry points --

    def _config(self, run_id: str) -> dict[str, Any]:
        return {
            "recursion_limit": self.settings.recursion_limit,
            "configurable": {"thread_id": run_id},
        }

    def run(self, request: ParallelBuildRequest, *, run_id: str | None = None) -> ParallelBuildResult:
        """Execute a parallel build.

        Raises:
            WorkspaceSetupError: The base workspace could not be created.
            MergedValidationError: Compliance checks failed on the merged tree.
            MissingCredentialsError: The injected preflight reported missing tools.
        """
        run_id = run_id or new_run_id()
        logger.info("Starting parallel build run %s with %d tasks", run_id, len(request.tasks))
        initial_state: ParallelGraphState = {
            "run_id": run_id,
            "request": dump_state_value(request),
            "task_results": [],
            "merge_result": None,
            "total_cost": 0.0,
            "compliance": None,
            "publish_result": None,
        }
        final_state = self.graph.invoke(initial_state, config=self._config(run_id))
        return self._finish(final_state)

    def resume(self, run_id: str) -> ParallelBuildResult:
        config = self._config(run_id)
        snapshot = self.graph.get_state(config)
        if not snapshot.values:
            raise ValueError(f"No checkpoint found for run '{run_id}'")
        final_state = self.graph.invoke(None, config=config) if snapshot.next else snapshot.values
        return self._finish(final_state)

    def _finish(self, state: ParallelGraphState) -> ParallelBuildResult:
        merge = MergeResult.model_validate(state.get("merge_result") or {})
        compliance = ComplianceResult.model_validate(state["compliance"])
        if not compliance.success:
            logger.error("Parallel build run %s failed merged validation", state["run_id"])
            raise MergedValidationError(
                workspace_path=state["workspace_path"],
                output=compliance.output,
                conflicts=merge.conflicts,
            )

        request = self._request(state)
        order = {task.name: index for index, task in enumerate(request.tasks)}
        task_results = sorted(
            (ParallelTaskResult.model_validate(item) for item in state.get("task_results", [])),
            key=lambda item: order[item.task_name],
        )
        publish = state.get("publish_result")
        return ParallelBuildResult(
            success=True,
            run_id=state["run_id"],
            workspace_path=state["workspace_path"],
            total_cost=float(state.get("total_cost", 0.0)),
            task_results=task_results,
            merge=merge,
            publish=PublishResult.model_validate(publish) if publish is not None else None,
        )
