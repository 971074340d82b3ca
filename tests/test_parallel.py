from __future__ import annotations

import threading
from pathlib import Path

import pytest

from dcode_package_builder import (
    AuditLedger,
    FailureCategory,
    MergedValidationError,
    ParallelBuildOrchestrator,
    ParallelBuildRequest,
    ParallelTask,
)
from dcode_package_builder import workspace as workspace_module
from dcode_package_builder.models import AgentInvocation, AgentResult
from dcode_package_builder.settings import RuntimeSettings
from fakes import FakeExecutor, FakePublisher, FakeVerifier, failing, passing

SPEC = "# Toolkit\n\npackage: toolkit\n"
REQUIREMENTS = "Strict mode everywhere."


def writing_executor(files_by_instruction: dict[str, dict[str, str]], *, fail: tuple[str, ...] = ()) -> FakeExecutor:
    """Executor whose agent writes the given files into its working directory."""

    def on_execute(invocation: AgentInvocation) -> AgentResult:
        key = invocation.instruction.splitlines()[0]
        if key in fail:
            return AgentResult(success=False, error=f"{key} crashed", cost_usd=0.1, session_id=f"s-{key}")
        for rel, content in files_by_instruction.get(key, {}).items():
            target = Path(invocation.working_dir) / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        return AgentResult(success=True, cost_usd=0.25, session_id=f"s-{key}")

    return FakeExecutor(on_execute=on_execute)


def make_request(*tasks: ParallelTask, **overrides) -> ParallelBuildRequest:  # noqa: ANN003
    return ParallelBuildRequest(spec_content=SPEC, requirements_content=REQUIREMENTS, tasks=tasks, **overrides)


def task(name: str) -> ParallelTask:
    return ParallelTask(name=name, branch_name=f"feat/{name}", instruction=f"build-{name}")


def sub_workspace_dirs(workspace: Path) -> list[Path]:
    return [path for path in workspace.parent.iterdir() if path.name.startswith(f"{workspace.name}-")]


def test_independent_tasks_merge_into_base(settings: RuntimeSettings) -> None:
    executor = writing_executor(
        {
            "build-types": {"src/types.ts": "export type Id = string;\n"},
            "build-utils": {"src/utils.ts": "export const id = (x: string) => x;\n"},
        }
    )
    orchestrator = ParallelBuildOrchestrator(
        executor=executor, verifier=FakeVerifier([passing()]), publisher=FakePublisher(), settings=settings
    )

    result = orchestrator.run(make_request(task("types"), task("utils")))

    workspace = Path(result.workspace_path)
    assert result.success is True
    assert result.merge.merged_branches == ["feat/types", "feat/utils"]
    assert result.merge.clean
    assert (workspace / "src" / "types.ts").is_file()
    assert (workspace / "src" / "utils.ts").is_file()
    assert (workspace / "PACKAGE_SPEC.md").read_text(encoding="utf-8") == SPEC
    assert result.total_cost == pytest.approx(0.5)
    assert [item.task_name for item in result.task_results] == ["types", "utils"]
    assert sub_workspace_dirs(workspace) == []
    assert AuditLedger(workspace).step_names() == [
        "workspace_setup",
        "parallel_types",
        "parallel_utils",
        "validation_merged",
    ]


def test_tasks_run_in_distinct_workspaces(settings: RuntimeSettings) -> None:
    executor = writing_executor({})
    orchestrator = ParallelBuildOrchestrator(
        executor=executor, verifier=FakeVerifier([passing()]), publisher=FakePublisher(), settings=settings
    )

    result = orchestrator.run(make_request(task("a"), task("b"), task("c")))

    working_dirs = {invocation.working_dir for invocation in executor.invocations}
    assert len(working_dirs) == 3
    assert result.workspace_path not in working_dirs
    assert all(invocation.session_id is None for invocation in executor.invocations)


def test_task_instruction_points_at_shared_inputs(settings: RuntimeSettings) -> None:
    executor = writing_executor({})
    orchestrator = ParallelBuildOrchestrator(
        executor=executor, verifier=FakeVerifier([passing()]), publisher=FakePublisher(), settings=settings
    )

    orchestrator.run(make_request(task("docs")))

    instruction = executor.invocations[0].instruction
    assert instruction.startswith("build-docs")
    assert "PACKAGE_SPEC.md" in instruction
    assert "CLAUDE.md" in instruction


def test_conflicting_branches_are_reported(settings: RuntimeSettings) -> None:
    executor = writing_executor(
        {
            "build-first": {"src/index.ts": "export * from './first';\n"},
            "build-second": {"src/index.ts": "export * from './second';\n", "src/second.ts": "export {};\n"},
        }
    )
    orchestrator = ParallelBuildOrchestrator(
        executor=executor, verifier=FakeVerifier([passing()]), publisher=FakePublisher(), settings=settings
    )

    result = orchestrator.run(make_request(task("first"), task("second")))

    workspace = Path(result.workspace_path)
    assert result.merge.merged_branches == ["feat/first"]
    assert result.merge.conflicts == ["feat/second"]
    assert (workspace / "src" / "index.ts").read_text(encoding="utf-8") == "export * from './first';\n"
    assert not (workspace / "src" / "second.ts").exists()


def test_identical_edits_do_not_conflict(settings: RuntimeSettings) -> None:
    shared = {"src/shared.ts": "export const VERSION = '1';\n"}
    executor = writing_executor({"build-a": dict(shared), "build-b": dict(shared)})
    orchestrator = ParallelBuildOrchestrator(
        executor=executor, verifier=FakeVerifier([passing()]), publisher=FakePublisher(), settings=settings
    )

    result = orchestrator.run(make_request(task("a"), task("b")))

    assert result.merge.clean
    assert result.merge.merged_branches == ["feat/a", "feat/b"]


def test_failed_task_does_not_block_siblings(settings: RuntimeSettings) -> None:
    executor = writing_executor(
        {"build-good": {"src/good.ts": "export {};\n"}, "build-bad": {"src/bad.ts": "export {};\n"}},
        fail=("build-bad",),
    )
    orchestrator = ParallelBuildOrchestrator(
        executor=executor, verifier=FakeVerifier([passing()]), publisher=FakePublisher(), settings=settings
    )

    result = orchestrator.run(make_request(task("bad"), task("good")))

    workspace = Path(result.workspace_path)
    assert len(executor.invocations) == 2
    assert [item.task_name for item in result.failed_tasks()] == ["bad"]
    assert result.failed_tasks()[0].error == "build-bad crashed"
    assert result.merge.merged_branches == ["feat/good"]
    assert (workspace / "src" / "good.ts").is_file()
    assert sub_workspace_dirs(workspace) == []
    assert result.total_cost == pytest.approx(0.35)

    entries = AuditLedger(workspace).read_entries()
    bad_entry = next(entry for entry in entries if entry.step_name == "parallel_bad")
    assert bad_entry.validation_status.value == "fail"
    assert bad_entry.error == "build-bad crashed"


def test_executor_exception_is_contained(settings: RuntimeSettings) -> None:
    def on_execute(invocation: AgentInvocation) -> AgentResult | None:
        if invocation.instruction.startswith("build-boom"):
            raise RuntimeError("agent process died")
        return None

    executor = FakeExecutor(on_execute=on_execute)
    orchestrator = ParallelBuildOrchestrator(
        executor=executor, verifier=FakeVerifier([passing()]), publisher=FakePublisher(), settings=settings
    )

    result = orchestrator.run(make_request(task("boom"), task("calm")))

    assert [item.task_name for item in result.failed_tasks()] == ["boom"]
    assert result.failed_tasks()[0].error == "agent process died"
    assert result.merge.merged_branches == ["feat/calm"]


def test_merged_validation_failure_raises(settings: RuntimeSettings) -> None:
    executor = writing_executor({"build-a": {"src/a.ts": "export {};\n"}})
    verifier = FakeVerifier([failing(FailureCategory.TEST, "2 failing tests", "npm test")])
    orchestrator = ParallelBuildOrchestrator(
        executor=executor, verifier=verifier, publisher=FakePublisher(), settings=settings
    )

    with pytest.raises(MergedValidationError) as exc_info:
        orchestrator.run(make_request(task("a")))

    workspace = Path(exc_info.value.workspace_path)
    assert "2 failing tests" in str(exc_info.value)
    assert exc_info.value.conflicts == []
    assert sub_workspace_dirs(workspace) == []
    assert AuditLedger(workspace).step_names()[-1] == "validation_merged"


def test_publish_after_merged_success(settings: RuntimeSettings) -> None:
    publisher = FakePublisher()
    orchestrator = ParallelBuildOrchestrator(
        executor=writing_executor({}), verifier=FakeVerifier([passing()]), publisher=publisher, settings=settings
    )

    result = orchestrator.run(make_request(task("a"), publish=True))

    assert result.publish is not None
    assert result.publish.branch_name == "feat/toolkit"
    assert publisher.last_pull_request["labels"] == ("automated", "parallel-build")


def test_request_rejects_duplicate_task_names() -> None:
    with pytest.raises(ValueError):
        ParallelBuildRequest(
            spec_content=SPEC,
            requirements_content=REQUIREMENTS,
            tasks=(task("a"), ParallelTask(name="a", branch_name="feat/other", instruction="x")),
        )


def test_request_requires_tasks() -> None:
    with pytest.raises(ValueError):
        ParallelBuildRequest(spec_content=SPEC, requirements_content=REQUIREMENTS, tasks=())


def test_request_rejects_branches_sharing_a_workspace_name() -> None:
    with pytest.raises(ValueError, match="distinct workspace names"):
        make_request(
            ParallelTask(name="slash", branch_name="feat/a", instruction="x"),
            ParallelTask(name="dash", branch_name="feat-a", instruction="y"),
        )


def test_sub_tasks_run_concurrently_in_isolated_workspaces(settings: RuntimeSettings) -> None:
    # Both branch names slug to the same truncated prefix.
    prefix = "feat/" + "shared-" * 8
    tasks = (
        ParallelTask(name="one", branch_name=f"{prefix}one", instruction="build-one"),
        ParallelTask(name="two", branch_name=f"{prefix}two", instruction="build-two"),
    )
    barrier = threading.Barrier(len(tasks), timeout=10)
    seen: dict[str, list[str]] = {}

    def on_execute(invocation: AgentInvocation) -> AgentResult:
        key = invocation.instruction.splitlines()[0]
        workdir = Path(invocation.working_dir)
        (workdir / f"{key}.txt").write_text(key, encoding="utf-8")
        barrier.wait()
        seen[key] = sorted(path.name for path in workdir.glob("build-*.txt"))
        barrier.wait()
        return AgentResult(success=True, cost_usd=0.25, session_id=f"s-{key}")

    executor = FakeExecutor(on_execute=on_execute)
    orchestrator = ParallelBuildOrchestrator(
        executor=executor, verifier=FakeVerifier([passing()]), publisher=FakePublisher(), settings=settings
    )

    result = orchestrator.run(make_request(*tasks))

    workspace = Path(result.workspace_path)
    assert result.failed_tasks() == []
    assert len({invocation.working_dir for invocation in executor.invocations}) == 2
    assert seen == {"build-one": ["build-one.txt"], "build-two": ["build-two.txt"]}
    assert result.merge.merged_branches == [task.branch_name for task in tasks]
    assert (workspace / "build-one.txt").is_file()
    assert (workspace / "build-two.txt").is_file()
    assert sub_workspace_dirs(workspace) == []


def test_merge_io_error_is_surfaced_not_raised(settings: RuntimeSettings, monkeypatch: pytest.MonkeyPatch) -> None:
    executor = writing_executor(
        {"build-disk": {"src/disk.ts": "export {};\n"}, "build-fine": {"src/fine.ts": "export {};\n"}}
    )
    real_copy2 = workspace_module.shutil.copy2

    def copy2(src, dst, **kwargs):  # noqa: ANN001, ANN003, ANN202
        if Path(src).name == "disk.ts":
            raise OSError(28, "No space left on device")
        return real_copy2(src, dst, **kwargs)

    monkeypatch.setattr(workspace_module.shutil, "copy2", copy2)
    orchestrator = ParallelBuildOrchestrator(
        executor=executor, verifier=FakeVerifier([passing()]), publisher=FakePublisher(), settings=settings
    )

    result = orchestrator.run(make_request(task("disk"), task("fine")))

    workspace = Path(result.workspace_path)
    assert result.merge.failed_branches == ["feat/disk"]
    assert result.merge.merged_branches == ["feat/fine"]
    assert (workspace / "src" / "fine.ts").is_file()
    assert sub_workspace_dirs(workspace) == []
