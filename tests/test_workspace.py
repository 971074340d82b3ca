from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from dcode_package_builder import workspace as workspace_module
from dcode_package_builder.errors import WorkspaceSetupError
from dcode_package_builder.settings import RuntimeSettings
from dcode_package_builder.workspace import (
    WorkspaceManager,
    diff_manifests,
    render_requirements_document,
    snapshot_manifest,
)


def test_requirements_document_template() -> None:
    document = render_requirements_document("Use pnpm.")
    assert document.startswith("# Project Instructions\n\nUse pnpm.\n\n---\n\n")
    assert "static project requirements" in document


def test_create_workspace_writes_requirements_once(settings: RuntimeSettings) -> None:
    manager = WorkspaceManager(settings)
    workspace = manager.create_workspace(run_id="abc", requirements_content="Strict mode.")

    assert workspace == Path(settings.base_path) / "claude-build-abc"
    assert (workspace / "CLAUDE.md").read_text(encoding="utf-8") == render_requirements_document("Strict mode.")
    assert not (workspace / ".claude").exists()


def test_workspaces_are_unique_per_run(settings: RuntimeSettings) -> None:
    manager = WorkspaceManager(settings)
    first = manager.create_workspace(run_id="one", requirements_content="r")
    second = manager.create_workspace(run_id="two", requirements_content="r")
    assert first != second


def test_replayed_setup_reuses_matching_workspace(settings: RuntimeSettings) -> None:
    manager = WorkspaceManager(settings)
    workspace = manager.create_workspace(run_id="abc", requirements_content="r")
    (workspace / "src.ts").write_text("keep", encoding="utf-8")

    assert manager.create_workspace(run_id="abc", requirements_content="r") == workspace
    assert (workspace / "src.ts").read_text(encoding="utf-8") == "keep"


def test_existing_workspace_of_another_run_is_rejected(settings: RuntimeSettings) -> None:
    manager = WorkspaceManager(settings)
    manager.create_workspace(run_id="abc", requirements_content="r")
    with pytest.raises(WorkspaceSetupError, match="already exists"):
        manager.create_workspace(run_id="abc", requirements_content="different")


def test_uncreatable_base_path_raises(settings: RuntimeSettings, tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    with pytest.raises(WorkspaceSetupError) as exc_info:
        WorkspaceManager(settings).create_workspace(run_id="abc", requirements_content="r", base_path=blocker)
    assert exc_info.value.non_retryable is True


def test_seed_files_are_written(settings: RuntimeSettings) -> None:
    workspace = WorkspaceManager(settings).create_workspace(
        run_id="abc",
        requirements_content="r",
        seed_files={"PACKAGE_SPEC.md": "# Spec", "docs/notes.md": "n"},
    )
    assert (workspace / "PACKAGE_SPEC.md").read_text(encoding="utf-8") == "# Spec"
    assert (workspace / "docs" / "notes.md").is_file()


def test_tooling_template_is_copied(tmp_path: Path) -> None:
    template = tmp_path / "template"
    (template / "scripts").mkdir(parents=True)
    (template / "scripts" / "log-tool-call.js").write_text("// log", encoding="utf-8")
    settings = RuntimeSettings(base_path=str(tmp_path / "builds"), tooling_template_dir=str(template)).normalized()

    workspace = WorkspaceManager(settings).create_workspace(run_id="abc", requirements_content="r")

    script = workspace / ".claude" / "scripts" / "log-tool-call.js"
    assert script.is_file()
    assert os.access(script, os.X_OK)
    tooling_settings = json.loads((workspace / ".claude" / "settings.json").read_text(encoding="utf-8"))
    assert tooling_settings["defaultPermissionMode"] == "acceptEdits"


def test_missing_tooling_template_is_not_fatal(tmp_path: Path) -> None:
    settings = RuntimeSettings(
        base_path=str(tmp_path / "builds"), tooling_template_dir=str(tmp_path / "nowhere")
    ).normalized()
    manager = WorkspaceManager(settings)
    workspace = manager.create_workspace(run_id="abc", requirements_content="r")
    assert (workspace / "CLAUDE.md").is_file()
    assert manager.copy_tooling(workspace) is False


def test_manifest_skips_ledger_requirements_and_ignored_dirs(tmp_path: Path) -> None:
    (tmp_path / "CLAUDE.md").write_text("r", encoding="utf-8")
    (tmp_path / "audit_trace.jsonl").write_text("{}\n", encoding="utf-8")
    (tmp_path / "node_modules" / "dep").mkdir(parents=True)
    (tmp_path / "node_modules" / "dep" / "index.js").write_text("x", encoding="utf-8")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "index.ts").write_text("export {};", encoding="utf-8")

    assert list(snapshot_manifest(tmp_path)) == ["src/index.ts"]


def test_diff_manifests() -> None:
    before = {"a": "1", "b": "2", "c": "3"}
    after = {"a": "1", "b": "changed", "d": "4"}
    assert diff_manifests(before, after) == {"b": "changed", "d": "4", "c": None}


def test_sub_workspace_is_isolated_sibling(settings: RuntimeSettings) -> None:
    manager = WorkspaceManager(settings)
    base = manager.create_workspace(run_id="abc", requirements_content="r")
    (base / "node_modules").mkdir()

    sub = manager.create_sub_workspace(base, "feat/Types")

    assert sub.parent == base.parent
    assert sub.name.startswith("claude-build-abc-feat-types-")
    assert len(sub.name) == len("claude-build-abc-feat-types-") + 8
    assert (sub / "CLAUDE.md").is_file()
    assert not (sub / "node_modules").exists()
    (sub / "new.ts").write_text("x", encoding="utf-8")
    assert not (base / "new.ts").exists()


def test_stale_sub_workspace_is_replaced(settings: RuntimeSettings) -> None:
    manager = WorkspaceManager(settings)
    base = manager.create_workspace(run_id="abc", requirements_content="r")
    stale = manager.create_sub_workspace(base, "feat/a")
    (stale / "leftover.ts").write_text("old", encoding="utf-8")

    fresh = manager.create_sub_workspace(base, "feat/a")
    assert fresh == stale
    assert not (fresh / "leftover.ts").exists()


def test_merge_applies_changes_and_deletions(settings: RuntimeSettings) -> None:
    manager = WorkspaceManager(settings)
    base = manager.create_workspace(run_id="abc", requirements_content="r", seed_files={"old.ts": "old"})
    manifest = snapshot_manifest(base)
    sub = manager.create_sub_workspace(base, "feat/a")
    (sub / "old.ts").unlink()
    (sub / "lib").mkdir()
    (sub / "lib" / "new.ts").write_text("new", encoding="utf-8")
    with (sub / "audit_trace.jsonl").open("a", encoding="utf-8") as handle:
        handle.write("{}\n")

    result = manager.merge_sub_workspaces(base, manifest, [("feat/a", sub)])

    assert result.merged_branches == ["feat/a"]
    assert result.clean
    assert not (base / "old.ts").exists()
    assert (base / "lib" / "new.ts").read_text(encoding="utf-8") == "new"
    assert not (base / "audit_trace.jsonl").exists()


def test_merge_conflict_skips_whole_branch(settings: RuntimeSettings) -> None:
    manager = WorkspaceManager(settings)
    base = manager.create_workspace(run_id="abc", requirements_content="r")
    manifest = snapshot_manifest(base)
    first = manager.create_sub_workspace(base, "feat/first")
    second = manager.create_sub_workspace(base, "feat/second")
    (first / "index.ts").write_text("first", encoding="utf-8")
    (second / "index.ts").write_text("second", encoding="utf-8")
    (second / "extra.ts").write_text("extra", encoding="utf-8")

    result = manager.merge_sub_workspaces(base, manifest, [("feat/first", first), ("feat/second", second)])

    assert result.merged_branches == ["feat/first"]
    assert result.conflicts == ["feat/second"]
    assert (base / "index.ts").read_text(encoding="utf-8") == "first"
    assert not (base / "extra.ts").exists()


def test_cleanup_reports_errors_without_raising(settings: RuntimeSettings, tmp_path: Path) -> None:
    manager = WorkspaceManager(settings)
    existing = tmp_path / "sub"
    existing.mkdir()

    errors = manager.cleanup_sub_workspaces([existing, tmp_path / "missing"])

    assert not existing.exists()
    assert len(errors) == 1
    assert "missing" in errors[0]


@pytest.mark.parametrize(
    ("first", "second"),
    [("feat/a", "feat-a"), ("feat/" + "x" * 60 + "-one", "feat/" + "x" * 60 + "-two")],
)
def test_colliding_branch_slugs_get_separate_sub_workspaces(
    settings: RuntimeSettings, first: str, second: str
) -> None:
    manager = WorkspaceManager(settings)
    base = manager.create_workspace(run_id="abc", requirements_content="r")

    one = manager.create_sub_workspace(base, first)
    (one / "marker.ts").write_text("one", encoding="utf-8")
    two = manager.create_sub_workspace(base, second)

    assert one != two
    assert (one / "marker.ts").read_text(encoding="utf-8") == "one"
    assert not (two / "marker.ts").exists()


def test_merge_io_error_marks_branch_failed_and_continues(
    settings: RuntimeSettings, monkeypatch: pytest.MonkeyPatch
) -> None:
    manager = WorkspaceManager(settings)
    base = manager.create_workspace(run_id="abc", requirements_content="r")
    manifest = snapshot_manifest(base)
    broken = manager.create_sub_workspace(base, "feat/broken")
    healthy = manager.create_sub_workspace(base, "feat/healthy")
    (broken / "locked.ts").write_text("locked", encoding="utf-8")
    (healthy / "healthy.ts").write_text("ok", encoding="utf-8")
    real_copy2 = workspace_module.shutil.copy2

    def copy2(src, dst, **kwargs):  # noqa: ANN001, ANN003, ANN202
        if Path(src).name == "locked.ts":
            raise PermissionError(13, "Permission denied", str(src))
        return real_copy2(src, dst, **kwargs)

    monkeypatch.setattr(workspace_module.shutil, "copy2", copy2)

    result = manager.merge_sub_workspaces(base, manifest, [("feat/broken", broken), ("feat/healthy", healthy)])

    assert result.failed_branches == ["feat/broken"]
    assert result.merged_branches == ["feat/healthy"]
    assert result.conflicts == []
    assert not result.clean
    assert (base / "healthy.ts").read_text(encoding="utf-8") == "ok"
    assert not (base / "locked.ts").exists()
