"""Workspace lifecycle: creation, requirements seeding, sub-workspace fan-out and merge."""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import stat
from pathlib import Path

from .errors import WorkspaceSetupError
from .models import AUDIT_FILENAME, REQUIREMENTS_FILENAME, MergeResult
from .settings import RuntimeSettings
from .utils import slugify_name

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "claude-build-"
TOOLING_DIRNAME = ".claude"

# Never carried between workspaces by a merge; each workspace owns its own copy.
_UNMERGED_NAMES = frozenset({AUDIT_FILENAME, REQUIREMENTS_FILENAME})
_IGNORED_DIRS = frozenset({".git", "node_modules"})

DEFAULT_TOOLING_SETTINGS: dict[str, object] = {
    "hooks": {
        "afterToolCall": {"command": "node scripts/log-tool-call.js", "timeout": 5000},
        "afterResponse": {"command": "node scripts/log-response.js", "timeout": 5000},
    },
    "defaultModel": "sonnet",
    "defaultPermissionMode": "acceptEdits",
}


def render_requirements_document(requirements_content: str) -> str:
    return (
        "# Project Instructions\n\n"
        f"{requirements_content}\n\n"
        "---\n\n"
        "*These are static project requirements. The package specification and\n"
        "step-specific context will be provided in conversation prompts.*\n"
    )


def snapshot_manifest(root: Path) -> dict[str, str]:
    """Map every mergeable file under ``root`` (POSIX relative path) to its sha256 digest."""
    manifest: dict[str, str] = {}
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root)
        if any(part in _IGNORED_DIRS for part in rel.parts):
            continue
        if not path.is_file() or rel.as_posix() in _UNMERGED_NAMES:
            continue
        manifest[rel.as_posix()] = hashlib.sha256(path.read_bytes()).hexdigest()
    return manifest


def sub_workspace_name(base_name: str, branch_name: str) -> str:
    """Directory name for a branch sub-workspace.

    The slug keeps the name readable; the digest of the raw branch name keeps
    branches whose slugs coincide (``feat/a`` and ``feat-a``, or long names
    sharing a truncated prefix) in separate directories.
    """
    digest = hashlib.sha256(branch_name.encode("utf-8")).hexdigest()[:8]
    return f"{base_name}-{slugify_name(branch_name)}-{digest}"


def diff_manifests(before: dict[str, str], after: dict[str, str]) -> dict[str, str | None]:
    """Return changed paths mapped to their new digest, or None for deletions."""
    changes: dict[str, str | None] = {}
    for rel, digest in after.items():
        if before.get(rel) != digest:
            changes[rel] = digest
    for rel in before:
        if rel not in after:
            changes[rel] = None
    return changes


class WorkspaceManager:
    """Creates isolated build workspaces under a base path.

    The requirements document is written exactly once, at creation. Later
    phases carry step context through the agent conversation instead, so
    nothing in this class ever rewrites it.
    """

    def __init__(self, settings: RuntimeSettings | None = None) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()

    def workspace_path_for(self, run_id: str, base_path: str | Path | None = None) -> Path:
        root = Path(base_path) if base_path is not None else Path(self.settings.base_path)
        return root / f"{WORKSPACE_PREFIX}{run_id}"

    def create_workspace(
        self,
        *,
        run_id: str,
        requirements_content: str,
        base_path: str | Path | None = None,
        seed_files: dict[str, str] | None = None,
    ) -> Path:
        """Create the workspace for ``run_id`` and seed it.

        Re-creating the workspace of the same run (a replayed setup step) is
        accepted when the requirements document already matches.

        Raises:
            WorkspaceSetupError: If the directory or the requirements document cannot be written.
        """
        workspace = self.workspace_path_for(run_id, base_path)
        document = render_requirements_document(requirements_content)
        requirements_path = workspace / REQUIREMENTS_FILENAME

        try:
            workspace.mkdir(parents=True, exist_ok=False)
        except FileExistsError:
            if requirements_path.is_file() and requirements_path.read_text(encoding="utf-8") == document:
                logger.info("Reusing workspace of replayed run: %s", workspace)
                return workspace
            raise WorkspaceSetupError(
                f"Workspace already exists and belongs to another run: {workspace}",
                details={"workspace_path": str(workspace)},
            ) from None
        except OSError as exc:
            raise WorkspaceSetupError(
                f"Unable to create workspace directory {workspace}: {exc}",
                details={"workspace_path": str(workspace)},
            ) from exc
        logger.info("Created workspace: %s", workspace)

        try:
            requirements_path.write_text(document, encoding="utf-8")
            for rel, content in (seed_files or {}).items():
                target = workspace / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise WorkspaceSetupError(
                f"Unable to seed workspace {workspace}: {exc}",
                details={"workspace_path": str(workspace)},
            ) from exc
        logger.info("Wrote %s to %s", REQUIREMENTS_FILENAME, workspace)

        self.copy_tooling(workspace)
        return workspace

    def copy_tooling(self, workspace: Path) -> bool:
        """Copy the supporting-tooling template into ``workspace``.

        Failures are logged and swallowed; a workspace is usable without tooling.

        Returns:
            True when the tooling was copied.
        """
        template = self.settings.tooling_template_path
        if template is None:
            return False
        if not template.is_dir():
            logger.warning("Tooling template not found at %s, skipping copy", template)
            return False

        target = workspace / TOOLING_DIRNAME
        try:
            shutil.copytree(template, target, dirs_exist_ok=True)
            scripts_dir = target / "scripts"
            scripts_dir.mkdir(exist_ok=True)
            for script in scripts_dir.iterdir():
                if script.is_file():
                    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            settings_path = target / "settings.json"
            if not settings_path.exists():
                settings_path.write_text(json.dumps(DEFAULT_TOOLING_SETTINGS, indent=2), encoding="utf-8")
                logger.info("Created default tooling settings at %s", settings_path)
        except OSError as exc:
            logger.warning("Failed to copy tooling into %s: %s", workspace, exc)
            return False
        logger.info("Copied tooling into %s", target)
        return True

    def create_sub_workspace(self, base_workspace: Path, branch_name: str) -> Path:
        """Copy the base workspace into an isolated sibling named after the branch."""
        sub_workspace = base_workspace.with_name(sub_workspace_name(base_workspace.name, branch_name))
        try:
            if sub_workspace.exists():
                logger.info("Replacing stale sub-workspace %s", sub_workspace)
                shutil.rmtree(sub_workspace)
            shutil.copytree(base_workspace, sub_workspace, ignore=shutil.ignore_patterns(*_IGNORED_DIRS))
        except (OSError, shutil.Error) as exc:
            raise WorkspaceSetupError(
                f"Unable to create sub-workspace for branch '{branch_name}': {exc}",
                details={"workspace_path": str(sub_workspace), "branch_name": branch_name},
            ) from exc
        logger.info("Created sub-workspace for %s: %s", branch_name, sub_workspace)
        return sub_workspace

    def merge_sub_workspaces(
        self,
        base_workspace: Path,
        base_manifest: dict[str, str],
        branches: list[tuple[str, Path]],
    ) -> MergeResult:
        """Merge sub-workspaces back into the base, in the order given.

        A branch conflicts when it changes a path that an earlier merged
        branch already changed to different content. A conflicting branch is
        skipped entirely and its name is recorded; merging continues. A branch
        whose copy-back raises an I/O error is recorded in ``failed_branches``
        and merging continues with the next branch.
        """
        result = MergeResult()
        applied: dict[str, str | None] = {}
        for branch_name, sub_workspace in branches:
            try:
                changes = diff_manifests(base_manifest, snapshot_manifest(sub_workspace))
            except OSError as exc:
                logger.error("Cannot read sub-workspace for branch %s: %s", branch_name, exc)
                result.failed_branches.append(branch_name)
                continue
            overlapping = sorted(rel for rel, digest in changes.items() if rel in applied and applied[rel] != digest)
            if overlapping:
                logger.warning(
                    "Merge conflict on branch %s: %s",
                    branch_name,
                    ", ".join(overlapping),
                )
                result.conflicts.append(branch_name)
                continue

            try:
                for rel, digest in changes.items():
                    target = base_workspace / rel
                    if digest is None:
                        target.unlink(missing_ok=True)
                    else:
                        target.parent.mkdir(parents=True, exist_ok=True)
                        shutil.copy2(sub_workspace / rel, target)
                    applied[rel] = digest
            except OSError as exc:
                logger.error("Merge of branch %s stopped partway: %s", branch_name, exc)
                result.failed_branches.append(branch_name)
                continue
            result.merged_branches.append(branch_name)
            logger.info("Merged branch %s (%d changed paths)", branch_name, len(changes))
        return result

    def cleanup_sub_workspaces(self, sub_workspaces: list[Path]) -> list[str]:
        """Remove sub-workspaces. Errors are logged and returned, never raised."""
        errors: list[str] = []
        for sub_workspace in sub_workspaces:
            try:
                shutil.rmtree(sub_workspace)
            except OSError as exc:
                message = f"{sub_workspace}: {exc}"
                logger.warning("Failed to clean up sub-workspace %s", message)
                errors.append(message)
        return errors
