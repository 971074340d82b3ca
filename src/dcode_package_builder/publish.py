"""Best-effort source-control publishing: branch, commit, push, pull request."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from pathlib import Path

from .models import PublishResult, PublishStepResult, PullRequestConfig
from .settings import RuntimeSettings
from .utils import format_cost

logger = logging.getLogger(__name__)

PACKAGE_NAME_RE = re.compile(r"""package[:\s]+['"]?([^'"\s]+)['"]?""", re.IGNORECASE)
PR_NUMBER_RE = re.compile(r"/pull/(\d+)")
DEFAULT_PACKAGE_NAME = "package"


def extract_package_name(spec_content: str) -> str:
    match = PACKAGE_NAME_RE.search(spec_content)
    return match.group(1) if match else DEFAULT_PACKAGE_NAME


def default_branch_name(package_name: str) -> str:
    return f"feat/{re.sub(r'[@/]', '-', package_name)}"


def default_pr_body(*, package_name: str, total_cost: float, repair_attempts: int, workspace_path: str) -> str:
    return (
        "Automatically generated package build.\n\n"
        f"## Package: {package_name}\n\n"
        "### Build Details\n"
        f"- Total Cost: {format_cost(total_cost)}\n"
        f"- Repair Attempts: {repair_attempts}\n"
        f"- Workspace: {workspace_path}\n\n"
        "### Verification\n"
        "All compliance checks passed (install, build, lint, test).\n\n"
        "See audit_trace.jsonl in the workspace for detailed logs."
    )


class GitPublisher:
    """Runs git and ``gh`` in a workspace. Every step returns a ``PublishStepResult``; none raise."""

    def __init__(self, *, settings: RuntimeSettings | None = None, timeout_seconds: int = 120) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.timeout_seconds = timeout_seconds

    def _run(self, args: list[str], cwd: Path) -> PublishStepResult:
        try:
            completed = subprocess.run(
                args,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            return PublishStepResult(success=False, error=f"{' '.join(args[:3])}: {exc}")
        if completed.returncode != 0:
            return PublishStepResult(
                success=False,
                stdout=completed.stdout,
                stderr=completed.stderr,
                error=(completed.stderr or completed.stdout).strip() or f"exit code {completed.returncode}",
            )
        return PublishStepResult(success=True, stdout=completed.stdout, stderr=completed.stderr)

    def _ensure_repository(self, workspace: Path) -> PublishStepResult:
        if self._run(["git", "rev-parse", "--git-dir"], workspace).success:
            return PublishStepResult(success=True)
        return self._run(["git", "init"], workspace)

    def create_branch(self, workspace: Path, branch_name: str, base_branch: str | None = None) -> PublishStepResult:
        initialized = self._ensure_repository(workspace)
        if not initialized.success:
            return initialized
        if base_branch and self._run(["git", "rev-parse", "--verify", "--quiet", base_branch], workspace).success:
            checkout = self._run(["git", "checkout", base_branch], workspace)
            if not checkout.success:
                return checkout
        return self._run(["git", "checkout", "-b", branch_name], workspace)

    def commit(self, workspace: Path, message: str) -> PublishStepResult:
        """Stage and commit everything. A clean tree is a success without a commit hash."""
        initialized = self._ensure_repository(workspace)
        if not initialized.success:
            return initialized
        for key, value in (("user.name", self.settings.git_user_name), ("user.email", self.settings.git_user_email)):
            configured = self._run(["git", "config", key, value], workspace)
            if not configured.success:
                return configured

        staged = self._run(["git", "add", "-A"], workspace)
        if not staged.success:
            return staged
        status = self._run(["git", "status", "--porcelain"], workspace)
        if not status.success:
            return status
        if not status.stdout.strip():
            return PublishStepResult(success=True, stdout="No changes to commit")

        committed = self._run(["git", "commit", "-m", message], workspace)
        if not committed.success:
            return committed
        head = self._run(["git", "rev-parse", "HEAD"], workspace)
        if not head.success:
            return head
        return committed.model_copy(update={"commit_hash": head.stdout.strip()})

    def push(self, workspace: Path, branch_name: str, remote: str = "origin") -> PublishStepResult:
        return self._run(["git", "push", "-u", remote, branch_name], workspace)

    def create_pull_request(
        self,
        workspace: Path,
        *,
        branch_name: str,
        title: str,
        body: str,
        base_branch: str = "main",
        draft: bool = True,
        labels: tuple[str, ...] = (),
    ) -> PublishStepResult:
        args = ["gh", "pr", "create", "--base", base_branch, "--head", branch_name, "--title", title, "--body", body]
        if draft:
            args.append("--draft")
        for label in labels:
            args.extend(["--label", label])
        created = self._run(args, workspace)
        if not created.success:
            return created
        pr_url = created.stdout.strip().splitlines()[-1] if created.stdout.strip() else ""
        match = PR_NUMBER_RE.search(pr_url)
        return created.model_copy(
            update={"pr_url": pr_url or None, "pr_number": int(match.group(1)) if match else None}
        )


def publish_build(
    publisher: GitPublisher,
    *,
    workspace_path: str,
    spec_content: str,
    pr_config: PullRequestConfig,
    total_cost: float,
    repair_attempts: int,
) -> PublishResult:
    """Branch, commit, push and open a pull request for a verified build.

    Each failing step is logged and recorded in ``errors``; nothing raises,
    so publishing can never change the verdict of the build.
    """
    workspace = Path(workspace_path)
    package_name = extract_package_name(spec_content)
    branch_name = pr_config.branch_name or default_branch_name(package_name)
    title = pr_config.title or f"feat: Add {package_name} package"
    result = PublishResult(branch_name=branch_name)

    try:
        branch = publisher.create_branch(workspace, branch_name, pr_config.base_branch)
        if not branch.success:
            logger.warning("Branch creation failed: %s", branch.error)
            result.errors.append(f"branch: {branch.error}")

        commit = publisher.commit(workspace, title)
        if commit.success:
            result.committed = True
            result.commit_hash = commit.commit_hash
        else:
            logger.warning("Commit failed: %s", commit.error)
            result.errors.append(f"commit: {commit.error}")

        push = publisher.push(workspace, branch_name)
        if push.success:
            result.pushed = True
        else:
            logger.warning("Push failed: %s", push.error)
            result.errors.append(f"push: {push.error}")

        body = pr_config.body or default_pr_body(
            package_name=package_name,
            total_cost=total_cost,
            repair_attempts=repair_attempts,
            workspace_path=workspace_path,
        )
        pull_request = publisher.create_pull_request(
            workspace,
            branch_name=branch_name,
            title=title,
            body=body,
            base_branch=pr_config.base_branch,
            draft=pr_config.draft,
            labels=pr_config.labels,
        )
        if pull_request.success:
            result.pr_url = pull_request.pr_url
            result.pr_number = pull_request.pr_number
            logger.info("PR created: %s", result.pr_url)
        else:
            logger.warning("PR creation failed: %s", pull_request.error)
            result.errors.append(f"pull_request: {pull_request.error}")
    except Exception as exc:  # noqa: BLE001 - publishing is best-effort once the build is verified.
        logger.error("Publish error: %s", exc)
        result.errors.append(f"publish: {exc}")
    return result


def check_credentials(*, require_github: bool = False, agent_cli: str | None = "claude") -> list[str]:
    """Return the names of missing tools required to run (and optionally publish) a build.

    Pass ``agent_cli=None`` when the agent runs in-process and no binary is needed.
    """
    required = ["git"]
    if agent_cli:
        required.append(agent_cli)
    if require_github:
        required.append("gh")
    return [name for name in required if shutil.which(name) is None]
