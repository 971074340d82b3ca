from __future__ import annotations

import json
import logging
import re
import subprocess
import time
from typing import Any, Protocol

from .model_selection import RuntimeModelSelection
from .models import AgentInvocation, AgentResult, PermissionMode
from .settings import RuntimeSettings
from .utils import as_text

logger = logging.getLogger(__name__)

SESSION_ID_RE = re.compile(r'"session_id"\s*:\s*"([^"]+)"')

# CLI spelling of each permission mode.
_CLI_PERMISSION_MODES: dict[PermissionMode, str] = {
    PermissionMode.ACCEPT_EDITS: "acceptEdits",
    PermissionMode.PLAN: "plan",
    PermissionMode.FULL: "bypassPermissions",
}


class AgentExecutor(Protocol):
    """Runs one coding-agent invocation inside a workspace."""

    def execute(self, invocation: AgentInvocation) -> AgentResult:
        ...


def extract_session_id(raw_output: str) -> str:
    """Best-effort session token recovery from malformed agent output."""
    match = SESSION_ID_RE.search(raw_output)
    return match.group(1) if match else ""


def parse_cli_payload(payload: dict[str, Any], *, fallback_duration_ms: int, raw_output: str) -> AgentResult:
    """Turn the CLI's JSON result object into an ``AgentResult``."""
    cost = payload.get("cost_usd")
    if cost is None:
        cost = payload.get("total_cost_usd", 0.0)
    is_error = bool(payload.get("is_error", False))
    result_text = str(payload.get("result") or "")
    return AgentResult(
        success=not is_error,
        result=result_text,
        cost_usd=float(cost or 0.0),
        duration_ms=int(payload.get("duration_ms") or fallback_duration_ms),
        session_id=str(payload.get("session_id") or ""),
        num_turns=payload.get("num_turns"),
        error=(result_text or "agent reported an error") if is_error else None,
        raw_output=raw_output if is_error else None,
    )


class ClaudeCliExecutor:
    """Runs the coding-agent CLI headless in the workspace and parses its JSON result.

    Every failure mode (missing binary, timeout, non-zero exit, unparseable
    output) is reported as a failed ``AgentResult``; this class never raises
    for an agent failure.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        model_selection: RuntimeModelSelection | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.model_selection = (
            model_selection if model_selection is not None else RuntimeModelSelection.from_settings(self.settings)
        )

    def build_command(self, invocation: AgentInvocation) -> list[str]:
        args = [self.settings.agent_cli]
        if invocation.session_id:
            args.extend(["--resume", invocation.session_id])
        elif invocation.continue_recent:
            args.append("--continue")
        args.extend(
            [
                "--print",
                "--output-format",
                "json",
                "--permission-mode",
                _CLI_PERMISSION_MODES[invocation.permission_mode],
                "--allowedTools",
                ",".join(invocation.allowed_tools),
                "--model",
                self.model_selection.resolve(invocation.tier),
            ]
        )
        if invocation.system_prompt_append:
            args.extend(["--append-system-prompt", invocation.system_prompt_append])
        args.append(invocation.instruction)
        return args

    def execute(self, invocation: AgentInvocation) -> AgentResult:
        command = self.build_command(invocation)
        logger.info(
            "Running agent CLI in %s (tier=%s, resume=%s)",
            invocation.working_dir,
            invocation.tier.value,
            bool(invocation.session_id),
        )
        started = time.monotonic()
        try:
            completed = subprocess.run(
                command,
                cwd=invocation.working_dir,
                capture_output=True,
                text=True,
                timeout=invocation.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as exc:
            logger.error("Agent CLI not found: %s", self.settings.agent_cli)
            return AgentResult(success=False, error=f"Agent CLI not found: {exc}")
        except subprocess.TimeoutExpired as exc:
            partial = as_text(exc.stdout)
            logger.error("Agent CLI timed out after %ss", invocation.timeout_seconds)
            return AgentResult(
                success=False,
                error=f"Agent invocation timed out after {invocation.timeout_seconds}s",
                duration_ms=int((time.monotonic() - started) * 1000),
                session_id=extract_session_id(partial),
                raw_output=partial or None,
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        stdout = completed.stdout or ""
        if completed.returncode != 0:
            logger.error("Agent CLI exited with code %s", completed.returncode)
            return AgentResult(
                success=False,
                error=(completed.stderr or "").strip() or f"Agent CLI exited with code {completed.returncode}",
                duration_ms=duration_ms,
                session_id=extract_session_id(stdout),
                raw_output=stdout or None,
            )

        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError as exc:
            logger.error("Failed to parse agent CLI output: %s", exc)
            return AgentResult(
                success=False,
                error=f"Failed to parse JSON output: {exc}",
                duration_ms=duration_ms,
                session_id=extract_session_id(stdout),
                raw_output=stdout,
            )
        if not isinstance(payload, dict):
            return AgentResult(
                success=False,
                error="Agent CLI output was not a JSON object",
                duration_ms=duration_ms,
                raw_output=stdout,
            )

        result = parse_cli_payload(payload, fallback_duration_ms=duration_ms, raw_output=stdout)
        logger.info("Agent CLI finished: cost=$%.4f duration=%sms", result.cost_usd, result.duration_ms)
        return result
