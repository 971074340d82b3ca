from __future__ import annotations

import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any

from deepagents import create_deep_agent
from langgraph.checkpoint.memory import InMemorySaver

from .backends import build_workspace_backend
from .llm import get_chat_model
from .model_selection import RuntimeModelSelection
from .models import REQUIREMENTS_FILENAME, AgentInvocation, AgentResult, CapabilityTier, PermissionMode
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

# USD per million (input, output) tokens for each tier.
DEFAULT_PRICES_PER_MTOK: dict[CapabilityTier, tuple[float, float]] = {
    CapabilityTier.LOW: (0.80, 4.00),
    CapabilityTier.MID: (3.00, 15.00),
    CapabilityTier.HIGH: (15.00, 75.00),
}

BASE_SYSTEM_PROMPT = (
    "You are a senior engineer building a software package inside a dedicated workspace. "
    f"The static project requirements are in /{REQUIREMENTS_FILENAME}; read them before changing anything. "
    "Work only through the filesystem tools you have been given."
)
PLAN_MODE_PROMPT = "This step is planning only. Do not create or modify files; respond with your analysis."


def _content_to_text(content: Any) -> str:
    """Flatten string, list-of-parts, or dict message content into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                chunks.append(item["text"])
            elif isinstance(item, dict) and item.get("content") is not None:
                chunks.append(_content_to_text(item["content"]))
            else:
                chunks.append(json.dumps(item, sort_keys=True, default=str))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return _content_to_text(content["content"])
        return json.dumps(content, sort_keys=True, default=str)
    return str(content)


def extract_agent_text(response: Any) -> str:
    """Extract the final message text from a deep-agent response."""
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        messages = response.get("messages")
        if isinstance(messages, list) and messages:
            return extract_agent_text(messages[-1])
        if "content" in response:
            return _content_to_text(response["content"])
    content = getattr(response, "content", None)
    if content is not None:
        return _content_to_text(content)
    return _content_to_text(response)


def usage_cost(messages: list[Any], prices: tuple[float, float]) -> tuple[float, int]:
    """Price the token usage of ``messages``.

    Returns:
        ``(cost_usd, num_turns)`` where turns counts model responses carrying usage metadata.
    """
    input_price, output_price = prices
    cost = 0.0
    turns = 0
    for message in messages:
        usage = getattr(message, "usage_metadata", None)
        if not usage:
            continue
        turns += 1
        cost += usage.get("input_tokens", 0) * input_price / 1_000_000
        cost += usage.get("output_tokens", 0) * output_price / 1_000_000
    return cost, turns


class DeepAgentExecutor:
    """In-process agent executor built on ``deepagents``.

    Each invocation gets a deep agent whose filesystem backend is rooted at
    the invocation's working directory and scoped to its tool set and
    permission mode. The session token is the LangGraph thread id on a
    checkpointer shared by all invocations of this executor, so passing a
    token back continues that conversation.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        model_selection: RuntimeModelSelection | None = None,
        prices: dict[CapabilityTier, tuple[float, float]] | None = None,
        checkpointer: Any | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.model_selection = (
            model_selection if model_selection is not None else RuntimeModelSelection.from_settings(self.settings)
        )
        self.prices = dict(prices) if prices is not None else dict(DEFAULT_PRICES_PER_MTOK)
        self.checkpointer = checkpointer if checkpointer is not None else InMemorySaver()
        self._message_counts: dict[str, int] = {}
        self._latest_session_by_dir: dict[str, str] = {}

    def _session_for(self, invocation: AgentInvocation) -> str:
        working_dir = str(Path(invocation.working_dir).resolve())
        if invocation.session_id:
            return invocation.session_id
        if invocation.continue_recent and working_dir in self._latest_session_by_dir:
            return self._latest_session_by_dir[working_dir]
        return f"session-{uuid.uuid4().hex}"

    def _system_prompt(self, invocation: AgentInvocation) -> str:
        parts = [BASE_SYSTEM_PROMPT]
        if invocation.permission_mode == PermissionMode.PLAN:
            parts.append(PLAN_MODE_PROMPT)
        if invocation.system_prompt_append:
            parts.append(invocation.system_prompt_append)
        return "\n\n".join(parts)

    def execute(self, invocation: AgentInvocation) -> AgentResult:
        session_id = self._session_for(invocation)
        started = time.monotonic()
        try:
            model = get_chat_model(
                model_name=self.model_selection.resolve(invocation.tier),
                timeout=invocation.timeout_seconds,
                repo_root=Path(invocation.working_dir),
            )
            backend = build_workspace_backend(
                invocation.working_dir,
                allowed_tools=invocation.allowed_tools,
                permission_mode=invocation.permission_mode,
            )
            agent = create_deep_agent(
                model=model,
                tools=[],
                backend=backend,
                system_prompt=self._system_prompt(invocation),
                checkpointer=self.checkpointer,
                name="package-builder",
            )
            response = agent.invoke(
                {"messages": [{"role": "user", "content": invocation.instruction}]},
                config={
                    "recursion_limit": self.settings.recursion_limit,
                    "configurable": {"thread_id": session_id},
                },
            )
        except Exception as exc:  # noqa: BLE001 - every agent failure is reported as a failed result.
            logger.error("Deep agent invocation failed: %s", exc)
            return AgentResult(
                success=False,
                error=str(exc) or type(exc).__name__,
                duration_ms=int((time.monotonic() - started) * 1000),
                session_id=session_id,
            )

        messages = list(response.get("messages", [])) if isinstance(response, dict) else []
        already_counted = self._message_counts.get(session_id, 0)
        cost, turns = usage_cost(messages[already_counted:], self.prices[invocation.tier])
        self._message_counts[session_id] = len(messages)
        self._latest_session_by_dir[str(Path(invocation.working_dir).resolve())] = session_id

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Deep agent finished: cost=$%.4f turns=%s duration=%sms", cost, turns, duration_ms)
        return AgentResult(
            success=True,
            result=extract_agent_text(response).strip(),
            cost_usd=cost,
            duration_ms=duration_ms,
            session_id=session_id,
            num_turns=turns,
        )
