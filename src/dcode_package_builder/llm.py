from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 600
_DEFAULT_MAX_RETRIES: int = 2


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return the OpenAI key the deep-agent executor authenticates with.

    A ``.env`` under ``repo_root`` (default: cwd) is loaded without overriding
    variables already exported in the process.

    Raises:
        RuntimeError: If no non-blank OPENAI_API_KEY is set.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for the deep-agent executor")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance for one agent invocation.

    Args:
        model_name: Concrete model identifier resolved from a capability tier.
        temperature: Sampling temperature.
        timeout: Per-request timeout in seconds.
        max_retries: Retry attempts on transient API failures.
        repo_root: Optional directory holding a ``.env`` file.

    Raises:
        ValueError: If ``model_name`` is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    logger.debug("Creating chat model %s (timeout=%ss)", model_name, timeout)
    return ChatOpenAI(**kwargs)
