from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    base_path: str = "/tmp/claude-builds"
    max_repair_attempts: int = 3
    agent_timeout_seconds: int = 600
    compliance_timeout_seconds: int = 300
    agent_cli: str = "claude"
    model_low: str = "haiku"
    model_mid: str = "sonnet"
    model_high: str = "opus"
    tooling_template_dir: str = ""
    checkpoint_db: str = "checkpoints/build_graph.sqlite"
    recursion_limit: int = 100
    git_user_name: str = "Claude Build Agent"
    git_user_email: str = "claude-build@localhost"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            base_path=os.getenv("BUILDER_BASE_PATH", "/tmp/claude-builds"),
            max_repair_attempts=_get_env_int("BUILDER_MAX_REPAIR_ATTEMPTS", default=3, minimum=1, maximum=10),
            agent_timeout_seconds=_get_env_int("BUILDER_AGENT_TIMEOUT_SECONDS", default=600, minimum=10),
            compliance_timeout_seconds=_get_env_int("BUILDER_COMPLIANCE_TIMEOUT_SECONDS", default=300, minimum=10),
            agent_cli=os.getenv("BUILDER_AGENT_CLI", "claude"),
            model_low=os.getenv("BUILDER_MODEL_LOW", "haiku"),
            model_mid=os.getenv("BUILDER_MODEL_MID", "sonnet"),
            model_high=os.getenv("BUILDER_MODEL_HIGH", "opus"),
            tooling_template_dir=os.getenv("BUILDER_TOOLING_TEMPLATE_DIR", ""),
            checkpoint_db=os.getenv("BUILDER_CHECKPOINT_DB", "checkpoints/build_graph.sqlite"),
            recursion_limit=_get_env_int("BUILDER_RECURSION_LIMIT", default=100, minimum=25),
            git_user_name=os.getenv("BUILDER_GIT_USER_NAME", "Claude Build Agent"),
            git_user_email=os.getenv("BUILDER_GIT_USER_EMAIL", "claude-build@localhost"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.base_path.strip():
            raise ValueError("BUILDER_BASE_PATH must be non-empty")
        if not self.agent_cli.strip():
            raise ValueError("BUILDER_AGENT_CLI must be non-empty")
        if not self.checkpoint_db.strip():
            raise ValueError("BUILDER_CHECKPOINT_DB must be non-empty")

        # -- Model name validation --
        model_low = self.model_low.strip()
        if not model_low:
            raise ValueError("BUILDER_MODEL_LOW must be non-empty")
        model_mid = self.model_mid.strip()
        if not model_mid:
            raise ValueError("BUILDER_MODEL_MID must be non-empty")
        model_high = self.model_high.strip()
        if not model_high:
            raise ValueError("BUILDER_MODEL_HIGH must be non-empty")

        # -- Numeric bounds validation --
        if self.max_repair_attempts < 1:
            raise ValueError(f"BUILDER_MAX_REPAIR_ATTEMPTS must be >= 1, got: {self.max_repair_attempts}")
        if self.recursion_limit < 4 * self.max_repair_attempts + 8:
            raise ValueError(
                f"BUILDER_RECURSION_LIMIT ({self.recursion_limit}) too small for "
                f"{self.max_repair_attempts} repair attempts"
            )

        return replace(
            self,
            base_path=self.base_path.strip(),
            agent_cli=self.agent_cli.strip(),
            model_low=model_low,
            model_mid=model_mid,
            model_high=model_high,
            tooling_template_dir=self.tooling_template_dir.strip(),
            checkpoint_db=self.checkpoint_db.strip(),
        )

    @property
    def tooling_template_path(self) -> Path | None:
        """Return the supporting-tooling template directory, or None when disabled."""
        return Path(self.tooling_template_dir) if self.tooling_template_dir else None

    def checkpoint_path(self, base_path: Path | None = None) -> Path:
        path = Path(self.checkpoint_db)
        root = base_path if base_path is not None else Path(self.base_path)
        return path if path.is_absolute() else root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
