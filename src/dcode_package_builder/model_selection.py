from __future__ import annotations

import re
from dataclasses import dataclass

from .models import CapabilityTier, ComplianceResult, FailureCategory

# Transcript signals that a failure crosses file/module boundaries. This is a
# starting classifier; extend both tuples as new signals are observed.
ARCHITECTURAL_SIGNALS: tuple[str, ...] = (
    "circular dependency",
    "module type mismatch",
    "design inconsistency",
)
ARCHITECTURAL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Module .+ no longer aligns with .+ constraints", re.IGNORECASE),
)
MULTI_FILE_SIGNAL = "multiple files"


def has_architectural_signal(transcript: str) -> bool:
    if any(signal in transcript for signal in ARCHITECTURAL_SIGNALS):
        return True
    return any(pattern.search(transcript) for pattern in ARCHITECTURAL_PATTERNS)


def select_repair_tier(result: ComplianceResult) -> CapabilityTier:
    """Pick the capability tier for repairing a failed compliance pass.

    Pure and deterministic; safe to re-execute under workflow replay.

    Rules, first match wins:
        1. lint failure -> LOW (mechanical)
        2. architectural signal in the transcript -> HIGH
        3. type/build failure not spanning multiple files -> LOW
        4. anything else -> MID
    """
    if result.failure_category == FailureCategory.LINT:
        return CapabilityTier.LOW

    if has_architectural_signal(result.output):
        return CapabilityTier.HIGH

    if result.failure_category == FailureCategory.TYPE_BUILD and MULTI_FILE_SIGNAL not in result.output:
        return CapabilityTier.LOW

    return CapabilityTier.MID


@dataclass(frozen=True)
class RuntimeModelSelection:
    """Maps capability tiers to concrete model identifiers.

    The orchestrator reasons in tiers only; executors call ``resolve`` to
    translate a tier into the model name passed to the agent.
    """

    by_tier: dict[CapabilityTier, str]

    def __post_init__(self) -> None:
        """Validate that all tiers are present and no tier maps to an empty model name."""
        missing = set(CapabilityTier) - set(self.by_tier)
        if missing:
            raise ValueError(
                "RuntimeModelSelection missing required tiers: "
                f"{', '.join(sorted(tier.value for tier in missing))}"
            )
        for tier, model_name in self.by_tier.items():
            if not model_name or not model_name.strip():
                raise ValueError(f"RuntimeModelSelection tier '{tier.value}' has empty model name")

    @classmethod
    def from_settings(cls, settings) -> "RuntimeModelSelection":  # noqa: ANN001 - avoids settings import cycle.
        return cls(
            by_tier={
                CapabilityTier.LOW: settings.model_low,
                CapabilityTier.MID: settings.model_mid,
                CapabilityTier.HIGH: settings.model_high,
            }
        )

    def resolve(self, tier: CapabilityTier | str) -> str:
        """Resolve a tier to a concrete model name.

        Raises:
            ValueError: If ``tier`` is not a recognized tier.
        """
        try:
            key = CapabilityTier(tier)
        except ValueError as exc:
            available = ", ".join(item.value for item in CapabilityTier)
            raise ValueError(f"Unknown capability tier '{tier}'. Valid tiers: {available}") from exc
        return self.by_tier[key]
