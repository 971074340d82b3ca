"""Append-only audit ledger stored as newline-delimited JSON in each workspace."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from .canonical import to_json_line
from .models import AUDIT_FILENAME, AuditEntry

logger = logging.getLogger(__name__)


def utc_timestamp() -> str:
    return datetime.now(UTC).isoformat()


class AuditLedger:
    """Single-writer, append-only recorder of one entry per phase/attempt.

    Entries are never rewritten. Every append stamps the entry with the
    wall-clock time of the write, so the file order is the completion order.
    Duplicate appends from a replayed step are tolerated: the ledger is an
    observability artifact, not a source of truth for the orchestrator.
    """

    def __init__(self, workspace_path: Path) -> None:
        self.workspace_path = workspace_path
        self.path = workspace_path / AUDIT_FILENAME

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Stamp and append one entry.

        Args:
            entry: The entry to record. Its ``timestamp`` is replaced with the write time.

        Returns:
            The entry exactly as written.
        """
        stamped = entry.model_copy(update={"timestamp": utc_timestamp()})
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(to_json_line(stamped))
        logger.info("Logged audit entry: %s", stamped.step_name)
        return stamped

    def read_entries(self) -> list[AuditEntry]:
        """Parse every recorded entry in write order.

        Raises:
            ValueError: If a line is not a valid audit entry.
        """
        if not self.path.is_file():
            return []
        entries: list[AuditEntry] = []
        for line_number, line in enumerate(self.path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entries.append(AuditEntry.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as exc:
                raise ValueError(f"audit entry at {self.path}:{line_number} is invalid: {exc}") from exc
        return entries

    def step_names(self) -> list[str]:
        return [entry.step_name for entry in self.read_entries()]

    def total_cost(self) -> float:
        return sum(entry.cost_usd for entry in self.read_entries())
