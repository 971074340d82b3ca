"""RFC 8785 canonical JSON for audit ledger lines."""

from __future__ import annotations

from typing import Any

import rfc8785
from pydantic import BaseModel


def to_canonical_json(value: Any, *, exclude_none: bool = False) -> str:
    """Serialize ``value`` with sorted keys and no insignificant whitespace.

    Pydantic models are dumped in JSON mode first, so enums, timestamps and
    paths arrive as strings. Anything else must already be JSON-shaped.

    Raises:
        rfc8785.CanonicalizationError: If the value holds a non-JSON type,
            a non-string key or an out-of-range number.
    """
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", exclude_none=exclude_none)
    return rfc8785.dumps(value).decode("utf-8")


def to_json_line(model: BaseModel, *, exclude_none: bool = True) -> str:
    """Render a model as one canonical JSON line (newline-terminated)."""
    return to_canonical_json(model, exclude_none=exclude_none) + "\n"
