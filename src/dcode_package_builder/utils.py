from __future__ import annotations

import re
import uuid


def slugify_name(name: str, *, max_length: int = 48) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", name.lower()).strip("-")
    slug = re.sub(r"-{2,}", "-", slug)
    return slug[:max_length].rstrip("-")


def new_run_id() -> str:
    return uuid.uuid4().hex


def format_cost(cost: float) -> str:
    return f"${cost:.4f}"


def as_text(value: str | bytes | None) -> str:
    """Decode captured process output, which is bytes on some timeout paths."""
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
