"""Shared helpers for domain models: ids and UTC timestamps."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Coerce a datetime to aware UTC. Naive values are assumed to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, datetime, int, float, None]) -> Optional[datetime]:
    """Parse registry timestamps.

    Accepts ISO-8601 strings (with a trailing ``Z`` or an offset), epoch
    seconds, or datetimes.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def new_id() -> str:
    """Generate an internal record id."""
    return uuid.uuid4().hex
