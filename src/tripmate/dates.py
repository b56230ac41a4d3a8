"""ISO calendar date arithmetic."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any


def _parse(value: Any, path: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            raise ValueError(f"Invalid date at {path}: {value!r}") from None
    raise TypeError(f"Unsupported date type at {path}: {type(value).__name__}")


def shift_iso_date(value: Any, days: int, path: str = "date") -> str | None:
    """Shift a YYYY-MM-DD value by ``days`` and return it as YYYY-MM-DD.

    ``None`` passes through so optional plan bounds can be shifted blindly.
    """
    if value is None:
        return None
    shifted = _parse(value, path) + timedelta(days=days)
    return shifted.isoformat()
