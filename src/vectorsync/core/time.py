from __future__ import annotations

from datetime import datetime, timedelta, timezone


def now_utc_iso() -> str:
    """Return an ISO timestamp in UTC with microsecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def utc_iso_after(seconds: float) -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=max(0.0, seconds))).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
