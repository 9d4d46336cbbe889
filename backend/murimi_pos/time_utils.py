from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

# Kenya runs on East Africa Time all year (no DST)
EAT = timezone(timedelta(hours=3), "EAT")


def utcnow() -> datetime:
    """Server clock in UTC, stored naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(dt: datetime) -> datetime:
    """Attach UTC to a naive value; aware values are converted."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_naive_utc(dt: datetime) -> datetime:
    return as_utc(dt).replace(tzinfo=None)


def to_east_africa(dt: datetime) -> datetime:
    return as_utc(dt).astimezone(EAT)


def hours_between(earlier: datetime, later: datetime) -> float:
    delta = to_naive_utc(later) - to_naive_utc(earlier)
    return delta.total_seconds() / 3600


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a client-supplied ISO-8601 timestamp into naive UTC.

    Till clocks send either "...Z", an explicit offset, or a bare local
    timestamp. Bare values are read as UTC. Empty input gives None.
    """
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(text))


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Serialize to second precision with a trailing 'Z' (naive means UTC)."""
    if dt is None:
        return None
    return as_utc(dt).replace(microsecond=0).isoformat().replace("+00:00", "Z")
