"""Deterministic identifiers for canonical events.

Daily-deduplicated kinds get an id derived from (kind, resolved identity, UTC day) so that
client retries, the server middleware ping and the backfill job all compute the same
primary key for one logical occurrence. The storage uniqueness constraint on that key, not
application locking, decides which concurrent writer wins.
"""
from __future__ import annotations
import hashlib
import uuid
from datetime import datetime, date, timezone
from typing import Optional
from activity_ledger.config import Settings, get_settings, parse_dedup_kinds

EVENT_ID_HEX_LENGTH = 32


def utcnow() -> datetime:
    """Current time as naive UTC (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


def event_day(ts: datetime) -> date:
    """UTC calendar day of a timestamp."""
    return to_utc_naive(ts).date()


def resolved_identity(user_id: Optional[str], anonymous_id: Optional[str]) -> str:
    return user_id or anonymous_id or "unknown"


def _digest(content: str) -> str:
    return hashlib.sha256(content.encode()).hexdigest()[:EVENT_ID_HEX_LENGTH]


def deterministic_event_id(kind: str, user_id: Optional[str], anonymous_id: Optional[str], day: date) -> str:
    """Stable id for (kind, identity, day). Authenticated identity wins over anonymous."""
    return _digest(f"{kind}:{resolved_identity(user_id, anonymous_id)}:{day.isoformat()}")


def client_event_id(kind: str, raw_event_id: str) -> str:
    """Namespace a producer-supplied event id by kind so retries of one beacon collapse."""
    return _digest(f"{kind}:client:{raw_event_id.strip()}")


def random_event_id() -> str:
    return uuid.uuid4().hex


def is_daily_dedup(kind: str, settings: Optional[Settings] = None) -> bool:
    """True when at most one ``kind`` event per identity per UTC day is kept."""
    return kind in parse_dedup_kinds((settings or get_settings()).daily_dedup_kinds)


def assign_event_id(kind: str, user_id: Optional[str], anonymous_id: Optional[str], occurred_at: datetime,
                    dedup_kinds: frozenset[str], raw_event_id: Optional[str] = None) -> str:
    if kind in dedup_kinds:
        return deterministic_event_id(kind, user_id, anonymous_id, event_day(occurred_at))
    if raw_event_id:
        return client_event_id(kind, raw_event_id)
    return random_event_id()
