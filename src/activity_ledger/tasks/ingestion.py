from __future__ import annotations
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional
from sqlalchemy import select, or_
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from activity_ledger.config import Settings, get_settings, parse_dedup_kinds
from activity_ledger.infrastructure.db import SessionLocal
from activity_ledger.infrastructure.idempotency import assign_event_id, event_day, is_daily_dedup
from activity_ledger.infrastructure.metrics import EVENTS_WRITTEN, STORAGE_FAILURES, WRITE_LATENCY
from activity_ledger.models.tables import SOURCE_CHANNELS, CanonicalEvent
from activity_ledger.validation.events import CanonicalEventDraft, REASON_DUPLICATE

logger = logging.getLogger(__name__)


class StorageUnavailableError(Exception):
    """Transient storage failure. Safe to retry: the write path is idempotent end to end."""


@dataclass(frozen=True)
class WriteOutcome:
    status: str  # inserted|skipped
    event_id: str
    reason: Optional[str] = None

    @property
    def inserted(self) -> bool:
        return self.status == "inserted"


def keyed_draft(draft: CanonicalEventDraft, settings: Optional[Settings] = None) -> CanonicalEventDraft:
    """Attach the deterministic or random identifier if the draft has none yet."""
    if draft.id:
        return draft
    settings = settings or get_settings()
    event_id = assign_event_id(
        draft.kind,
        draft.user_id,
        draft.anonymous_id,
        draft.occurred_at,
        parse_dedup_kinds(settings.daily_dedup_kinds),
        raw_event_id=draft.raw_event_id,
    )
    return draft.with_id(event_id)


def _day_bounds(ts: datetime) -> tuple[datetime, datetime]:
    start = datetime.combine(event_day(ts), datetime.min.time())
    return start, start + timedelta(days=1)


def find_same_day_event(session: Session, kind: str, user_id: Optional[str], anonymous_id: Optional[str],
                        occurred_at: datetime) -> Optional[str]:
    """Id of an existing row of ``kind`` on the same UTC day for either identity dimension."""
    identity_filters = []
    if user_id:
        identity_filters.append(CanonicalEvent.user_id == user_id)
    if anonymous_id:
        identity_filters.append(CanonicalEvent.anonymous_id == anonymous_id)
    if not identity_filters:
        return None
    start, end = _day_bounds(occurred_at)
    stmt = (
        select(CanonicalEvent.id)
        .where(
            CanonicalEvent.kind == kind,
            CanonicalEvent.occurred_at >= start,
            CanonicalEvent.occurred_at < end,
            or_(*identity_filters),
        )
        .limit(1)
    )
    return session.execute(stmt).scalar()


def _to_row(draft: CanonicalEventDraft) -> CanonicalEvent:
    return CanonicalEvent(
        id=draft.id,
        kind=draft.kind,
        occurred_at=draft.occurred_at,
        user_id=draft.user_id,
        anonymous_id=draft.anonymous_id,
        user_email=draft.user_email,
        page_path=draft.page_path,
        source_channel=draft.source_channel,
        event_metadata=draft.metadata or None,
    )


def _record(kind: str, outcome: WriteOutcome) -> WriteOutcome:
    EVENTS_WRITTEN.labels(kind=kind, outcome=outcome.reason or outcome.status).inc()
    return outcome


def write_canonical_event(draft: CanonicalEventDraft, settings: Optional[Settings] = None) -> WriteOutcome:
    """Persist one canonical event exactly once.

    The same-day lookup only short-circuits the common duplicate case. It is not atomic with
    the insert, so the primary key constraint on the event id is what actually resolves
    concurrent duplicate writers; a violation is reported as ``skipped: duplicate``.
    Raises StorageUnavailableError for connection or other transient database failures.
    """
    if draft.source_channel not in SOURCE_CHANNELS:
        raise ValueError(f"unknown source channel {draft.source_channel!r}")
    settings = settings or get_settings()
    draft = keyed_draft(draft, settings)
    start_ts = time.perf_counter()
    session: Session = SessionLocal()
    try:
        try:
            if session.get(CanonicalEvent, draft.id) is not None:
                return _record(draft.kind, WriteOutcome("skipped", draft.id, REASON_DUPLICATE))
            if is_daily_dedup(draft.kind, settings):
                existing = find_same_day_event(session, draft.kind, draft.user_id, draft.anonymous_id, draft.occurred_at)
                if existing:
                    return _record(draft.kind, WriteOutcome("skipped", existing, REASON_DUPLICATE))
            session.add(_to_row(draft))
            session.commit()
        except IntegrityError:
            session.rollback()
            if session.get(CanonicalEvent, draft.id) is None:
                # Not a key collision (e.g. identity check constraint): a programming error.
                raise
            logger.debug(json.dumps({"event": "duplicate_write_collapsed", "event_id": draft.id, "kind": draft.kind}))
            return _record(draft.kind, WriteOutcome("skipped", draft.id, REASON_DUPLICATE))
        except (DBAPIError, SQLAlchemyError) as err:
            session.rollback()
            STORAGE_FAILURES.labels(operation="write_event").inc()
            logger.warning(json.dumps({"event": "storage_unavailable", "kind": draft.kind, "detail": str(err)[:200]}))
            raise StorageUnavailableError(str(err)) from err
        return _record(draft.kind, WriteOutcome("inserted", draft.id))
    finally:
        session.close()
        WRITE_LATENCY.observe(time.perf_counter() - start_ts)


def write_canonical_events_batch(drafts: Iterable[CanonicalEventDraft], settings: Optional[Settings] = None) -> dict:
    """Write many drafts; returns inserted/duplicate counts and per-draft outcomes.

    Ids already present are filtered with one lookup before the individual writes.
    """
    settings = settings or get_settings()
    keyed = [keyed_draft(d, settings) for d in drafts]
    if not keyed:
        return {"inserted": 0, "duplicates": 0, "outcomes": []}
    with SessionLocal() as s:
        try:
            existing = set(s.execute(select(CanonicalEvent.id).where(CanonicalEvent.id.in_([d.id for d in keyed]))).scalars())
        except (DBAPIError, SQLAlchemyError) as err:
            STORAGE_FAILURES.labels(operation="write_batch").inc()
            raise StorageUnavailableError(str(err)) from err
    outcomes: list[WriteOutcome] = []
    seen: set[str] = set()
    for d in keyed:
        if d.id in existing or d.id in seen:
            outcomes.append(_record(d.kind, WriteOutcome("skipped", d.id, REASON_DUPLICATE)))
            continue
        seen.add(d.id)
        outcomes.append(write_canonical_event(d, settings))
    inserted = sum(1 for o in outcomes if o.inserted)
    return {"inserted": inserted, "duplicates": len(outcomes) - inserted, "outcomes": outcomes}
