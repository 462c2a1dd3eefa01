from __future__ import annotations
import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Optional
from celery import shared_task
from sqlalchemy import select, func, distinct
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session
from activity_ledger.config import Settings, get_settings
from activity_ledger.infrastructure.db import SessionLocal, dialect_name
from activity_ledger.infrastructure.idempotency import to_utc_naive, utcnow
from activity_ledger.infrastructure.metrics import STITCH_OUTCOMES, STITCH_FAILURE_STREAK
from activity_ledger.models.tables import CanonicalEvent, IdentityLink
from activity_ledger.security.identity import IdentitySnapshot

logger = logging.getLogger(__name__)


def _upsert_statement(dialect: str, user_id: str, anonymous_id: str, seen_at: datetime):
    values = dict(user_id=user_id, anonymous_id=anonymous_id, first_seen_at=seen_at, last_seen_at=seen_at)
    keys = [IdentityLink.user_id, IdentityLink.anonymous_id]
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        ins = insert(IdentityLink).values(**values)
        return ins.on_conflict_do_update(index_elements=keys, set_={
            "first_seen_at": func.least(IdentityLink.first_seen_at, ins.excluded.first_seen_at),
            "last_seen_at": func.greatest(IdentityLink.last_seen_at, ins.excluded.last_seen_at),
        })
    if dialect == "sqlite":
        # SQLite's multi-argument min()/max() are scalar functions
        from sqlalchemy.dialects.sqlite import insert
        ins = insert(IdentityLink).values(**values)
        return ins.on_conflict_do_update(index_elements=keys, set_={
            "first_seen_at": func.min(IdentityLink.first_seen_at, ins.excluded.first_seen_at),
            "last_seen_at": func.max(IdentityLink.last_seen_at, ins.excluded.last_seen_at),
        })
    return None


def _widen_in_place(session: Session, user_id: str, anonymous_id: str, seen_at: datetime) -> None:
    link = session.get(IdentityLink, (user_id, anonymous_id), with_for_update=True)
    if link is None:
        session.add(IdentityLink(user_id=user_id, anonymous_id=anonymous_id, first_seen_at=seen_at, last_seen_at=seen_at))
        return
    link.first_seen_at = min(link.first_seen_at, seen_at)
    link.last_seen_at = max(link.last_seen_at, seen_at)


def stitch_identity(user_id: str, anonymous_id: str, seen_at: datetime) -> None:
    """Record that both identities were observed together at ``seen_at``.

    Upsert widening first_seen_at to the minimum and last_seen_at to the maximum. The result
    is independent of call order and repetition.
    """
    if not user_id or not anonymous_id:
        raise ValueError("stitch_identity requires both user_id and anonymous_id")
    seen_at = to_utc_naive(seen_at)
    session: Session = SessionLocal()
    try:
        stmt = _upsert_statement(dialect_name(), user_id, anonymous_id, seen_at)
        if stmt is not None:
            session.execute(stmt)
            session.commit()
            return
        try:
            _widen_in_place(session, user_id, anonymous_id, seen_at)
            session.commit()
        except IntegrityError:
            # Lost the race to create the row; it exists now, widen it.
            session.rollback()
            _widen_in_place(session, user_id, anonymous_id, seen_at)
            session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@shared_task(
    bind=True,
    autoretry_for=(DBAPIError,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_jitter=True,
    max_retries=get_settings().stitch_max_retries,
)
def stitch_identity_task(self, user_id: str, anonymous_id: str, seen_at: str):
    try:
        stitch_identity(user_id, anonymous_id, datetime.fromisoformat(seen_at))
    except DBAPIError as err:
        if self.request.retries >= self.max_retries:
            STITCH_OUTCOMES.labels(outcome="exhausted").inc()
            logger.error(json.dumps({"event": "identity_stitch_exhausted", "user_id": user_id, "anonymous_id": anonymous_id, "detail": str(err)[:200]}))
        raise
    STITCH_OUTCOMES.labels(outcome="stitched").inc()
    return {"status": "ok"}


class StitchDispatcher:
    """Hands identity stitching to background work and tracks its failures.

    One instance is owned by the application. It never raises into the ingestion request: the
    triggering event is already durable. Failure counters live on the instance so several
    dispatchers (or tests) never share state.
    """

    def __init__(self, settings: Optional[Settings] = None, inline: Optional[bool] = None):
        self.settings = settings or get_settings()
        self.inline = (self.settings.app_env == "test") if inline is None else inline
        self.failure_streak = 0
        self.total_failures = 0
        self.total_dispatched = 0
        self._lock = threading.Lock()

    def dispatch(self, identity: IdentitySnapshot, seen_at: Optional[datetime] = None) -> bool:
        if not identity.has_both:
            return False
        seen_at = to_utc_naive(seen_at or utcnow())
        try:
            if self.inline:
                stitch_identity(identity.user_id, identity.anonymous_id, seen_at)
            else:
                stitch_identity_task.delay(identity.user_id, identity.anonymous_id, seen_at.isoformat())
        except Exception as err:
            self._on_failure(identity, err)
            return False
        self._on_success()
        return True

    def _on_success(self):
        with self._lock:
            self.total_dispatched += 1
            self.failure_streak = 0
        STITCH_OUTCOMES.labels(outcome="dispatched").inc()
        STITCH_FAILURE_STREAK.set(0)

    def _on_failure(self, identity: IdentitySnapshot, err: Exception):
        with self._lock:
            self.total_failures += 1
            self.failure_streak += 1
            streak = self.failure_streak
        STITCH_OUTCOMES.labels(outcome="failed").inc()
        STITCH_FAILURE_STREAK.set(streak)
        payload = {
            "event": "identity_stitch_failed",
            "user_id": identity.user_id,
            "anonymous_id": identity.anonymous_id,
            "failure_streak": streak,
            "detail": str(err)[:200],
        }
        if streak >= self.settings.stitch_failure_alert_threshold:
            logger.error(json.dumps({**payload, "alert": True}))
        else:
            logger.warning(json.dumps(payload))

    def stats(self) -> dict:
        with self._lock:
            return {
                "dispatched": self.total_dispatched,
                "failures": self.total_failures,
                "failure_streak": self.failure_streak,
            }


def identity_link_report(lookback_days: int = 30, sample_size: int = 5) -> dict:
    """Link coverage of recently seen anonymous ids and anonymous ids linked to several users."""
    since = utcnow() - timedelta(days=lookback_days)
    with SessionLocal() as s:
        anon_ids = (
            select(CanonicalEvent.anonymous_id)
            .where(CanonicalEvent.anonymous_id.is_not(None), CanonicalEvent.occurred_at >= since)
            .distinct()
            .subquery()
        )
        total = s.execute(select(func.count()).select_from(anon_ids)).scalar() or 0
        linked = s.execute(
            select(func.count(distinct(IdentityLink.anonymous_id)))
            .where(IdentityLink.anonymous_id.in_(select(anon_ids.c.anonymous_id)))
        ).scalar() or 0
        multi = s.execute(
            select(IdentityLink.anonymous_id, func.count(distinct(IdentityLink.user_id)))
            .group_by(IdentityLink.anonymous_id)
            .having(func.count(distinct(IdentityLink.user_id)) > 1)
            .limit(sample_size)
        ).all()
    return {
        "anonymous_ids": int(total),
        "linked_anonymous_ids": int(linked),
        "link_coverage_pct": round(linked / total * 100, 1) if total else None,
        "multi_user_anonymous_ids": [{"anonymous_id": a, "user_count": int(c)} for a, c in multi],
    }
