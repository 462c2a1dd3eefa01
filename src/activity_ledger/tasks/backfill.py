from __future__ import annotations
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Optional
from celery import shared_task
from sqlalchemy import select
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from activity_ledger.config import get_settings
from activity_ledger.infrastructure.db import SessionLocal
from activity_ledger.infrastructure.idempotency import deterministic_event_id
from activity_ledger.models.tables import CanonicalEvent
from activity_ledger.tasks.ingestion import StorageUnavailableError, write_canonical_event
from activity_ledger.tasks.job_runs import resume_params, run_windowed_job
from activity_ledger.validation.events import CanonicalEventDraft

JOB_TYPE = "gap_backfill"
DEFAULT_SOURCE_KIND = "page_viewed"
DEFAULT_TARGET_KIND = "app_opened"


@dataclass
class _IdentityDay:
    user_id: Optional[str]
    anonymous_id: Optional[str]
    first_seen: datetime
    anonymous_ids: set[str] = field(default_factory=set)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=10),
    retry=retry_if_exception_type(StorageUnavailableError),
    reraise=True,
)
def _write(draft: CanonicalEventDraft):
    return write_canonical_event(draft)


def _day_rows(kind: str, day: date) -> list[tuple]:
    start = datetime.combine(day, datetime.min.time())
    with SessionLocal() as s:
        return s.execute(
            select(CanonicalEvent.user_id, CanonicalEvent.anonymous_id, CanonicalEvent.occurred_at)
            .where(
                CanonicalEvent.kind == kind,
                CanonicalEvent.occurred_at >= start,
                CanonicalEvent.occurred_at < start + timedelta(days=1),
            )
            .order_by(CanonicalEvent.occurred_at)
        ).all()


def find_gaps(day: date, source_kind: str, target_kind: str) -> list[_IdentityDay]:
    """Identities with a ``source_kind`` event on ``day`` but no ``target_kind`` event.

    Authenticated rows are grouped by user id, anonymous-only rows by anonymous id. An
    identity counts as covered when a target row matches it on either dimension, the same
    rule the live writer's same-day check applies. Anonymous ids already seen on an
    authenticated group belong to that group's occurrence, including their earlier timestamps.
    """
    users: dict[str, _IdentityDay] = {}
    anons: dict[str, _IdentityDay] = {}
    for user_id, anonymous_id, occurred_at in _day_rows(source_kind, day):
        if user_id:
            group = users.setdefault(user_id, _IdentityDay(user_id, None, occurred_at))
            if anonymous_id:
                group.anonymous_ids.add(anonymous_id)
        elif anonymous_id:
            anons.setdefault(anonymous_id, _IdentityDay(None, anonymous_id, occurred_at))
    target_users: set[str] = set()
    target_anons: set[str] = set()
    for user_id, anonymous_id, _ in _day_rows(target_kind, day):
        if user_id:
            target_users.add(user_id)
        if anonymous_id:
            target_anons.add(anonymous_id)
    gaps: list[_IdentityDay] = []
    claimed_anons: set[str] = set()
    for group in users.values():
        claimed_anons |= group.anonymous_ids
        for anonymous_id in group.anonymous_ids:
            if anonymous_id in anons:
                group.first_seen = min(group.first_seen, anons[anonymous_id].first_seen)
        if group.user_id in target_users or group.anonymous_ids & target_anons:
            continue
        if len(group.anonymous_ids) == 1:
            group.anonymous_id = next(iter(group.anonymous_ids))
        gaps.append(group)
    for group in anons.values():
        if group.anonymous_id in target_anons or group.anonymous_id in claimed_anons:
            continue
        gaps.append(group)
    return gaps


def _draft(gap: _IdentityDay, source_kind: str, target_kind: str, day: date) -> CanonicalEventDraft:
    return CanonicalEventDraft(
        kind=target_kind,
        occurred_at=gap.first_seen,
        source_channel="backfill",
        user_id=gap.user_id,
        anonymous_id=gap.anonymous_id,
        metadata={"backfilled_from": source_kind, "canonical_event_type": target_kind},
        id=deterministic_event_id(target_kind, gap.user_id, gap.anonymous_id, day),
    )


def run_gap_backfill(
    lookback_days: Optional[int] = None,
    dry_run: bool = True,
    source_kind: Optional[str] = None,
    target_kind: Optional[str] = None,
    end_day: Optional[date] = None,
    max_duration_seconds: Optional[float] = None,
    resume_job_id: Optional[int] = None,
    clock: Callable[[], float] = time.monotonic,
) -> dict:
    """Synthesize missing ``target_kind`` events from same-day ``source_kind`` evidence.

    The synthesized event takes the earliest source timestamp of the day and the same
    deterministic id the live path would compute, so a live write racing the backfill
    collapses on the primary key. Dry runs only report what would be inserted.
    """
    if resume_job_id is not None and not dry_run:
        resumed = resume_params(JOB_TYPE, resume_job_id, source_kind=source_kind, target_kind=target_kind)
        source_kind, target_kind = resumed["source_kind"], resumed["target_kind"]
    source_kind = source_kind or DEFAULT_SOURCE_KIND
    target_kind = target_kind or DEFAULT_TARGET_KIND
    lookback_days = lookback_days or get_settings().backfill_lookback_days

    def process_day(day: date) -> dict:
        gaps = find_gaps(day, source_kind, target_kind)
        result = {"processed": len(gaps), "mutated": 0, "skipped": 0, "samples": []}
        for gap in gaps:
            draft = _draft(gap, source_kind, target_kind, day)
            sample = {
                "day": day.isoformat(),
                "user_id": gap.user_id,
                "anonymous_id": gap.anonymous_id,
                "occurred_at": gap.first_seen.isoformat(),
                "event_id": draft.id,
            }
            if dry_run:
                result["mutated"] += 1
                result["samples"].append(sample)
                continue
            outcome = _write(draft)
            if outcome.inserted:
                result["mutated"] += 1
                result["samples"].append(sample)
            else:
                result["skipped"] += 1
        return result

    summary = run_windowed_job(
        JOB_TYPE,
        process_day,
        lookback_days=lookback_days,
        dry_run=dry_run,
        end_day=end_day,
        max_duration_seconds=max_duration_seconds,
        resume_job_id=resume_job_id,
        params={"source_kind": source_kind, "target_kind": target_kind},
        clock=clock,
    )
    summary["would_insert" if dry_run else "inserted"] = summary["mutated"]
    return summary


@shared_task
def gap_backfill_task(
    lookback_days: Optional[int] = None,
    dry_run: bool = True,
    source_kind: Optional[str] = None,
    target_kind: Optional[str] = None,
    end_day: Optional[str] = None,
    max_duration_seconds: Optional[float] = None,
    resume_job_id: Optional[int] = None,
):
    return run_gap_backfill(
        lookback_days=lookback_days,
        dry_run=dry_run,
        source_kind=source_kind,
        target_kind=target_kind,
        end_day=date.fromisoformat(end_day) if end_day else None,
        max_duration_seconds=max_duration_seconds,
        resume_job_id=resume_job_id,
    )
