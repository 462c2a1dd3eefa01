from __future__ import annotations
import time
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional
from celery import shared_task
from sqlalchemy import select, delete, func
from sqlalchemy.orm import Session
from activity_ledger.config import get_settings, parse_dedup_kinds
from activity_ledger.infrastructure.db import SessionLocal
from activity_ledger.infrastructure.idempotency import utcnow
from activity_ledger.models.tables import CanonicalEvent
from activity_ledger.tasks.identity import identity_link_report
from activity_ledger.tasks.job_runs import resume_params, run_windowed_job

JOB_TYPE = "duplicate_repair"
DELETE_CHUNK = 500


def _duplicate_groups(rows: Iterable[tuple]) -> list[tuple[str, str, str, list[str]]]:
    """Group (id, user_id, anonymous_id, occurred_at) rows per identity dimension.

    Rows with a user id are keyed by it; anonymous-only rows are keyed by anonymous id. Returns
    (dimension, identity, kept id, ids to delete) for every group holding more than one row.
    The kept row has the earliest occurred_at, ties broken by the lowest id.
    """
    groups: dict[tuple[str, str], list[tuple[datetime, str]]] = defaultdict(list)
    for event_id, user_id, anonymous_id, occurred_at in rows:
        if user_id:
            groups[("user_id", user_id)].append((occurred_at, event_id))
        elif anonymous_id:
            groups[("anonymous_id", anonymous_id)].append((occurred_at, event_id))
    out = []
    for (dimension, identity), members in groups.items():
        if len(members) < 2:
            continue
        members.sort()
        out.append((dimension, identity, members[0][1], [eid for _, eid in members[1:]]))
    return out


def _delete_ids(session: Session, ids: list[str]) -> int:
    deleted = 0
    for i in range(0, len(ids), DELETE_CHUNK):
        res = session.execute(delete(CanonicalEvent).where(CanonicalEvent.id.in_(ids[i:i + DELETE_CHUNK])))
        deleted += res.rowcount or 0
    return deleted


def repair_day(day: date, kinds: Iterable[str], dry_run: bool) -> dict:
    start = datetime.combine(day, datetime.min.time())
    result = {"processed": 0, "mutated": 0, "skipped": 0, "groups": 0, "samples": []}
    session: Session = SessionLocal()
    try:
        for kind in sorted(kinds):
            rows = session.execute(
                select(CanonicalEvent.id, CanonicalEvent.user_id, CanonicalEvent.anonymous_id, CanonicalEvent.occurred_at)
                .where(
                    CanonicalEvent.kind == kind,
                    CanonicalEvent.occurred_at >= start,
                    CanonicalEvent.occurred_at < start + timedelta(days=1),
                )
            ).all()
            result["processed"] += len(rows)
            doomed: list[str] = []
            for dimension, identity, kept, extra in _duplicate_groups(rows):
                result["groups"] += 1
                doomed.extend(extra)
                result["samples"].append({
                    "day": day.isoformat(),
                    "kind": kind,
                    dimension: identity,
                    "kept": kept,
                    "deleted": extra,
                })
            result["skipped"] += len(rows) - len(doomed)
            if dry_run:
                result["mutated"] += len(doomed)
            elif doomed:
                result["mutated"] += _delete_ids(session, doomed)
        if not dry_run:
            session.commit()
        return result
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def run_duplicate_repair(
    kinds: Optional[Iterable[str]] = None,
    lookback_days: Optional[int] = None,
    dry_run: bool = True,
    end_day: Optional[date] = None,
    max_duration_seconds: Optional[float] = None,
    resume_job_id: Optional[int] = None,
    clock: Callable[[], float] = time.monotonic,
) -> dict:
    """Delete rows that duplicate an earlier row of the same (kind, identity, UTC day).

    Intended for data written before deterministic identifiers existed. Each day is committed
    on its own, so a re-run over a converged window deletes nothing.
    """
    settings = get_settings()
    kinds = sorted(set(kinds)) if kinds else None
    if resume_job_id is not None and not dry_run:
        kinds = resume_params(JOB_TYPE, resume_job_id, kinds=kinds)["kinds"]
    kinds = kinds or sorted(parse_dedup_kinds(settings.daily_dedup_kinds))
    lookback_days = lookback_days or settings.backfill_lookback_days
    totals = {"groups": 0}

    def process_day(day: date) -> dict:
        result = repair_day(day, kinds, dry_run)
        totals["groups"] += result["groups"]
        return result

    summary = run_windowed_job(
        JOB_TYPE,
        process_day,
        lookback_days=lookback_days,
        dry_run=dry_run,
        end_day=end_day,
        max_duration_seconds=max_duration_seconds,
        resume_job_id=resume_job_id,
        params={"kinds": kinds},
        clock=clock,
    )
    summary["groups"] = totals["groups"]
    summary["kept"] = totals["groups"]  # one survivor per duplicate group
    summary["would_delete" if dry_run else "deleted"] = summary["mutated"]
    return summary


def run_integrity_audit(lookback_days: int = 7) -> dict:
    """Read-only check of the invariants the live path and jobs are meant to hold."""
    settings = get_settings()
    kinds = parse_dedup_kinds(settings.daily_dedup_kinds)
    since = datetime.combine(utcnow().date() - timedelta(days=lookback_days), datetime.min.time())
    day = func.date(CanonicalEvent.occurred_at)
    duplicates: dict[str, int] = {}
    with SessionLocal() as s:
        missing_identity = s.execute(
            select(func.count(CanonicalEvent.id))
            .where(CanonicalEvent.user_id.is_(None), CanonicalEvent.anonymous_id.is_(None))
        ).scalar() or 0
        for column, extra in ((CanonicalEvent.user_id, None), (CanonicalEvent.anonymous_id, CanonicalEvent.user_id.is_(None))):
            filters = [CanonicalEvent.kind.in_(kinds), CanonicalEvent.occurred_at >= since, column.is_not(None)]
            if extra is not None:
                filters.append(extra)
            grouped = (
                select(CanonicalEvent.kind.label("kind"))
                .where(*filters)
                .group_by(CanonicalEvent.kind, column, day)
                .having(func.count(CanonicalEvent.id) > 1)
                .subquery()
            )
            for kind, count in s.execute(select(grouped.c.kind, func.count()).group_by(grouped.c.kind)).all():
                duplicates[kind] = duplicates.get(kind, 0) + int(count)
    return {
        "lookback_days": lookback_days,
        "events_missing_identity": int(missing_identity),
        "duplicate_days_by_kind": duplicates,
        "identity_links": identity_link_report(lookback_days=lookback_days),
        "status": "ok" if not missing_identity and not duplicates else "attention",
    }


@shared_task
def duplicate_repair_task(
    kinds: Optional[list[str]] = None,
    lookback_days: Optional[int] = None,
    dry_run: bool = True,
    end_day: Optional[str] = None,
    max_duration_seconds: Optional[float] = None,
    resume_job_id: Optional[int] = None,
):
    return run_duplicate_repair(
        kinds=kinds,
        lookback_days=lookback_days,
        dry_run=dry_run,
        end_day=date.fromisoformat(end_day) if end_day else None,
        max_duration_seconds=max_duration_seconds,
        resume_job_id=resume_job_id,
    )


@shared_task
def integrity_audit_task(lookback_days: int = 7):
    return run_integrity_audit(lookback_days=lookback_days)
