"""Shared lifecycle for the offline backfill / repair jobs.

Jobs walk their window one UTC day at a time, oldest first. Live runs record a ``JobRun``
row and checkpoint after every committed day so a time-boxed or failed run can be resumed
with ``resume_job_id``. Dry runs never write anything, including the job row.
"""
from __future__ import annotations
import json
import logging
import time
from datetime import date, datetime, timedelta
from typing import Callable, Optional
from sqlalchemy import or_, update
from sqlalchemy.orm import Session
from activity_ledger.config import get_settings
from activity_ledger.infrastructure.db import SessionLocal
from activity_ledger.infrastructure.idempotency import utcnow
from activity_ledger.infrastructure.metrics import JOB_RUNS, JOB_MUTATIONS
from activity_ledger.models.tables import JobRun

logger = logging.getLogger(__name__)

SAMPLE_LIMIT = 20
COUNT_KEYS = ("processed", "mutated", "skipped")


class JobError(Exception):
    pass


class JobAlreadyRunningError(JobError):
    pass


class JobAbortedError(JobError):
    """Raised when a job fails mid-window; ``report`` says what was committed and what remains."""

    def __init__(self, message: str, report: dict):
        super().__init__(message)
        self.report = report


def resolve_window(lookback_days: int, end_day: Optional[date] = None) -> tuple[date, date]:
    """Inclusive [start, end] window ending yesterday (UTC) unless ``end_day`` is given."""
    if lookback_days < 1:
        raise ValueError("lookback_days must be >= 1")
    end = end_day or (utcnow().date() - timedelta(days=1))
    return end - timedelta(days=lookback_days - 1), end


def days_between(start: date, end: date) -> list[date]:
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def _stale_before() -> datetime:
    return utcnow() - timedelta(seconds=2 * get_settings().job_max_duration_seconds)


def _overlapping(s: Session, job_type: str, start: date, end: date, exclude_id: Optional[int] = None) -> Optional[JobRun]:
    q = s.query(JobRun).filter(
        JobRun.job_type == job_type,
        JobRun.status == "running",
        JobRun.dry_run == 0,
        JobRun.started_at >= _stale_before(),
        JobRun.window_start <= end,
        JobRun.window_end >= start,
    )
    if exclude_id is not None:
        q = q.filter(JobRun.id != exclude_id)
    return q.order_by(JobRun.id).first()


def _claim(job_type: str, start: date, end: date, params: dict,
           resume_job_id: Optional[int]) -> tuple[int, date, date, list[date]]:
    """Mark a job row running and return (id, window start, window end, days left)."""
    with SessionLocal() as s:
        if resume_job_id is not None:
            job = s.get(JobRun, resume_job_id)
            if job is None or job.job_type != job_type:
                raise JobError(f"no {job_type} job with id {resume_job_id}")
            if job.status == "completed":
                raise JobError(f"job {resume_job_id} already completed")
            other = _overlapping(s, job_type, job.window_start, job.window_end, exclude_id=job.id)
            if other:
                raise JobAlreadyRunningError(f"{job_type} job {other.id} is already running over an overlapping window")
            # Conditional update: a live, non-stale run of this same job keeps its claim.
            claimed = s.execute(
                update(JobRun)
                .where(JobRun.id == job.id, or_(JobRun.status != "running", JobRun.started_at < _stale_before()))
                .values(status="running", started_at=utcnow())
                .execution_options(synchronize_session=False)
            ).rowcount
            if not claimed:
                s.rollback()
                raise JobAlreadyRunningError(f"{job_type} job {job.id} is still running")
            s.commit()
            first = (job.checkpoint_day + timedelta(days=1)) if job.checkpoint_day else job.window_start
            return job.id, job.window_start, job.window_end, days_between(first, job.window_end)
        running = _overlapping(s, job_type, start, end)
        if running:
            raise JobAlreadyRunningError(f"{job_type} job {running.id} is already running over an overlapping window")
        job = JobRun(job_type=job_type, status="running", dry_run=0, window_start=start, window_end=end, params=params)
        s.add(job)
        s.commit()
        # Two claims can pass the check above together; whoever sees the other afterwards backs off.
        rival = _overlapping(s, job_type, start, end, exclude_id=job.id)
        if rival:
            job.status = "failed"
            job.error = f"lost claim to job {rival.id}"
            job.completed_at = utcnow()
            s.commit()
            raise JobAlreadyRunningError(f"{job_type} job {rival.id} is already running over an overlapping window")
        return job.id, start, end, days_between(start, end)


def resume_params(job_type: str, job_id: int, **requested) -> dict:
    """Parameters a resumed job must run with.

    Stored values win; an explicitly requested value that differs from the stored one is an
    error, since the checkpoint only holds for the job as it was first started.
    """
    with SessionLocal() as s:
        job = s.get(JobRun, job_id)
        if job is None or job.job_type != job_type:
            raise JobError(f"no {job_type} job with id {job_id}")
        stored = dict(job.params or {})
    resolved = {}
    for name, value in requested.items():
        if value is not None and name in stored and stored[name] != value:
            raise JobError(f"job {job_id} was started with {name}={stored[name]!r}, not {value!r}")
        resolved[name] = stored.get(name, value)
    return resolved


def _update(job_id: int, **fields) -> None:
    with SessionLocal() as s:
        job = s.get(JobRun, job_id)
        for k, v in fields.items():
            setattr(job, k, v)
        s.commit()


def run_windowed_job(
    job_type: str,
    process_day: Callable[[date], dict],
    lookback_days: int,
    dry_run: bool,
    end_day: Optional[date] = None,
    max_duration_seconds: Optional[float] = None,
    resume_job_id: Optional[int] = None,
    params: Optional[dict] = None,
    clock: Callable[[], float] = time.monotonic,
) -> dict:
    """Drive ``process_day`` over the window and build the audit summary.

    ``process_day(day)`` returns counts for ``processed``/``mutated``/``skipped`` plus an
    optional ``samples`` list; it must commit its own mutations before returning.
    """
    settings = get_settings()
    max_duration = settings.job_max_duration_seconds if max_duration_seconds is None else max_duration_seconds
    start, end = resolve_window(lookback_days, end_day)
    params = {**(params or {}), "lookback_days": lookback_days, "dry_run": dry_run}
    if dry_run:
        if resume_job_id is not None:
            raise JobError("dry runs cannot resume a job")
        job_id, days = None, days_between(start, end)
    else:
        job_id, start, end, days = _claim(job_type, start, end, params, resume_job_id)
    totals = {k: 0 for k in COUNT_KEYS}
    samples: list = []
    committed: list[date] = []
    deadline = clock() + max_duration
    status = "completed"

    def report(final_status: str, remaining: list[date]) -> dict:
        return {
            "job_id": job_id,
            "job_type": job_type,
            "status": final_status,
            "dry_run": dry_run,
            "window": {"start": start.isoformat(), "end": end.isoformat()},
            "days_processed": len(committed),
            "checkpoint_day": committed[-1].isoformat() if committed else None,
            "remaining_days": [d.isoformat() for d in remaining],
            **totals,
            "samples": samples[:SAMPLE_LIMIT],
        }

    remaining = list(days)
    for day in days:
        if clock() >= deadline:
            status = "truncated"
            break
        try:
            result = process_day(day)
        except Exception as err:
            summary = report("failed", remaining)
            logger.error(json.dumps({"event": "job_failed", "job_type": job_type, "job_id": job_id, "day": day.isoformat(), "detail": str(err)[:200]}))
            if job_id is not None:
                _update(job_id, status="failed", result=summary, error=str(err)[:512], completed_at=utcnow())
            JOB_RUNS.labels(job_type=job_type, status="failed").inc()
            raise JobAbortedError(f"{job_type} failed on {day.isoformat()}", summary) from err
        for k in COUNT_KEYS:
            totals[k] += int(result.get(k, 0))
        if len(samples) < SAMPLE_LIMIT:
            samples.extend(result.get("samples", [])[:SAMPLE_LIMIT - len(samples)])
        committed.append(day)
        remaining.pop(0)
        if job_id is not None:
            _update(job_id, checkpoint_day=day, result=report("running", remaining))
    summary = report(status, remaining)
    if job_id is not None:
        _update(job_id, status=status, result=summary, completed_at=utcnow())
        if totals["mutated"]:
            JOB_MUTATIONS.labels(job_type=job_type).inc(totals["mutated"])
    JOB_RUNS.labels(job_type=job_type, status=status).inc()
    logger.info(json.dumps({"event": "job_finished", **{k: v for k, v in summary.items() if k != "samples"}}))
    return summary


def job_status(job_id: int) -> Optional[dict]:
    with SessionLocal() as s:
        job = s.get(JobRun, job_id)
        if job is None:
            return None
        return {
            "job_id": job.id,
            "job_type": job.job_type,
            "status": job.status,
            "dry_run": bool(job.dry_run),
            "window": {"start": job.window_start.isoformat(), "end": job.window_end.isoformat()},
            "checkpoint_day": job.checkpoint_day.isoformat() if job.checkpoint_day else None,
            "result": job.result,
            "error": job.error,
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        }
