from __future__ import annotations
import hmac
from datetime import date
from typing import List, Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from activity_ledger.config import get_settings
from activity_ledger.tasks.backfill import gap_backfill_task, run_gap_backfill
from activity_ledger.tasks.job_runs import JobAbortedError, JobAlreadyRunningError, JobError, job_status
from activity_ledger.tasks.maintenance import duplicate_repair_task, run_duplicate_repair, run_integrity_audit


def require_admin_key(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")):
    expected = get_settings().admin_api_key
    if expected and not (x_admin_key and hmac.compare_digest(expected, x_admin_key)):
        raise HTTPException(status_code=401, detail="invalid admin key")


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


class JobRequest(BaseModel):
    dry_run: bool = True
    lookback_days: Optional[int] = Field(None, ge=1, le=366)
    end_day: Optional[date] = None
    max_duration_seconds: Optional[float] = Field(None, gt=0)
    resume_job_id: Optional[int] = None
    enqueue: bool = False  # hand off to a worker instead of running in this request


class GapBackfillRequest(JobRequest):
    source_kind: Optional[str] = None  # page_viewed unless resuming
    target_kind: Optional[str] = None  # app_opened unless resuming


class DuplicateRepairRequest(JobRequest):
    kinds: Optional[List[str]] = None


def _task_kwargs(req: JobRequest) -> dict:
    """Request fields as JSON-serializable task kwargs."""
    kwargs = req.model_dump(exclude={"enqueue"})
    kwargs["end_day"] = req.end_day.isoformat() if req.end_day else None
    return kwargs


def _run(job, **kwargs):
    try:
        return job(**kwargs)
    except JobAlreadyRunningError as err:
        raise HTTPException(status_code=409, detail=str(err))
    except JobAbortedError as err:
        return JSONResponse(status_code=500, content={"error": "job_aborted", "detail": str(err), "report": err.report})
    except (JobError, ValueError) as err:
        raise HTTPException(status_code=400, detail=str(err))


@router.post("/jobs/gap-backfill")
def gap_backfill(req: GapBackfillRequest):
    if req.enqueue:
        result = gap_backfill_task.delay(**_task_kwargs(req))
        return {"queued": True, "task_id": result.id}
    return _run(
        run_gap_backfill,
        lookback_days=req.lookback_days,
        dry_run=req.dry_run,
        source_kind=req.source_kind,
        target_kind=req.target_kind,
        end_day=req.end_day,
        max_duration_seconds=req.max_duration_seconds,
        resume_job_id=req.resume_job_id,
    )


@router.post("/jobs/duplicate-repair")
def duplicate_repair(req: DuplicateRepairRequest):
    if req.enqueue:
        result = duplicate_repair_task.delay(**_task_kwargs(req))
        return {"queued": True, "task_id": result.id}
    return _run(
        run_duplicate_repair,
        kinds=req.kinds,
        lookback_days=req.lookback_days,
        dry_run=req.dry_run,
        end_day=req.end_day,
        max_duration_seconds=req.max_duration_seconds,
        resume_job_id=req.resume_job_id,
    )


@router.get("/jobs/{job_id}")
def get_job(job_id: int):
    status = job_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="job not found")
    return status


@router.get("/audit")
def integrity_audit(lookback_days: int = Query(7, ge=1, le=366)):
    return run_integrity_audit(lookback_days=lookback_days)


@router.get("/stitch-stats")
def stitch_stats(request: Request):
    dispatcher = getattr(request.app.state, "stitch_dispatcher", None)
    return dispatcher.stats() if dispatcher else {"dispatched": 0, "failures": 0, "failure_streak": 0}
