from __future__ import annotations
import json
import logging
from datetime import datetime
from typing import Any, List, Optional, Union
from fastapi import APIRouter, BackgroundTasks, Body, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from activity_ledger.config import get_settings
from activity_ledger.infrastructure.idempotency import utcnow
from activity_ledger.infrastructure.metrics import EVENTS_RECEIVED, EVENTS_SKIPPED
from activity_ledger.security.identity import IdentitySnapshot, SessionLookup, get_session_lookup, resolve_identity
from activity_ledger.tasks.identity import StitchDispatcher
from activity_ledger.tasks.ingestion import StorageUnavailableError, write_canonical_event, write_canonical_events_batch
from activity_ledger.validation.events import CanonicalResult, canonicalize_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["events"])


# Optional fields are typed loosely on purpose: a malformed optional value is dropped by the
# canonicalizer instead of failing the whole ping.
class AppOpenedIn(BaseModel):
    path: Any = None
    url: Any = None


class PageViewedIn(BaseModel):
    path: Any = None
    metadata: Any = None
    event_id: Any = None


class TrackIn(BaseModel):
    kind: Any = None
    path: Any = None
    metadata: Any = None
    event_id: Any = None
    occurred_at: Optional[datetime] = None


def request_identity(request: Request, session_lookup: SessionLookup = Depends(get_session_lookup)) -> IdentitySnapshot:
    """Resolve both identities once; every later stage receives this snapshot."""
    return resolve_identity(request, session_lookup)


def get_stitch_dispatcher(request: Request) -> StitchDispatcher:
    dispatcher = getattr(request.app.state, "stitch_dispatcher", None)
    if dispatcher is None:
        dispatcher = StitchDispatcher()
        request.app.state.stitch_dispatcher = dispatcher
    return dispatcher


def _skip_response(result: CanonicalResult):
    EVENTS_SKIPPED.labels(reason=result.reason).inc()
    if result.status == "invalid":
        return JSONResponse(status_code=400, content={"success": False, "error": result.reason, **result.details})
    return {"success": True, "skipped": True, "reason": result.reason}


def _storage_unavailable():
    return JSONResponse(status_code=503, content={"success": False, "error": "storage_unavailable"})


def _ingest(endpoint: str, result: CanonicalResult, identity: IdentitySnapshot,
            background: BackgroundTasks, dispatcher: StitchDispatcher):
    EVENTS_RECEIVED.labels(endpoint=endpoint).inc()
    if not result.ok:
        return _skip_response(result)
    try:
        outcome = write_canonical_event(result.event)
    except StorageUnavailableError:
        return _storage_unavailable()
    if identity.has_both:
        # Runs after the response is sent; the event is already durable. Server receive time,
        # not the producer's occurred_at, bounds the link window.
        background.add_task(dispatcher.dispatch, identity, utcnow())
    if outcome.inserted:
        return {"success": True, "tracked": True, "event_id": outcome.event_id}
    EVENTS_SKIPPED.labels(reason=outcome.reason).inc()
    return {"success": True, "skipped": True, "reason": outcome.reason, "event_id": outcome.event_id}


@router.post("/app-opened")
def app_opened(
    background: BackgroundTasks,
    body: Optional[AppOpenedIn] = Body(None),
    identity: IdentitySnapshot = Depends(request_identity),
    dispatcher: StitchDispatcher = Depends(get_stitch_dispatcher),
):
    body = body or AppOpenedIn()
    result = canonicalize_event(
        "app_opened",
        identity,
        source_channel="server_middleware",
        page_path=body.path if body.path is not None else body.url,
    )
    return _ingest("app_opened", result, identity, background, dispatcher)


@router.post("/page-viewed")
def page_viewed(
    background: BackgroundTasks,
    body: Optional[PageViewedIn] = Body(None),
    identity: IdentitySnapshot = Depends(request_identity),
    dispatcher: StitchDispatcher = Depends(get_stitch_dispatcher),
):
    body = body or PageViewedIn()
    result = canonicalize_event(
        "page_viewed",
        identity,
        source_channel="server_pageview",
        page_path=body.path,
        metadata=body.metadata,
        event_id=body.event_id,
        require_path=True,
    )
    return _ingest("page_viewed", result, identity, background, dispatcher)


@router.post("/track")
def track(
    background: BackgroundTasks,
    body: Union[TrackIn, List[TrackIn]] = Body(...),
    identity: IdentitySnapshot = Depends(request_identity),
    dispatcher: StitchDispatcher = Depends(get_stitch_dispatcher),
):
    """Client beacon. Accepts one event or a bounded batch."""
    if isinstance(body, TrackIn):
        result = canonicalize_event(
            body.kind, identity, source_channel="client", page_path=body.path,
            metadata=body.metadata, occurred_at=body.occurred_at, event_id=body.event_id,
        )
        return _ingest("track", result, identity, background, dispatcher)
    settings = get_settings()
    if len(body) > settings.event_batch_max:
        return JSONResponse(status_code=400, content={"success": False, "error": "batch_too_large", "max": settings.event_batch_max})
    EVENTS_RECEIVED.labels(endpoint="track_batch").inc(len(body))
    drafts = []
    skipped, rejected = [], []
    for i, item in enumerate(body):
        result = canonicalize_event(
            item.kind, identity, source_channel="client", page_path=item.path,
            metadata=item.metadata, occurred_at=item.occurred_at, event_id=item.event_id,
        )
        if result.ok:
            drafts.append(result.event)
            continue
        EVENTS_SKIPPED.labels(reason=result.reason).inc()
        (rejected if result.status == "invalid" else skipped).append({"index": i, "reason": result.reason})
    try:
        written = write_canonical_events_batch(drafts)
    except StorageUnavailableError:
        return _storage_unavailable()
    if drafts and identity.has_both:
        background.add_task(dispatcher.dispatch, identity, utcnow())
    if rejected:
        logger.info(json.dumps({"event": "batch_items_rejected", "count": len(rejected)}))
    return {
        "success": True,
        "tracked": written["inserted"],
        "duplicates": written["duplicates"],
        "skipped": skipped,
        "rejected": rejected,
    }
