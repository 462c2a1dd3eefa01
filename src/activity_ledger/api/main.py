from fastapi import FastAPI, Request, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from prometheus_client import Counter, Histogram
from activity_ledger.config import get_settings
from activity_ledger.infrastructure.db import healthcheck
from activity_ledger.infrastructure.metrics import registry
from activity_ledger.infrastructure import celery_app as _celery  # noqa: F401  binds shared tasks to the broker app
from activity_ledger.api.events import router as events_router
from activity_ledger.api.admin import router as admin_router
from activity_ledger.tasks.identity import StitchDispatcher
import time
import logging
import json
import uuid
import redis

REQUESTS = Counter('api_requests_total', 'API Requests', ['endpoint'], registry=registry)
LATENCY = Histogram('api_request_latency_seconds', 'API request latency', ['endpoint'], registry=registry, buckets=(0.01,0.05,0.1,0.25,0.5,1,2,5))

app = FastAPI(title="Activity Ledger API", version="0.1.0")
app.include_router(events_router)
app.include_router(admin_router)
app.state.stitch_dispatcher = StitchDispatcher()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    cid = getattr(request.state, "correlation_id", "n/a")
    logging.getLogger("app").error(json.dumps({
        "event": "error",
        "path": request.url.path,
        "detail": str(exc),
        "correlation_id": cid,
        "type": exc.__class__.__name__,
    }))
    return Response(content=json.dumps({"error": "internal_error", "correlation_id": cid}), media_type="application/json", status_code=500)


@app.middleware("http")
async def metrics_and_correlation(request: Request, call_next):
    start = time.time()
    correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
    request.state.correlation_id = correlation_id
    response = await call_next(request)
    duration = time.time() - start
    # Route template keeps label cardinality bounded (/admin/jobs/{job_id})
    route = request.scope.get("route")
    ep = getattr(route, "path", request.url.path)
    REQUESTS.labels(endpoint=ep).inc()
    LATENCY.labels(endpoint=ep).observe(duration)
    response.headers['X-Process-Time'] = f"{duration:.4f}"
    response.headers['X-Correlation-ID'] = correlation_id
    logging.getLogger("app").info(json.dumps({
        "event": "request",
        "path": request.url.path,
        "method": request.method,
        "status": response.status_code,
        "duration_ms": int(duration*1000),
        "correlation_id": correlation_id,
    }))
    response.headers.setdefault('X-Content-Type-Options', 'nosniff')
    response.headers.setdefault('Cache-Control', 'no-store')
    return response


@app.on_event("startup")
def startup():
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    # Configure structured logger once
    logger = logging.getLogger("app")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(message)s'))  # already JSON
        logger.setLevel(settings.log_level.upper())
        logger.addHandler(handler)
        logger.propagate = False


@app.get("/health")
def health():
    return {"db": healthcheck(), "status": "ok"}


@app.get("/ready")
def readiness():
    """Readiness check that ensures DB and Redis are reachable."""
    settings = get_settings()
    db_ok = healthcheck()
    redis_ok = True
    try:
        r = redis.Redis.from_url(settings.redis_url)
        r.ping()
    except redis.RedisError:
        redis_ok = False
    status = db_ok and redis_ok
    return {"status": "ok" if status else "degraded", "db": db_ok, "redis": redis_ok}


@app.get("/metrics")
def metrics():
    data = generate_latest(registry)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
