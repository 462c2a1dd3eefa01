from celery import Celery
from celery import signals
import time
from prometheus_client import Counter, Histogram
from activity_ledger.config import get_settings
from activity_ledger.infrastructure.metrics import registry

settings = get_settings()

celery_app = Celery(
    "activity_ledger",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "activity_ledger.tasks.identity",
        "activity_ledger.tasks.backfill",
        "activity_ledger.tasks.maintenance",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_time_limit=settings.job_max_duration_seconds + 60,
)

TASK_SUCCESS = Counter('celery_task_success_total', 'Celery task successes', ['task'], registry=registry)
TASK_FAILURE = Counter('celery_task_failure_total', 'Celery task failures', ['task'], registry=registry)
TASK_DURATION = Histogram('celery_task_duration_seconds', 'Celery task runtime', ['task'], buckets=(0.05,0.1,0.25,0.5,1,2,5,10,30,60,300), registry=registry)

_task_start_times = {}

@signals.task_prerun.connect
def _task_prerun(sender=None, task_id=None, **kwargs):  # noqa
    _task_start_times[task_id] = time.time()

@signals.task_postrun.connect
def _task_postrun(sender=None, task_id=None, state=None, **kwargs):  # noqa
    start = _task_start_times.pop(task_id, None)
    name = sender.name if sender else 'unknown'
    if start is not None:
        TASK_DURATION.labels(task=name).observe(time.time() - start)
    if state == 'SUCCESS':
        TASK_SUCCESS.labels(task=name).inc()
    elif state is not None:
        TASK_FAILURE.labels(task=name).inc()

# Periodic tasks (beat). Requires worker with -B or separate beat service.
# Duplicate repair deletes rows, so it is only ever started by an operator.
celery_app.conf.beat_schedule = {
    "gap-backfill-daily": {
        "task": "activity_ledger.tasks.backfill.gap_backfill_task",
        "schedule": 86400.0,
        "kwargs": {"lookback_days": 2, "dry_run": False},
    },
    "integrity-audit-daily": {
        "task": "activity_ledger.tasks.maintenance.integrity_audit_task",
        "schedule": 86400.0,
        "kwargs": {"lookback_days": 7},
    },
}
