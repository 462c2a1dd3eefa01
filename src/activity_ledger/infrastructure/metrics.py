from __future__ import annotations
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

# Dedicated registry scraped via /metrics in the api
registry = CollectorRegistry()

EVENTS_RECEIVED = Counter('ledger_events_received_total', 'Ingestion requests received', ['endpoint'], registry=registry)
EVENTS_SKIPPED = Counter('ledger_events_skipped_total', 'Ingestion requests resolved as no-op', ['reason'], registry=registry)
EVENTS_WRITTEN = Counter('ledger_events_written_total', 'Canonical event write outcomes', ['kind', 'outcome'], registry=registry)
STORAGE_FAILURES = Counter('ledger_storage_failures_total', 'Transient storage failures surfaced to callers', ['operation'], registry=registry)
WRITE_LATENCY = Histogram('ledger_write_latency_seconds', 'Latency of a single canonical event write', buckets=(0.005,0.01,0.025,0.05,0.1,0.25,0.5,1,2), registry=registry)
STITCH_OUTCOMES = Counter('ledger_identity_stitch_total', 'Identity stitch dispatch outcomes', ['outcome'], registry=registry)
STITCH_FAILURE_STREAK = Gauge('ledger_identity_stitch_failure_streak', 'Consecutive identity stitch failures', registry=registry)
JOB_RUNS = Counter('ledger_job_runs_total', 'Batch job runs by final status', ['job_type', 'status'], registry=registry)
JOB_MUTATIONS = Counter('ledger_job_mutations_total', 'Rows inserted or deleted by batch jobs', ['job_type'], registry=registry)
