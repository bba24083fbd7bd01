"""Prometheus metrics for the history import pipeline."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

IMPORT_MESSAGES = Counter(
    "crm_import_messages_total",
    "Messages replayed by history imports",
    ["status"],  # imported, failed
)

IMPORT_JOBS = Counter(
    "crm_import_jobs_total",
    "Import batch job outcomes",
    ["outcome"],  # completed, retried, dead_lettered
)

IMPORT_BATCH_DURATION = Histogram(
    "crm_import_batch_duration_seconds",
    "Time to replay one import batch",
    buckets=[0.5, 1, 2.5, 5, 10, 30, 60, 120, 300],
)

IMPORT_TICKETS_CLOSED = Counter(
    "crm_import_tickets_closed_total",
    "Imported tickets closed by the post-import sweep",
    ["status"],  # closed, failed
)
