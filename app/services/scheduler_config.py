import logging
import os
from datetime import timedelta

from app.config import settings

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_value(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = _env_value(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using %s", name, raw, default)
        return default


def get_celery_config() -> dict:
    return {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "timezone": settings.celery_timezone,
        "beat_max_loop_interval": _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL", 5),
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
        "worker_concurrency": settings.import_worker_concurrency,
        # Import batches get their own queue so a bulk import never sits in
        # front of live traffic; run a worker for it with
        # ``celery -A app.celery_app worker -Q crm_imports``.
        "task_routes": {
            "app.tasks.crm_imports.process_import_batch": {"queue": settings.import_queue_name},
        },
        "task_default_priority": 0,
        "broker_transport_options": {
            "priority_steps": list(range(10)),
            "sep": ":",
            "queue_order_strategy": "priority",
        },
    }


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    if _env_bool("IMPORT_CLEANUP_ENABLED", True):
        interval_seconds = max(settings.import_cleanup_interval_seconds, 60)
        schedule["crm_import_job_cleanup"] = {
            "task": "app.tasks.crm_imports.cleanup_import_jobs",
            "schedule": timedelta(seconds=interval_seconds),
        }
    if _env_bool("IMPORT_STALE_DISPATCH_ENABLED", True):
        interval_seconds = max(settings.import_dispatch_interval_seconds, 60)
        schedule["crm_import_stale_dispatch"] = {
            "task": "app.tasks.crm_imports.dispatch_stale_import_jobs",
            "schedule": timedelta(seconds=interval_seconds),
        }
    return schedule
