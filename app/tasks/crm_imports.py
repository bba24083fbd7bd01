import time

from app.celery_app import celery_app
from app.config import settings
from app.db import SessionLocal
from app.logging import get_logger
from app.services.crm.imports.metrics import IMPORT_BATCH_DURATION
from app.services.crm.imports.queue import (
    IMPORT_QUEUE,
    claim_job,
    complete_job,
    dead_letter_job,
    dispatch_job,
    mark_job_retrying,
    prune_jobs,
    retry_countdown,
    stale_job_ids,
)
from app.services.crm.imports.service import get_import_pipeline
from app.telemetry import get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)


@celery_app.task(
    name="app.tasks.crm_imports.process_import_batch",
    bind=True,
    queue=IMPORT_QUEUE,
    acks_late=True,
    max_retries=settings.import_job_attempts - 1,
    default_retry_delay=settings.import_job_backoff_seconds,
)
def process_import_batch_task(self, job_id: str):
    """Replay one import batch recorded in the job ledger.

    Attempts and backoff come from the ledger row, so a batch enqueued with
    its own job options retries on its own schedule. Once they are spent the
    batch is dead-lettered and, if it was the final one, the connection is
    moved out of Running.
    """
    pipeline = get_import_pipeline()
    session_factory = pipeline.session_factory
    claimed = claim_job(job_id, session_factory=session_factory)
    if claimed is None:
        return None

    started = time.monotonic()
    try:
        with tracer.start_as_current_span("crm_import.batch_job") as span:
            span.set_attribute("crm.job_id", str(claimed.job_id))
            span.set_attribute("crm.connection_id", str(claimed.payload.connection_id))
            span.set_attribute("crm.batch_index", claimed.payload.batch_index)
            span.set_attribute("crm.attempt", claimed.attempts_made)
            result = pipeline.process_batch(claimed.payload)
    except Exception as exc:
        if claimed.can_retry:
            countdown = retry_countdown(claimed)
            mark_job_retrying(claimed, exc, countdown, session_factory=session_factory)
            raise self.retry(exc=exc, countdown=countdown, max_retries=claimed.max_attempts - 1)
        dead_letter_job(claimed, exc, session_factory=session_factory)
        pipeline.on_batch_dead_lettered(claimed.payload, exc)
        raise
    finally:
        IMPORT_BATCH_DURATION.observe(time.monotonic() - started)

    complete_job(claimed, result, session_factory=session_factory)
    return result


@celery_app.task(name="app.tasks.crm_imports.dispatch_stale_import_jobs")
def dispatch_stale_import_jobs_task(stale_seconds: int | None = None):
    session = SessionLocal()
    try:
        due = stale_job_ids(session, stale_seconds=stale_seconds)
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
    for job_id, priority in due:
        dispatch_job(job_id, priority=priority)
    if due:
        logger.info("crm_import_stale_jobs_dispatched count=%d", len(due))
    return len(due)


@celery_app.task(name="app.tasks.crm_imports.cleanup_import_jobs")
def cleanup_import_jobs_task(
    retention_seconds: int | None = None,
    keep_completed: int | None = None,
    keep_failed: int | None = None,
):
    session = SessionLocal()
    try:
        deleted = prune_jobs(
            session,
            retention_seconds=retention_seconds,
            keep_completed=keep_completed,
            keep_failed=keep_failed,
        )
        logger.info("crm_import_cleanup_complete deleted=%d", deleted)
        return deleted
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="app.tasks.crm_imports.close_imported_tickets")
def close_imported_tickets_task(connection_id: str):
    result = get_import_pipeline().close_imported_tickets(connection_id)
    return result.model_dump()
