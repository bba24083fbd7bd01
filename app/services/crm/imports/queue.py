"""Batch job ledger and Celery dispatch for history imports.

Every batch runs as one ``process_import_batch`` Celery task on the
``crm_imports`` queue. The ``crm_import_jobs`` row written before dispatch is
the ledger for that task: each attempt claims it, and the outcome (completed,
retrying, dead-lettered) is recorded on it. Retries are Celery retries whose
count and exponential backoff come from the row's job options.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from celery.utils.time import get_exponential_backoff_interval
from pydantic import ValidationError
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.config import settings
from app.db import session_scope
from app.logging import get_logger
from app.models.crm.enums import ImportJobStatus
from app.models.crm.import_job import ImportJob
from app.schemas.crm.imports import ImportBatchPayload, JobHandle, JobOptions
from app.services.crm.errors import CrmValidationError, ImportQueueError
from app.services.crm.imports.dead_letter import write_import_dead_letter
from app.services.crm.imports.metrics import IMPORT_JOBS

logger = get_logger(__name__)

IMPORT_QUEUE = settings.import_queue_name

_CLAIMABLE_STATUSES = (ImportJobStatus.enqueued, ImportJobStatus.retrying)


def _now() -> datetime:
    return datetime.now(UTC)


def prune_jobs(
    db: Session,
    retention_seconds: int | None = None,
    keep_completed: int | None = None,
    keep_failed: int | None = None,
) -> int:
    """Delete finished job records past the retention age or count.

    Dead letters are kept; only the job rows are pruned.
    """
    retention_seconds = settings.import_job_retention_seconds if retention_seconds is None else retention_seconds
    keep_completed = settings.import_keep_completed_jobs if keep_completed is None else keep_completed
    keep_failed = settings.import_keep_failed_jobs if keep_failed is None else keep_failed

    cutoff = _now() - timedelta(seconds=retention_seconds)
    deleted = (
        db.query(ImportJob)
        .filter(ImportJob.status.in_([ImportJobStatus.completed, ImportJobStatus.dead_lettered]))
        .filter(ImportJob.finished_at < cutoff)
        .delete(synchronize_session=False)
    )
    for status, keep in ((ImportJobStatus.completed, keep_completed), (ImportJobStatus.dead_lettered, keep_failed)):
        overflow = [
            row.id
            for row in db.query(ImportJob.id)
            .filter(ImportJob.status == status)
            .order_by(ImportJob.finished_at.desc(), ImportJob.created_at.desc())
            .offset(keep)
            .all()
        ]
        if overflow:
            deleted += (
                db.query(ImportJob).filter(ImportJob.id.in_(overflow)).delete(synchronize_session=False)
            )
    db.commit()
    if deleted:
        logger.info("import_jobs_pruned deleted=%d", deleted)
    return deleted


@dataclass(frozen=True)
class ClaimedJob:
    job_id: uuid.UUID
    payload: ImportBatchPayload
    raw_payload: dict
    attempts_made: int
    max_attempts: int
    backoff_seconds: float
    priority: int
    remove_on_complete: bool

    @property
    def can_retry(self) -> bool:
        return self.attempts_made < self.max_attempts


def claim_job(job_id, session_factory=None) -> ClaimedJob | None:
    """Mark a ledger row running for one attempt.

    Returns None when the row is gone or already claimed, so a duplicate
    delivery of the same task is a no-op. A row whose payload no longer
    validates is dead-lettered on the spot.
    """
    job_id = uuid.UUID(str(job_id))
    with session_scope(session_factory) as db:
        job = db.query(ImportJob).filter(ImportJob.id == job_id).with_for_update().first()
        if not job or job.status not in _CLAIMABLE_STATUSES:
            logger.info("import_job_claim_skipped job_id=%s status=%s", job_id, job.status.value if job else None)
            return None
        job.status = ImportJobStatus.running
        job.attempts_made = (job.attempts_made or 0) + 1
        raw_payload = dict(job.payload or {})
        try:
            payload = ImportBatchPayload.model_validate(raw_payload)
        except ValidationError as exc:
            job.status = ImportJobStatus.dead_lettered
            job.last_error = str(exc)[:4000]
            job.finished_at = _now()
            dead_letter = {
                "job_id": job_id,
                "connection_id": job.connection_id,
                "company_id": job.company_id,
                "batch_index": job.batch_index,
                "total_batches": job.total_batches,
                "attempts_made": job.attempts_made,
                "raw_payload": raw_payload,
            }
            db.commit()
            invalid = exc
        else:
            claimed = ClaimedJob(
                job_id=job_id,
                payload=payload,
                raw_payload=raw_payload,
                attempts_made=job.attempts_made,
                max_attempts=job.max_attempts or 1,
                backoff_seconds=job.backoff_seconds or 0.0,
                priority=job.priority or 0,
                remove_on_complete=bool(job.remove_on_complete),
            )
            db.commit()
            return claimed
    logger.error("import_job_invalid_payload job_id=%s error=%s", job_id, invalid)
    IMPORT_JOBS.labels(outcome="dead_lettered").inc()
    write_import_dead_letter(error=invalid, session_factory=session_factory, **dead_letter)
    return None


def retry_countdown(claimed: ClaimedJob, max_backoff_seconds: float | None = None) -> int:
    maximum = settings.import_job_max_backoff_seconds if max_backoff_seconds is None else max_backoff_seconds
    return get_exponential_backoff_interval(
        factor=int(claimed.backoff_seconds),
        retries=claimed.attempts_made - 1,
        maximum=int(maximum),
        full_jitter=True,
    )


def complete_job(claimed: ClaimedJob, result: dict | None, session_factory=None) -> None:
    with session_scope(session_factory) as db:
        job = db.get(ImportJob, claimed.job_id)
        if job:
            if claimed.remove_on_complete:
                db.delete(job)
            else:
                job.status = ImportJobStatus.completed
                job.result = result
                job.last_error = None
                job.finished_at = _now()
            db.commit()
    IMPORT_JOBS.labels(outcome="completed").inc()
    logger.info(
        "import_job_completed job_id=%s connection_id=%s batch=%s attempt=%d result=%s",
        claimed.job_id,
        claimed.payload.connection_id,
        claimed.payload.batch_label,
        claimed.attempts_made,
        result,
    )


def mark_job_retrying(claimed: ClaimedJob, exc: BaseException, countdown: float, session_factory=None) -> None:
    with session_scope(session_factory) as db:
        job = db.get(ImportJob, claimed.job_id)
        if job:
            job.status = ImportJobStatus.retrying
            job.last_error = str(exc)[:4000]
            job.next_attempt_at = _now() + timedelta(seconds=countdown)
            db.commit()
    IMPORT_JOBS.labels(outcome="retried").inc()
    logger.warning(
        "import_job_retry job_id=%s connection_id=%s batch=%s attempt=%d/%d delay=%s error=%s",
        claimed.job_id,
        claimed.payload.connection_id,
        claimed.payload.batch_label,
        claimed.attempts_made,
        claimed.max_attempts,
        countdown,
        exc,
    )


def dead_letter_job(claimed: ClaimedJob, exc: BaseException, session_factory=None) -> None:
    payload = claimed.payload
    with session_scope(session_factory) as db:
        job = db.get(ImportJob, claimed.job_id)
        if job:
            job.status = ImportJobStatus.dead_lettered
            job.last_error = str(exc)[:4000]
            job.finished_at = _now()
            db.commit()
    IMPORT_JOBS.labels(outcome="dead_lettered").inc()
    logger.error(
        "import_job_dead_lettered job_id=%s connection_id=%s batch=%s attempts=%d error=%s",
        claimed.job_id,
        payload.connection_id,
        payload.batch_label,
        claimed.attempts_made,
        exc,
    )
    write_import_dead_letter(
        job_id=claimed.job_id,
        connection_id=payload.connection_id,
        company_id=payload.company_id,
        batch_index=payload.batch_index,
        total_batches=payload.total_batches,
        attempts_made=claimed.attempts_made,
        raw_payload=claimed.raw_payload,
        error=exc,
        session_factory=session_factory,
    )


def dispatch_job(job_id, priority: int | None = None, countdown: float | None = None, queue: str | None = None):
    """Send the Celery task for one ledger row; the task id is the job id."""
    from app.tasks.crm_imports import process_import_batch_task

    return process_import_batch_task.apply_async(
        args=[str(job_id)],
        task_id=str(job_id),
        priority=priority,
        countdown=countdown or None,
        queue=queue or IMPORT_QUEUE,
    )


def stale_job_ids(db: Session, stale_seconds: int | None = None) -> list[tuple[uuid.UUID, int]]:
    """Jobs whose task the broker lost, or whose worker died mid-attempt.

    Stale ``running`` rows go back to ``retrying`` so the next delivery can
    claim them. The caller commits.
    """
    stale_seconds = settings.import_job_stale_seconds if stale_seconds is None else stale_seconds
    cutoff = _now() - timedelta(seconds=stale_seconds)
    rows = (
        db.query(ImportJob)
        .filter(
            or_(
                and_(
                    ImportJob.status.in_(_CLAIMABLE_STATUSES),
                    or_(ImportJob.next_attempt_at.is_(None), ImportJob.next_attempt_at < cutoff),
                ),
                and_(ImportJob.status == ImportJobStatus.running, ImportJob.updated_at < cutoff),
            )
        )
        .order_by(ImportJob.created_at.asc(), ImportJob.batch_index.asc())
        .all()
    )
    for job in rows:
        if job.status == ImportJobStatus.running:
            job.status = ImportJobStatus.retrying
        job.next_attempt_at = _now()
    return [(job.id, job.priority or 0) for job in rows]


class ImportQueue:
    """Writes ledger rows for import batches and dispatches their Celery tasks."""

    def __init__(self, session_factory=None, celery=None, queue_name: str | None = None):
        self._session_factory = session_factory
        self._celery = celery
        self.queue_name = queue_name or IMPORT_QUEUE
        self._running = False

    @property
    def celery(self):
        if self._celery is None:
            from app.celery_app import celery_app

            self._celery = celery_app
        return self._celery

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        if not self.celery.conf.task_always_eager:
            with self.celery.connection_for_write() as connection:
                connection.ensure_connection(max_retries=1)
        with session_scope(self._session_factory) as db:
            prune_jobs(db)
        self._running = True
        logger.info("import_queue_started queue=%s", self.queue_name)

    def close(self) -> None:
        self._running = False
        logger.info("import_queue_closed queue=%s", self.queue_name)

    def enqueue(self, payload: ImportBatchPayload | dict, opts: JobOptions | None = None) -> JobHandle:
        return self.enqueue_many([payload], opts)[0]

    def enqueue_many(
        self,
        payloads: Sequence[ImportBatchPayload | dict],
        opts: JobOptions | None = None,
        interval: float = 0.0,
    ) -> list[JobHandle]:
        """Persist one ledger row per batch, then dispatch them in order.

        Dispatches are staggered ``interval`` seconds apart. If the broker
        refuses one, the rows not yet dispatched are removed and
        ``ImportQueueError`` is raised; batches already sent keep running.
        """
        if not self._running:
            raise ImportQueueError("ERR_IMPORT_QUEUE_NOT_READY", "Import queue is not running")
        validated = []
        for payload in payloads:
            if not isinstance(payload, ImportBatchPayload):
                try:
                    payload = ImportBatchPayload.model_validate(payload)
                except ValidationError as exc:
                    raise CrmValidationError("ERR_INVALID_IMPORT_PAYLOAD", str(exc)) from exc
            validated.append(payload)
        opts = opts or JobOptions()

        handles = [
            JobHandle(job_id=uuid.uuid4(), batch_index=payload.batch_index, total_batches=payload.total_batches)
            for payload in validated
        ]
        now = _now()
        with session_scope(self._session_factory) as db:
            for index, (handle, payload) in enumerate(zip(handles, validated, strict=True)):
                db.add(
                    ImportJob(
                        id=handle.job_id,
                        connection_id=payload.connection_id,
                        company_id=payload.company_id,
                        job_type=payload.job_type,
                        batch_index=payload.batch_index,
                        total_batches=payload.total_batches,
                        payload=payload.model_dump(mode="json"),
                        status=ImportJobStatus.enqueued,
                        attempts_made=0,
                        max_attempts=opts.attempts,
                        backoff_seconds=opts.backoff_seconds,
                        priority=opts.priority,
                        remove_on_complete=opts.remove_on_complete,
                        next_attempt_at=now + timedelta(seconds=index * interval),
                    )
                )
            db.commit()

        for index, (handle, payload) in enumerate(zip(handles, validated, strict=True)):
            try:
                dispatch_job(handle.job_id, priority=opts.priority, countdown=index * interval, queue=self.queue_name)
            except Exception as exc:
                self._discard(handles[index:])
                logger.exception(
                    "import_job_dispatch_failed connection_id=%s batch=%s dispatched=%d",
                    payload.connection_id,
                    payload.batch_label,
                    index,
                )
                raise ImportQueueError(
                    "ERR_IMPORT_ENQUEUE_FAILED", f"Could not dispatch {payload.batch_label}: {exc}"
                ) from exc
            logger.info(
                "import_job_enqueued job_id=%s connection_id=%s batch=%s queue=%s",
                handle.job_id,
                payload.connection_id,
                payload.batch_label,
                self.queue_name,
            )
        return handles

    def _discard(self, handles: Sequence[JobHandle]) -> None:
        with session_scope(self._session_factory) as db:
            db.query(ImportJob).filter(ImportJob.id.in_([handle.job_id for handle in handles])).filter(
                ImportJob.status == ImportJobStatus.enqueued
            ).delete(synchronize_session=False)
            db.commit()


class QueueState(StrEnum):
    uninitialized = "uninitialized"
    initializing = "initializing"
    ready = "ready"
    shutting_down = "shutting-down"


class ImportQueueService:
    """Process-wide owner of the import queue.

    The first ``get()`` builds and starts the queue; callers arriving while
    that is in progress wait on the same lock and receive the same instance.
    ``shutdown()`` closes it and returns to ``uninitialized`` so the next
    ``get()`` starts a fresh queue.
    """

    def __init__(self, factory: Callable[[], ImportQueue]):
        self._factory = factory
        self._queue: ImportQueue | None = None
        self._state = QueueState.uninitialized
        self._lock = threading.Lock()

    @property
    def state(self) -> QueueState:
        return self._state

    def get(self) -> ImportQueue:
        if self._state == QueueState.ready and self._queue is not None:
            return self._queue
        with self._lock:
            if self._state == QueueState.ready and self._queue is not None:
                return self._queue
            self._state = QueueState.initializing
            try:
                queue = self._factory()
                queue.start()
            except Exception as exc:
                self._queue = None
                self._state = QueueState.uninitialized
                logger.exception("import_queue_init_failed")
                raise ImportQueueError("ERR_IMPORT_QUEUE_INIT", f"Import queue failed to start: {exc}") from exc
            self._queue = queue
            self._state = QueueState.ready
            return queue

    def shutdown(self) -> None:
        with self._lock:
            queue = self._queue
            if queue is None:
                self._state = QueueState.uninitialized
                return
            self._state = QueueState.shutting_down
            try:
                queue.close()
            finally:
                self._queue = None
                self._state = QueueState.uninitialized
