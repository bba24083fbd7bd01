"""Dead letters for import batches that exhausted their retries."""

from __future__ import annotations

import traceback
import uuid
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from app.config import settings
from app.db import session_scope
from app.logging import get_logger
from app.models.crm.enums import ImportJobStatus
from app.models.crm.import_job import ImportDeadLetter, ImportJob
from app.services.common import coerce_uuid

logger = get_logger(__name__)


def _format_error(error: str | BaseException) -> str:
    if isinstance(error, BaseException):
        # Format the exception object itself; sys.exc_info() may already
        # point at a different exception by the time this runs.
        return "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return str(error)


def write_import_dead_letter(
    *,
    job_id,
    connection_id,
    company_id,
    batch_index: int,
    total_batches: int,
    attempts_made: int,
    raw_payload: dict | None,
    error: str | BaseException,
    session_factory=None,
) -> uuid.UUID | None:
    """Persist a failed import batch for later inspection.

    Opens its own session so it is safe to call while the caller's session is
    dirty or already closed. Write failures are logged, never raised.
    """
    error_str = _format_error(error)
    try:
        with session_scope(session_factory) as db:
            dead_letter = ImportDeadLetter(
                job_id=coerce_uuid(job_id),
                connection_id=coerce_uuid(connection_id),
                company_id=coerce_uuid(company_id),
                batch_index=batch_index,
                total_batches=total_batches,
                attempts_made=attempts_made,
                raw_payload=raw_payload,
                error=error_str[:4000] if error_str else None,
            )
            db.add(dead_letter)
            db.commit()
            dead_letter_id = dead_letter.id
    except Exception:
        logger.exception(
            "import_dead_letter_write_failed job_id=%s connection_id=%s batch_index=%s",
            job_id,
            connection_id,
            batch_index,
        )
        return None
    logger.info(
        "import_dead_letter_written job_id=%s connection_id=%s batch_index=%s attempts=%s",
        job_id,
        connection_id,
        batch_index,
        attempts_made,
    )
    return dead_letter_id


def list_dead_letters(db: Session, connection_id=None, include_replayed: bool = False, limit: int = 100):
    query = db.query(ImportDeadLetter)
    if connection_id:
        query = query.filter(ImportDeadLetter.connection_id == coerce_uuid(connection_id))
    if not include_replayed:
        query = query.filter(ImportDeadLetter.replayed_at.is_(None))
    return query.order_by(ImportDeadLetter.created_at.asc()).limit(limit).all()


def requeue_dead_letter(db: Session, dead_letter: ImportDeadLetter, max_attempts: int | None = None) -> ImportJob:
    """Put a dead-lettered batch back into the job store as a fresh job.

    The caller commits, then dispatches the job (see ``queue.dispatch_job``).
    """
    if dead_letter.replayed_at is not None:
        raise ValueError(f"Dead letter {dead_letter.id} was already replayed")
    if not dead_letter.raw_payload:
        raise ValueError(f"Dead letter {dead_letter.id} has no payload")
    job = ImportJob(
        id=uuid.uuid4(),
        connection_id=dead_letter.connection_id,
        company_id=dead_letter.company_id,
        job_type=dead_letter.raw_payload.get("job_type", "import_batch"),
        batch_index=dead_letter.batch_index,
        total_batches=dead_letter.total_batches,
        payload=dead_letter.raw_payload,
        status=ImportJobStatus.enqueued,
        attempts_made=0,
        max_attempts=max_attempts or max(dead_letter.attempts_made, 1),
        backoff_seconds=settings.import_job_backoff_seconds,
        priority=settings.import_job_priority,
        next_attempt_at=datetime.now(UTC),
    )
    db.add(job)
    dead_letter.replayed_at = datetime.now(UTC)
    logger.info(
        "import_dead_letter_requeued dead_letter_id=%s job_id=%s connection_id=%s batch_index=%s",
        dead_letter.id,
        job.id,
        dead_letter.connection_id,
        dead_letter.batch_index,
    )
    return job
