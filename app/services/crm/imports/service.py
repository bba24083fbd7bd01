"""History import orchestration.

``start_import`` validates and claims the connection, normalizes and
partitions the history, then writes one ledger row per batch and dispatches
its Celery task before returning. Each batch task replays its slice through
the inbound handler. Batches may finish in any order; whichever one settles
last hands the connection to the finalizer.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import ValidationError
from sqlalchemy import update

from app.config import settings
from app.db import session_scope
from app.logging import get_logger
from app.models.crm.connection import Connection
from app.models.crm.enums import ACTIVE_IMPORT_STATUSES, ImportStatus
from app.schemas.crm.imports import (
    ImportBatchPayload,
    ImportHistoryResponse,
    ImportProgress,
    ImportStartResponse,
    ImportStatusRead,
    JobOptions,
    RawInboundMessage,
)
from app.schemas.crm.tickets import CloseImportedTicketsResult
from app.services.common import coerce_uuid
from app.services.crm.errors import CrmValidationError, ImportAlreadyRunningError
from app.services.crm.gateway import BufferedGatewayClient, GatewayClient
from app.services.crm.imports.finalizer import ImportFinalizer, get_connection
from app.services.crm.imports.normalizer import filter_import_window, normalize, partition
from app.services.crm.imports.progress import ImportProgressReporter
from app.services.crm.imports.queue import ImportQueue, ImportQueueService
from app.services.crm.imports.replay import replay_batch
from app.services.crm.inbox.inbound import GatewayInboundHandler
from app.telemetry import get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


def _parse_messages(raw_messages) -> list[RawInboundMessage]:
    parsed = []
    for item in raw_messages or []:
        if isinstance(item, RawInboundMessage):
            parsed.append(item)
            continue
        try:
            parsed.append(RawInboundMessage.model_validate(item))
        except ValidationError as exc:
            raise CrmValidationError("ERR_INVALID_IMPORT_MESSAGE", str(exc)) from exc
    return parsed


class ImportPipeline:
    """Collaborators and knobs for history imports.

    The API process uses it to start imports; Celery workers use the same
    instance (built by the container) to run batches.
    """

    def __init__(
        self,
        session_factory=None,
        gateway: GatewayClient | None = None,
        inbound_handler=None,
        reporter: ImportProgressReporter | None = None,
        finalizer: ImportFinalizer | None = None,
        queue_service: ImportQueueService | None = None,
        batch_size: int | None = None,
        message_interval: float | None = None,
        enqueue_interval: float | None = None,
        progress_every: int | None = None,
        job_options: JobOptions | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway or BufferedGatewayClient()
        self.inbound_handler = inbound_handler or GatewayInboundHandler(session_factory)
        self.reporter = reporter or ImportProgressReporter()
        self.finalizer = finalizer or ImportFinalizer(session_factory, reporter=self.reporter)
        self.batch_size = batch_size or settings.import_batch_size
        self.message_interval = (
            settings.import_message_interval_seconds if message_interval is None else message_interval
        )
        self.enqueue_interval = (
            settings.import_enqueue_interval_seconds if enqueue_interval is None else enqueue_interval
        )
        self.progress_every = progress_every or settings.import_progress_every
        self.job_options = job_options
        self.queue_service = queue_service or ImportQueueService(self._build_queue)

    def _build_queue(self) -> ImportQueue:
        return ImportQueue(session_factory=self.session_factory)

    def _set_state(self, connection_id, state: ImportStatus) -> None:
        with session_scope(self.session_factory) as db:
            connection = db.get(Connection, coerce_uuid(connection_id))
            if connection:
                connection.set_import_state(state)
                db.commit()

    def _claim_connection(self, connection_id, company_id) -> None:
        with session_scope(self.session_factory) as db:
            connection = get_connection(db, connection_id, company_id)
            db.refresh(connection, with_for_update=True)
            state = connection.import_state
            if state in ACTIVE_IMPORT_STATUSES:
                logger.info(
                    "import_start_refused connection_id=%s status=%s",
                    connection_id,
                    state.value,
                )
                raise ImportAlreadyRunningError(str(connection_id), state.value)
            connection.set_import_state(ImportStatus.preparing)
            connection.import_started_at = _now()
            db.commit()

    def start_import(self, connection_id, company_id, raw_messages) -> ImportStartResponse:
        connection_id = coerce_uuid(connection_id)
        company_id = coerce_uuid(company_id)
        messages = _parse_messages(raw_messages)
        normalized = normalize(messages)
        batches = partition(normalized, self.batch_size)

        self._claim_connection(connection_id, company_id)
        try:
            return self._start_claimed(connection_id, company_id, len(messages), len(normalized), batches)
        except Exception:
            # A claimed connection must never be left in preparing or Running
            # with nothing dispatched to move it on.
            logger.exception("import_start_failed connection_id=%s", connection_id)
            self._set_state(connection_id, ImportStatus.error)
            self.reporter.refresh(company_id)
            raise

    def _start_claimed(self, connection_id, company_id, received: int, total_messages: int, batches):
        self.reporter.status(company_id, ImportStatus.preparing.value)

        if not batches:
            self._set_state(connection_id, ImportStatus.idle)
            self.reporter.refresh(company_id)
            logger.info("import_start_empty connection_id=%s received=%d", connection_id, received)
            return ImportStartResponse(
                connection_id=connection_id,
                status=ImportStatus.idle.value,
                total_messages=0,
                total_batches=0,
            )

        queue = self.queue_service.get()

        with session_scope(self.session_factory) as db:
            connection = db.get(Connection, connection_id)
            connection.set_import_state(ImportStatus.running)
            connection.import_total_messages = total_messages
            connection.import_processed_messages = 0
            connection.import_total_batches = len(batches)
            connection.import_completed_batches = 0
            db.commit()

        self.reporter.report(
            company_id,
            connection_id,
            ImportProgress(
                processed_count=0,
                total_count=total_messages,
                status_label=ImportStatus.running.value,
                batch_label=batches[0].label,
            ),
        )
        logger.info(
            "import_started connection_id=%s received=%d unique=%d batches=%d",
            connection_id,
            received,
            total_messages,
            len(batches),
        )
        queue.enqueue_many(
            [
                ImportBatchPayload(
                    connection_id=connection_id,
                    company_id=company_id,
                    messages=batch.messages,
                    batch_index=batch.batch_index,
                    total_batches=batch.total_batches,
                )
                for batch in batches
            ],
            self.job_options,
            interval=self.enqueue_interval,
        )
        return ImportStartResponse(
            connection_id=connection_id,
            status=ImportStatus.running.value,
            total_messages=total_messages,
            total_batches=len(batches),
        )

    def buffer_history(self, connection_id, raw_messages, company_id=None) -> ImportHistoryResponse:
        """Hold history-sync messages the gateway listener delivered until an import drains them."""
        with session_scope(self.session_factory) as db:
            connection = get_connection(db, connection_id, company_id)
            connection_id = connection.id
        messages = _parse_messages(raw_messages)
        buffered = self.gateway.push_history(str(connection_id), messages)
        logger.info("import_history_buffered connection_id=%s count=%d", connection_id, buffered)
        return ImportHistoryResponse(connection_id=connection_id, buffered=buffered)

    def start_import_from_gateway(self, connection_id, company_id=None) -> ImportStartResponse:
        """Import whatever history the gateway session has buffered."""
        with session_scope(self.session_factory) as db:
            connection = get_connection(db, connection_id, company_id)
            company_id = connection.company_id
            since = connection.import_since
            until = connection.import_until
            include_groups = bool(connection.import_groups)
        buffered = self.gateway.get_buffered_messages(str(connection_id))
        messages = filter_import_window(buffered, since=since, until=until, include_groups=include_groups)
        logger.info(
            "import_from_gateway connection_id=%s buffered=%d in_window=%d",
            connection_id,
            len(buffered),
            len(messages),
        )
        return self.start_import(connection_id, company_id, messages)

    def import_status(self, connection_id) -> ImportStatusRead:
        with session_scope(self.session_factory) as db:
            connection = get_connection(db, connection_id)
            total_batches = connection.import_total_batches or 0
            completed = connection.import_completed_batches or 0
            return ImportStatusRead(
                connection_id=connection.id,
                status=connection.import_state.value,
                total_messages=connection.import_total_messages or 0,
                imported_messages=connection.import_processed_messages or 0,
                completed_batches=completed,
                total_batches=total_batches,
                batch_info=f"Batch {completed}/{total_batches}" if total_batches else None,
            )

    def close_imported_tickets(self, connection_id, company_id=None) -> CloseImportedTicketsResult:
        return self.finalizer.close_imported_tickets(connection_id, company_id)

    def _committed_progress(self, connection_id) -> tuple[int, int]:
        with session_scope(self.session_factory) as db:
            row = (
                db.query(Connection.import_processed_messages, Connection.import_total_messages)
                .filter(Connection.id == connection_id)
                .first()
            )
        if not row:
            return 0, 0
        return row[0] or 0, row[1] or 0

    def _settle_batch(self, connection_id, processed: int) -> tuple[int, int, int, int]:
        """Count one batch as settled and return the counters it left behind.

        Returns ``(imported, total_messages, settled_batches, total_batches)``
        read in the same statement, so exactly one batch sees the import as
        fully settled.
        """
        with session_scope(self.session_factory) as db:
            row = db.execute(
                update(Connection)
                .where(Connection.id == connection_id)
                .values(
                    import_processed_messages=Connection.import_processed_messages + processed,
                    import_completed_batches=Connection.import_completed_batches + 1,
                )
                .returning(
                    Connection.import_processed_messages,
                    Connection.import_total_messages,
                    Connection.import_completed_batches,
                    Connection.import_total_batches,
                )
            ).first()
            db.commit()
        if row is None:
            return 0, 0, 0, 0
        imported, total, settled, total_batches = row
        return imported or 0, total or 0, settled or 0, total_batches or 0

    def process_batch(self, payload: ImportBatchPayload) -> dict:
        """Replay one batch and record it; runs inside the batch Celery task."""
        connection_id = payload.connection_id
        company_id = payload.company_id
        with tracer.start_as_current_span("crm_import.replay_batch") as span:
            span.set_attribute("crm.connection_id", str(connection_id))
            span.set_attribute("crm.batch_index", payload.batch_index)
            span.set_attribute("crm.total_batches", payload.total_batches)

            handle = self.gateway.get_connection_handle(str(connection_id))
            committed, total = self._committed_progress(connection_id)

            def _progress(done: int, _batch_total: int) -> None:
                self.reporter.report(
                    company_id,
                    connection_id,
                    ImportProgress(
                        processed_count=min(committed + done, total) if total else committed + done,
                        total_count=total,
                        status_label=ImportStatus.running.value,
                        batch_label=payload.batch_label,
                    ),
                )

            _progress(0, len(payload.messages))
            result = replay_batch(
                payload.messages,
                self.inbound_handler,
                handle,
                company_id,
                interval=self.message_interval,
                progress_every=self.progress_every,
                on_progress=_progress,
            )
            if result.failed and not result.processed:
                raise RuntimeError(
                    f"Every message in {payload.batch_label} failed for connection {connection_id}"
                )

            processed_total, total, settled, total_batches = self._settle_batch(connection_id, result.processed)
            span.set_attribute("crm.processed", result.processed)
            span.set_attribute("crm.failed", result.failed)

        logger.info(
            "import_batch_processed connection_id=%s batch=%s processed=%d failed=%d imported_total=%d/%d",
            connection_id,
            payload.batch_label,
            result.processed,
            result.failed,
            processed_total,
            total,
        )
        if settled == total_batches:
            self._finalize(connection_id, company_id)
        elif payload.is_last_batch:
            logger.info(
                "import_final_batch_waiting connection_id=%s settled=%d/%d",
                connection_id,
                settled,
                total_batches,
            )
        return {"processed": result.processed, "failed": result.failed}

    def _finalize(self, connection_id, company_id) -> None:
        with session_scope(self.session_factory) as db:
            connection = db.get(Connection, connection_id)
            state = connection.import_state if connection else None
        if state != ImportStatus.running:
            logger.info(
                "import_finalize_skipped connection_id=%s status=%s",
                connection_id,
                state.value if state else None,
            )
            return
        try:
            self.finalizer.finalize(connection_id, company_id)
        except Exception:
            # The batch itself is done; replaying it would only double count.
            logger.exception("import_finalize_failed connection_id=%s", connection_id)
            self._set_state(connection_id, ImportStatus.error)
            self.reporter.refresh(company_id)

    def on_batch_dead_lettered(self, payload: ImportBatchPayload, exc: BaseException) -> None:
        """Settle a batch whose retries are spent.

        A dead-lettered final batch fails the import. Any other dead letter
        only counts towards settling, so the remaining batches still finalize.
        """
        _, _, settled, total_batches = self._settle_batch(payload.connection_id, 0)
        if payload.is_last_batch:
            logger.error(
                "import_final_batch_dead_lettered connection_id=%s batch=%s",
                payload.connection_id,
                payload.batch_label,
            )
            self._set_state(payload.connection_id, ImportStatus.error)
            self.reporter.refresh(payload.company_id)
            return
        if settled == total_batches:
            self._finalize(payload.connection_id, payload.company_id)

    def shutdown(self) -> None:
        self.queue_service.shutdown()


def get_import_pipeline() -> ImportPipeline:
    from app.container import container

    return container.import_pipeline()


def start_import(connection_id, company_id, raw_messages) -> ImportStartResponse:
    return get_import_pipeline().start_import(connection_id, company_id, raw_messages)


def start_import_from_gateway(connection_id, company_id=None) -> ImportStartResponse:
    return get_import_pipeline().start_import_from_gateway(connection_id, company_id)


def import_status(connection_id) -> ImportStatusRead:
    return get_import_pipeline().import_status(connection_id)


def close_imported_tickets(connection_id, company_id=None) -> CloseImportedTicketsResult:
    return get_import_pipeline().close_imported_tickets(connection_id, company_id)


def get_import_queue() -> ImportQueue:
    return get_import_pipeline().queue_service.get()


def shutdown_import_queue() -> None:
    get_import_pipeline().shutdown()
