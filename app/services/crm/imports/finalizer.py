"""Connection lifecycle after the final import batch.

Imported history opens a pending ticket for every conversation it touches.
Once every batch has settled the connection either closes those tickets on its
own (``auto_close_imported_tickets``) or waits for an operator to do it.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from app.config import settings
from app.db import session_scope
from app.logging import get_logger
from app.models.crm.connection import Connection
from app.models.crm.enums import ACTIVE_IMPORT_STATUSES, ImportStatus, TicketStatus
from app.models.crm.ticket import Ticket
from app.schemas.crm.tickets import CloseImportedTicketsResult, TicketUpdate
from app.services.common import coerce_uuid
from app.services.crm.errors import CrmNotFoundError, ImportAlreadyRunningError
from app.services.crm.imports.metrics import IMPORT_TICKETS_CLOSED
from app.services.crm.imports.progress import ImportProgressReporter
from app.services.crm.imports.replay import paced
from app.services.crm.tickets import tickets as default_ticket_updater
from app.telemetry import get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


def get_connection(db, connection_id, company_id=None) -> Connection:
    connection = db.get(Connection, coerce_uuid(connection_id))
    if not connection or not connection.is_active:
        raise CrmNotFoundError("ERR_CONNECTION_NOT_FOUND", f"Connection {connection_id} not found")
    if company_id is not None and connection.company_id != coerce_uuid(company_id):
        raise CrmNotFoundError("ERR_CONNECTION_NOT_FOUND", f"Connection {connection_id} not found")
    return connection


class ImportFinalizer:
    def __init__(
        self,
        session_factory=None,
        ticket_updater=None,
        reporter: ImportProgressReporter | None = None,
        close_interval: float | None = None,
        window_hours: float | None = None,
    ):
        self.session_factory = session_factory
        self.ticket_updater = ticket_updater or default_ticket_updater
        self.reporter = reporter or ImportProgressReporter()
        self.close_interval = settings.import_close_interval_seconds if close_interval is None else close_interval
        self.window_hours = settings.import_auto_close_window_hours if window_hours is None else window_hours

    def _set_state(self, connection_id, state: ImportStatus, clear_window: bool = False) -> None:
        with session_scope(self.session_factory) as db:
            connection = db.get(Connection, coerce_uuid(connection_id))
            if not connection:
                return
            connection.set_import_state(state)
            if clear_window:
                connection.import_since = None
                connection.import_until = None
            db.commit()

    def finalize(self, connection_id, company_id) -> ImportStatus:
        """Run after the final batch: auto-close, or wait for a manual close."""
        with session_scope(self.session_factory) as db:
            auto_close = bool(get_connection(db, connection_id).auto_close_imported_tickets)

        if auto_close:
            self.sweep(connection_id, company_id)
            return ImportStatus.idle

        self._set_state(connection_id, ImportStatus.awaiting_manual_close)
        logger.info("import_awaiting_manual_close connection_id=%s", connection_id)
        self.reporter.status(company_id, ImportStatus.awaiting_manual_close.value)
        self.reporter.refresh(company_id)
        return ImportStatus.awaiting_manual_close

    def close_imported_tickets(self, connection_id, company_id=None) -> CloseImportedTicketsResult:
        """Operator-triggered close of the tickets an import left pending."""
        with session_scope(self.session_factory) as db:
            connection = get_connection(db, connection_id, company_id)
            state = connection.import_state
            company_id = connection.company_id
        if state in ACTIVE_IMPORT_STATUSES:
            raise ImportAlreadyRunningError(str(connection_id), state.value)
        return self.sweep(connection_id, company_id)

    def _eligible_ticket_ids(self, connection_id) -> list:
        window = timedelta(hours=self.window_hours)
        now = _now()
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(Ticket.id)
                .filter(Ticket.connection_id == coerce_uuid(connection_id))
                .filter(Ticket.status == TicketStatus.pending)
                .filter(Ticket.imported_at.is_not(None))
                .filter(Ticket.imported_at >= now - window)
                .filter(Ticket.imported_at <= now + window)
                .order_by(Ticket.imported_at.asc())
                .all()
            )
        return [row.id for row in rows]

    def sweep(self, connection_id, company_id) -> CloseImportedTicketsResult:
        """Close recently imported pending tickets, one at a time.

        One ticket failing to close is logged and skipped. The connection goes
        back to idle once the sweep is over.
        """
        result = CloseImportedTicketsResult()
        with tracer.start_as_current_span("crm_import.close_imported_tickets") as span:
            span.set_attribute("crm.connection_id", str(connection_id))
            self._set_state(connection_id, ImportStatus.closing)
            self.reporter.status(company_id, ImportStatus.closing.value)
            try:
                ticket_ids = self._eligible_ticket_ids(connection_id)
                for ticket_id in paced(ticket_ids, self.close_interval):
                    try:
                        with session_scope(self.session_factory) as db:
                            self.ticket_updater.update(
                                db, ticket_id, company_id, TicketUpdate(status=TicketStatus.closed)
                            )
                        result.closed += 1
                        IMPORT_TICKETS_CLOSED.labels(status="closed").inc()
                    except Exception as exc:
                        result.failed += 1
                        IMPORT_TICKETS_CLOSED.labels(status="failed").inc()
                        logger.warning(
                            "import_ticket_close_failed connection_id=%s ticket_id=%s error=%s",
                            connection_id,
                            ticket_id,
                            exc,
                        )
            except Exception:
                self._set_state(connection_id, ImportStatus.error)
                logger.exception("import_close_sweep_failed connection_id=%s", connection_id)
                self.reporter.refresh(company_id)
                raise
            span.set_attribute("crm.tickets_closed", result.closed)

        self._set_state(connection_id, ImportStatus.idle, clear_window=True)
        logger.info(
            "import_tickets_closed connection_id=%s closed=%d failed=%d",
            connection_id,
            result.closed,
            result.failed,
        )
        self.reporter.refresh(company_id)
        return result
