"""Ticket consolidation when a connection is replaced or removed.

Moving a contact's traffic to another connection must not leave two open
tickets for the same contact there: a ticket with no counterpart on the new
connection is moved, one with a counterpart is merged into it. Each pair is
handled in its own savepoint, so a failure rolls back only that pair and the
sweep moves on.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy.orm import Session

from app.db import session_scope
from app.logging import get_logger
from app.models.crm.connection import Connection
from app.models.crm.contact import Contact
from app.models.crm.enums import ACTIVE_IMPORT_STATUSES, ConnectionStatus, ImportStatus, TicketStatus
from app.models.crm.ticket import Message, Ticket
from app.schemas.crm.tickets import DeleteConnectionResult, ForceCloseResult, TransferResult
from app.services.common import coerce_uuid
from app.services.crm.errors import CrmConflictError, CrmValidationError, ImportAlreadyRunningError
from app.services.crm.imports.finalizer import get_connection
from app.services.crm.tickets import OPEN_STATUSES, truncate_preview
from app.services.crm.tickets import tickets as ticket_service
from app.telemetry import get_tracer
from app.websocket import broadcaster

logger = get_logger(__name__)
tracer = get_tracer(__name__)

PREVIEW_SEPARATOR = " | "


def _now() -> datetime:
    return datetime.now(UTC)


def _open_ticket_ids(db: Session, connection_id) -> list:
    rows = (
        db.query(Ticket.id)
        .filter(Ticket.connection_id == connection_id)
        .filter(Ticket.status.in_(OPEN_STATUSES))
        .order_by(Ticket.created_at.asc())
        .all()
    )
    return [row.id for row in rows]


def _merge_previews(destination: str | None, source: str | None) -> str | None:
    parts = [part for part in (destination, source) if part]
    if not parts:
        return None
    return truncate_preview(PREVIEW_SEPARATOR.join(parts))


def _user_suffix(user_id) -> str:
    return f" by user {user_id}" if user_id else ""


class TicketConsolidator:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def _move_or_merge(self, db: Session, ticket_id, source: Connection, target: Connection, user_id):
        """Return ``(outcome, ticket_to_announce, deleted_ticket_id)`` for one ticket."""
        ticket = db.get(Ticket, ticket_id)
        if not ticket or ticket.status not in OPEN_STATUSES or ticket.connection_id != source.id:
            return "skipped", None, None

        destination = ticket_service.find_open(db, ticket.contact_id, ticket.company_id, target.id)
        if destination is None:
            ticket.connection_id = target.id
            ticket_service.add_system_message(
                db,
                ticket,
                f"Ticket transferred from connection {source.name} to {target.name}{_user_suffix(user_id)}",
                user_id=user_id,
            )
            db.flush()
            return "moved", ticket, None

        # Only rows still owned by the stale ticket, so a re-run never duplicates.
        moved = (
            db.query(Message)
            .filter(Message.ticket_id == ticket.id)
            .update({Message.ticket_id: destination.id}, synchronize_session="fetch")
        )
        destination.last_message = _merge_previews(destination.last_message, ticket.last_message)
        destination.updated_at = _now()
        ticket_service.add_system_message(
            db,
            destination,
            f"Merged {moved} messages from ticket {ticket.id} on connection {source.name}{_user_suffix(user_id)}",
            user_id=user_id,
        )
        source_ticket_id = ticket.id
        db.delete(ticket)
        db.flush()
        return "merged", destination, source_ticket_id

    def transfer_tickets(self, old_connection_id, new_connection_id, user_id=None) -> TransferResult:
        """Move every open/pending ticket of one connection onto another."""
        old_connection_id = coerce_uuid(old_connection_id)
        new_connection_id = coerce_uuid(new_connection_id)
        if old_connection_id == new_connection_id:
            raise CrmValidationError("ERR_SAME_CONNECTION", "Tickets cannot be transferred to the same connection")

        result = TransferResult()
        with tracer.start_as_current_span("crm_tickets.transfer") as span, session_scope(
            self.session_factory
        ) as db:
            span.set_attribute("crm.connection_id", str(old_connection_id))
            source = get_connection(db, old_connection_id)
            target = get_connection(db, new_connection_id, source.company_id)
            source_name, target_name = source.name, target.name
            for ticket_id in _open_ticket_ids(db, source.id):
                try:
                    with db.begin_nested():
                        outcome, announce, deleted_id = self._move_or_merge(db, ticket_id, source, target, user_id)
                    db.commit()
                except Exception as exc:
                    db.rollback()
                    result.failed += 1
                    result.failed_ticket_ids.append(ticket_id)
                    logger.warning(
                        "ticket_transfer_failed ticket_id=%s from_connection=%s to_connection=%s error=%s",
                        ticket_id,
                        old_connection_id,
                        new_connection_id,
                        exc,
                    )
                    continue
                if outcome == "moved":
                    result.moved += 1
                elif outcome == "merged":
                    result.merged += 1
                if deleted_id:
                    broadcaster.broadcast_ticket_deleted(target.company_id, deleted_id)
                if announce is not None:
                    broadcaster.broadcast_ticket_updated(announce)
            span.set_attribute("crm.moved", result.moved)
            span.set_attribute("crm.merged", result.merged)

        logger.info(
            "tickets_transferred from_connection=%s(%s) to_connection=%s(%s) moved=%d merged=%d failed=%d user_id=%s",
            old_connection_id,
            source_name,
            new_connection_id,
            target_name,
            result.moved,
            result.merged,
            result.failed,
            user_id,
        )
        return result

    def force_close_connection_tickets(self, connection_id, user_id=None) -> ForceCloseResult:
        """Close every open/pending ticket on a connection that is going away.

        The closing note is only written when the ticket's contact still
        exists; the ticket is closed either way.
        """
        connection_id = coerce_uuid(connection_id)
        result = ForceCloseResult()
        with session_scope(self.session_factory) as db:
            connection = db.get(Connection, connection_id)
            connection_name = connection.name if connection else str(connection_id)
            for ticket_id in _open_ticket_ids(db, connection_id):
                try:
                    with db.begin_nested():
                        ticket = db.get(Ticket, ticket_id)
                        ticket.status = TicketStatus.closed
                        ticket.closed_at = _now()
                        ticket.is_force_delete_connection = True
                        contact = db.get(Contact, ticket.contact_id) if ticket.contact_id else None
                        if contact is not None:
                            ticket_service.add_system_message(
                                db,
                                ticket,
                                f"Ticket closed because connection {connection_name} was deleted"
                                f"{_user_suffix(user_id)}",
                                user_id=user_id,
                            )
                        db.flush()
                    db.commit()
                except Exception as exc:
                    db.rollback()
                    result.failed += 1
                    result.failed_ticket_ids.append(ticket_id)
                    logger.warning(
                        "ticket_force_close_failed ticket_id=%s connection_id=%s error=%s",
                        ticket_id,
                        connection_id,
                        exc,
                    )
                    continue
                result.closed += 1
                if contact is not None:
                    result.with_message += 1
                else:
                    logger.info("ticket_force_closed_without_contact ticket_id=%s", ticket_id)
                broadcaster.broadcast_ticket_updated(ticket)

        logger.info(
            "connection_tickets_force_closed connection_id=%s closed=%d with_message=%d failed=%d user_id=%s",
            connection_id,
            result.closed,
            result.with_message,
            result.failed,
            user_id,
        )
        return result

    def delete_connection(
        self,
        connection_id,
        company_id,
        user_id=None,
        new_connection_id=None,
        force: bool = False,
    ) -> DeleteConnectionResult:
        """Soft-delete a connection once none of its tickets are left open.

        Open tickets are transferred to ``new_connection_id`` when given, or
        force-closed when ``force`` is set; otherwise deletion is refused.
        """
        connection_id = coerce_uuid(connection_id)
        with session_scope(self.session_factory) as db:
            connection = get_connection(db, connection_id, company_id)
            state = connection.import_state
            open_count = len(_open_ticket_ids(db, connection_id))
        if state in ACTIVE_IMPORT_STATUSES:
            raise ImportAlreadyRunningError(str(connection_id), state.value)

        outcome = DeleteConnectionResult(connection_id=connection_id)
        if open_count:
            if new_connection_id:
                outcome.transfer = self.transfer_tickets(connection_id, new_connection_id, user_id)
            elif force:
                outcome.force_close = self.force_close_connection_tickets(connection_id, user_id)
            else:
                raise CrmConflictError(
                    "ERR_OPEN_TICKETS_EXISTS",
                    f"Connection {connection_id} still has {open_count} open tickets",
                )

        with session_scope(self.session_factory) as db:
            remaining = len(_open_ticket_ids(db, connection_id))
            if remaining:
                raise CrmConflictError(
                    "ERR_OPEN_TICKETS_EXISTS",
                    f"Connection {connection_id} still has {remaining} open tickets",
                )
            connection = get_connection(db, connection_id, company_id)
            connection.is_active = False
            connection.status = ConnectionStatus.disconnected
            connection.set_import_state(ImportStatus.idle)
            company_id = connection.company_id
            db.commit()

        logger.info(
            "connection_deleted connection_id=%s company_id=%s user_id=%s transferred_to=%s forced=%s",
            connection_id,
            company_id,
            user_id,
            new_connection_id,
            force,
        )
        broadcaster.broadcast_connection_deleted(company_id, connection_id)
        return outcome


def get_ticket_consolidator() -> TicketConsolidator:
    from app.container import container

    return container.ticket_consolidator()


def transfer_tickets(old_connection_id, new_connection_id, user_id=None) -> TransferResult:
    return get_ticket_consolidator().transfer_tickets(old_connection_id, new_connection_id, user_id)


def force_close_connection_tickets(connection_id, user_id=None) -> ForceCloseResult:
    return get_ticket_consolidator().force_close_connection_tickets(connection_id, user_id)


def delete_connection(connection_id, company_id, user_id=None, new_connection_id=None, force=False):
    return get_ticket_consolidator().delete_connection(
        connection_id, company_id, user_id=user_id, new_connection_id=new_connection_id, force=force
    )
