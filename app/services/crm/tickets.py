"""Ticket update collaborator and shared ticket helpers.

Every status change that observers care about goes through
``Tickets.update`` so the ticket event is published the same way no matter
which pipeline closed or moved the ticket.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy.orm import Session

from app.logging import get_logger
from app.models.crm.enums import TicketStatus
from app.models.crm.ticket import LAST_MESSAGE_MAX_LENGTH, Message, Ticket
from app.schemas.crm.tickets import TicketUpdate
from app.services.common import coerce_uuid
from app.services.crm.errors import CrmNotFoundError, CrmValidationError
from app.websocket import broadcaster

logger = get_logger(__name__)

OPEN_STATUSES = (TicketStatus.open, TicketStatus.pending)


def _now() -> datetime:
    return datetime.now(UTC)


def truncate_preview(value: str | None) -> str | None:
    if value is None:
        return None
    return value[:LAST_MESSAGE_MAX_LENGTH]


class Tickets:
    @staticmethod
    def get(db: Session, ticket_id, company_id=None) -> Ticket:
        ticket = db.get(Ticket, coerce_uuid(ticket_id))
        if not ticket or (company_id is not None and ticket.company_id != coerce_uuid(company_id)):
            raise CrmNotFoundError("ERR_TICKET_NOT_FOUND", f"Ticket {ticket_id} not found")
        return ticket

    @staticmethod
    def find_open(db: Session, contact_id, company_id, connection_id) -> Ticket | None:
        """Return the open/pending ticket for a contact on a connection, if any."""
        if contact_id is None:
            return None
        return (
            db.query(Ticket)
            .filter(Ticket.contact_id == contact_id)
            .filter(Ticket.company_id == company_id)
            .filter(Ticket.connection_id == connection_id)
            .filter(Ticket.status.in_(OPEN_STATUSES))
            .order_by(Ticket.updated_at.desc())
            .first()
        )

    @staticmethod
    def update(db: Session, ticket_id, company_id, payload: TicketUpdate | dict) -> Ticket:
        if isinstance(payload, dict):
            payload = TicketUpdate.model_validate(payload)
        data = payload.model_dump(exclude_unset=True)
        if not data:
            raise CrmValidationError("ERR_EMPTY_UPDATE", "Update payload required")

        ticket = Tickets.get(db, ticket_id, company_id)
        previous_status = ticket.status
        for key, value in data.items():
            setattr(ticket, key, value)

        new_status = ticket.status
        if previous_status != new_status:
            if new_status == TicketStatus.closed:
                ticket.closed_at = _now()
            else:
                ticket.closed_at = None
        db.commit()
        db.refresh(ticket)

        logger.info(
            "ticket_updated ticket_id=%s company_id=%s fields=%s status=%s->%s",
            ticket.id,
            company_id,
            ",".join(sorted(data.keys())),
            previous_status.value if previous_status else None,
            new_status.value if new_status else None,
        )
        broadcaster.broadcast_ticket_updated(ticket)
        return ticket

    @staticmethod
    def add_system_message(db: Session, ticket: Ticket, body: str, user_id=None) -> Message:
        """Append an internal note to a ticket. The caller commits."""
        message = Message(
            ticket_id=ticket.id,
            company_id=ticket.company_id,
            connection_id=ticket.connection_id,
            contact_id=ticket.contact_id,
            body=body,
            from_me=True,
            is_system=True,
            sent_at=_now(),
            payload={"user_id": str(user_id)} if user_id else None,
        )
        db.add(message)
        return message

    @staticmethod
    def count_messages(db: Session, ticket_id) -> int:
        return db.query(Message).filter(Message.ticket_id == ticket_id).count()


tickets = Tickets()
