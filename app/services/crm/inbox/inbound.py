"""Inbound message processing for gateway connections.

Live traffic and history imports share this path so an imported message
ends up exactly where a live one would have: same contact resolution, same
open-ticket lookup, same dedup. Imports only differ in what they suppress
(ticket broadcasts and automation) and in tagging new tickets as imported.
"""
from __future__ import annotations

import time
from datetime import UTC, datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db import session_scope
from app.logging import get_logger
from app.models.crm.contact import Contact
from app.models.crm.enums import TicketStatus
from app.models.crm.ticket import Message, Ticket
from app.schemas.crm.imports import RawInboundMessage
from app.services.common import coerce_uuid
from app.services.crm.gateway import GatewayHandle
from app.services.crm.inbox.dedup import find_duplicate_message
from app.services.crm.inbox.observability import INBOUND_MESSAGES, MESSAGE_PROCESSING_TIME
from app.services.crm.tickets import tickets as ticket_service
from app.services.crm.tickets import truncate_preview
from app.websocket import broadcaster

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


def _resolve_contact(db: Session, company_id, address: str, raw: RawInboundMessage) -> Contact:
    contact = (
        db.query(Contact)
        .filter(Contact.company_id == company_id)
        .filter(Contact.address == address)
        .first()
    )
    if contact:
        # push_name on our own messages is the account name, not the contact's
        if not raw.from_me and raw.push_name and contact.name == contact.address:
            contact.name = raw.push_name
        return contact
    name = raw.push_name if raw.push_name and not raw.from_me and not raw.is_group else address
    contact = Contact(company_id=company_id, name=name, address=address, is_group=raw.is_group)
    db.add(contact)
    db.flush()
    return contact


def _resolve_ticket(db: Session, contact: Contact, company_id, connection_id, is_import: bool) -> Ticket:
    ticket = ticket_service.find_open(db, contact.id, company_id, connection_id)
    if ticket:
        return ticket
    ticket = Ticket(
        company_id=company_id,
        connection_id=connection_id,
        contact_id=contact.id,
        status=TicketStatus.pending,
        is_group=contact.is_group,
        imported_at=_now() if is_import else None,
    )
    db.add(ticket)
    db.flush()
    return ticket


def receive_gateway_message(
    db: Session,
    raw: RawInboundMessage,
    connection_id,
    company_id,
    is_import: bool = False,
    routing_key_override: str | None = None,
) -> Message:
    """Persist one gateway message onto the contact's open ticket.

    Returns the stored message, or the existing one when the external id was
    already ingested on this connection.
    """
    source = "import" if is_import else "live"
    connection_id = coerce_uuid(connection_id)
    company_id = coerce_uuid(company_id)
    started = time.monotonic()

    existing = find_duplicate_message(db, connection_id, raw.external_id)
    if existing:
        INBOUND_MESSAGES.labels(source=source, status="duplicate").inc()
        logger.debug(
            "gateway_inbound_duplicate connection_id=%s external_id=%s",
            connection_id,
            raw.external_id,
        )
        return existing

    address = routing_key_override or raw.routing_key
    contact = _resolve_contact(db, company_id, address, raw)
    ticket = _resolve_ticket(db, contact, company_id, connection_id, is_import)

    quoted = None
    if raw.quoted_external_id:
        quoted = find_duplicate_message(db, connection_id, raw.quoted_external_id)

    message = Message(
        ticket_id=ticket.id,
        company_id=company_id,
        connection_id=connection_id,
        contact_id=contact.id,
        quoted_message_id=quoted.id if quoted else None,
        external_id=raw.external_id,
        body=raw.body,
        from_me=raw.from_me,
        is_imported=is_import,
        sent_at=raw.timestamp,
        payload=raw.payload or None,
    )
    db.add(message)
    if raw.body:
        ticket.last_message = truncate_preview(raw.body)

    try:
        db.commit()
    except IntegrityError:
        # Another worker stored the same external id first.
        db.rollback()
        existing = find_duplicate_message(db, connection_id, raw.external_id)
        if existing:
            INBOUND_MESSAGES.labels(source=source, status="duplicate").inc()
            return existing
        INBOUND_MESSAGES.labels(source=source, status="error").inc()
        raise
    db.refresh(message)

    MESSAGE_PROCESSING_TIME.labels(source=source).observe(time.monotonic() - started)
    INBOUND_MESSAGES.labels(source=source, status="success").inc()
    logger.debug(
        "gateway_inbound_stored connection_id=%s ticket_id=%s message_id=%s imported=%s",
        connection_id,
        ticket.id,
        message.id,
        is_import,
    )
    if not is_import:
        broadcaster.broadcast_ticket_updated(ticket, action="message")
    return message


class GatewayInboundHandler:
    """Inbound ingestion collaborator used by the import replay.

    Each call owns a short-lived session so no session is held across the
    pauses between replayed messages.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def handle(
        self,
        raw: RawInboundMessage,
        handle: GatewayHandle,
        company_id,
        is_import: bool,
        routing_key_override: str | None = None,
    ):
        with session_scope(self.session_factory) as db:
            message = receive_gateway_message(
                db,
                raw,
                connection_id=handle.connection_id,
                company_id=company_id,
                is_import=is_import,
                routing_key_override=routing_key_override,
            )
            return message.id
