"""Tests for gateway inbound ingestion shared by live traffic and imports."""

from datetime import UTC, datetime

from app.models.crm.contact import Contact
from app.models.crm.enums import TicketStatus
from app.models.crm.ticket import Message, Ticket
from app.schemas.crm.imports import RawInboundMessage
from app.services.crm.gateway import GatewayHandle
from app.services.crm.inbox.inbound import GatewayInboundHandler, receive_gateway_message
from app.websocket.events import EventType

ADDRESS = "5511988887777@s.whatsapp.net"


def _raw(external_id, body="hello", **kwargs):
    kwargs.setdefault("routing_key", ADDRESS)
    return RawInboundMessage(
        external_id=external_id,
        timestamp=datetime(2024, 3, 1, 9, 30, tzinfo=UTC),
        payload={"body": body} if body else {},
        **kwargs,
    )


def test_live_message_creates_contact_and_pending_ticket(db_session, connection, broadcasts):
    message = receive_gateway_message(
        db_session, _raw("live-1", push_name="Joana"), connection.id, connection.company_id
    )

    ticket = db_session.get(Ticket, message.ticket_id)
    assert ticket.status == TicketStatus.pending
    assert ticket.imported_at is None
    assert ticket.last_message == "hello"
    contact = db_session.get(Contact, ticket.contact_id)
    assert contact.address == ADDRESS
    assert contact.name == "Joana"
    assert not message.is_imported
    assert [e["data"]["action"] for e in broadcasts if e["event"] == EventType.TICKET_UPDATED] == ["message"]


def test_imported_message_tags_new_ticket_and_stays_silent(db_session, connection, broadcasts):
    message = receive_gateway_message(
        db_session, _raw("imp-1"), connection.id, connection.company_id, is_import=True
    )

    ticket = db_session.get(Ticket, message.ticket_id)
    assert ticket.imported_at is not None
    assert message.is_imported
    assert broadcasts == []


def test_imported_message_joins_existing_open_ticket(db_session, connection, create_contact, create_ticket):
    contact = create_contact(address=ADDRESS)
    existing = create_ticket(connection, contact, status=TicketStatus.open)

    message = receive_gateway_message(
        db_session, _raw("imp-2"), connection.id, connection.company_id, is_import=True
    )

    assert message.ticket_id == existing.id
    db_session.refresh(existing)
    assert existing.imported_at is None


def test_redelivered_message_is_stored_once(db_session, connection):
    first = receive_gateway_message(db_session, _raw("dup-1"), connection.id, connection.company_id)
    second = receive_gateway_message(
        db_session, _raw("dup-1", body="edited"), connection.id, connection.company_id, is_import=True
    )

    assert second.id == first.id
    assert db_session.query(Message).filter(Message.connection_id == connection.id).count() == 1


def test_same_external_id_on_other_connection_is_not_duplicate(db_session, connection, other_connection):
    first = receive_gateway_message(db_session, _raw("shared"), connection.id, connection.company_id)
    second = receive_gateway_message(db_session, _raw("shared"), other_connection.id, other_connection.company_id)

    assert first.id != second.id
    assert first.ticket_id != second.ticket_id


def test_quoted_message_is_linked(db_session, connection):
    original = receive_gateway_message(db_session, _raw("q-1"), connection.id, connection.company_id)
    reply = receive_gateway_message(
        db_session,
        _raw("q-2", body="re: hello", quoted_external_id="q-1"),
        connection.id,
        connection.company_id,
    )

    assert reply.quoted_message_id == original.id
    assert reply.ticket_id == original.ticket_id


def test_own_message_does_not_rename_contact(db_session, connection):
    receive_gateway_message(
        db_session, _raw("own-1", from_me=True, push_name="Support desk"), connection.id, connection.company_id
    )

    contact = db_session.query(Contact).filter(Contact.address == ADDRESS).one()
    assert contact.name == ADDRESS


def test_routing_key_override_redirects_contact(db_session, connection):
    message = receive_gateway_message(
        db_session,
        _raw("ovr-1"),
        connection.id,
        connection.company_id,
        routing_key_override="5511900001111@s.whatsapp.net",
    )

    ticket = db_session.get(Ticket, message.ticket_id)
    assert db_session.get(Contact, ticket.contact_id).address == "5511900001111@s.whatsapp.net"


def test_handler_uses_own_session(db_session, session_factory, connection):
    handler = GatewayInboundHandler(session_factory)

    message_id = handler.handle(
        _raw("h-1"), GatewayHandle(str(connection.id)), connection.company_id, is_import=True
    )

    stored = db_session.get(Message, message_id)
    assert stored.external_id == "h-1"
    assert stored.is_imported
