"""
Duplicate detection for gateway messages.

Gateways re-deliver messages (reconnects, history sync overlapping live
traffic), so ingestion must be idempotent per external message id. The
external id is only unique within one connection.
"""

from sqlalchemy.orm import Session

from app.models.crm.ticket import Message


def find_duplicate_message(db: Session, connection_id, external_id: str | None) -> Message | None:
    """
    Return the stored message for ``external_id`` on ``connection_id``, if any.

    Messages without an external id are never considered duplicates.
    """
    if not external_id:
        return None
    return (
        db.query(Message)
        .filter(Message.connection_id == connection_id)
        .filter(Message.external_id == external_id)
        .first()
    )
