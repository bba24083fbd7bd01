from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

from app.config import settings
from app.logging import get_logger
from app.websocket.events import EventType, WebSocketEvent
from app.websocket.manager import CHANNEL_PREFIX, get_connection_manager

if TYPE_CHECKING:
    from redis import Redis

    from app.models.crm.ticket import Ticket

logger = get_logger(__name__)

_connect_attempted = False
_redis_client: Redis | None = None


def company_channel(company_id) -> str:
    return f"company-{company_id}-mainchannel"


def connection_channel(company_id) -> str:
    return f"company-{company_id}-connection"


def _handle_task_exception(task: asyncio.Task):
    """Callback to log exceptions from background tasks."""
    try:
        exc = task.exception()
        if exc:
            logger.error("websocket_task_error error=%s", exc, exc_info=exc)
    except asyncio.CancelledError:
        pass


def _get_redis() -> Redis | None:
    """Sync Redis client for publishing from Celery workers, created on first use."""
    global _redis_client
    if _redis_client is None:
        try:
            import redis

            _redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        except Exception as exc:
            logger.debug("broadcast_redis_unavailable error=%s", exc)
            return None
    return _redis_client


def _ensure_manager_connected(manager) -> None:
    global _connect_attempted
    if _connect_attempted or manager.is_connected:
        return
    _connect_attempted = True
    try:
        task = asyncio.create_task(manager.connect())
        task.add_done_callback(_handle_task_exception)
    except Exception as exc:
        logger.warning("websocket_manager_connect_error error=%s", exc)


def _publish_from_worker(channel: str, ws_event: WebSocketEvent) -> None:
    """Publish to the channel every API process listens on; no local sockets here."""
    client = _get_redis()
    if client is None:
        return
    envelope = json.dumps({"channel": channel, "event": ws_event.model_dump(mode="json")})
    client.publish(f"{CHANNEL_PREFIX}{channel}", envelope)


def publish(channel: str, event: EventType, data: dict[str, Any], topic: str | None = None) -> None:
    """Best-effort publish of an event to a channel. Never raises."""
    try:
        ws_event = WebSocketEvent(event=event, data=data, topic=topic)
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            _publish_from_worker(channel, ws_event)
        else:
            manager = get_connection_manager()
            _ensure_manager_connected(manager)
            task = asyncio.create_task(manager.broadcast_to_channel(channel, ws_event))
            task.add_done_callback(_handle_task_exception)
        logger.debug("broadcast_published channel=%s event=%s topic=%s", channel, event, topic)
    except Exception as exc:
        logger.warning("broadcast_publish_error channel=%s event=%s error=%s", channel, event, exc)


def broadcast_ticket_updated(ticket: Ticket, action: str = "update") -> None:
    publish(
        company_channel(ticket.company_id),
        EventType.TICKET_UPDATED,
        {
            "action": action,
            "ticket_id": str(ticket.id),
            "connection_id": str(ticket.connection_id) if ticket.connection_id else None,
            "contact_id": str(ticket.contact_id) if ticket.contact_id else None,
            "status": ticket.status.value if ticket.status else None,
        },
        topic=f"company-{ticket.company_id}-ticket",
    )


def broadcast_ticket_deleted(company_id, ticket_id) -> None:
    publish(
        company_channel(company_id),
        EventType.TICKET_DELETED,
        {"action": "delete", "ticket_id": str(ticket_id)},
        topic=f"company-{company_id}-ticket",
    )


def broadcast_connection_deleted(company_id, connection_id) -> None:
    publish(
        company_channel(company_id),
        EventType.CONNECTION_DELETED,
        {"action": "delete", "connection_id": str(connection_id)},
        topic=f"company-{company_id}-connection",
    )
