"""WebSocket endpoint for CRM observers (import progress, ticket refreshes)."""

from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.logging import get_logger
from app.websocket.broadcaster import company_channel, connection_channel
from app.websocket.events import EventType, InboundMessage, InboundMessageType, WebSocketEvent
from app.websocket.manager import get_connection_manager

logger = get_logger(__name__)

router = APIRouter(tags=["websocket"])


@router.websocket("/ws/crm")
async def crm_websocket(websocket: WebSocket, user_id: str, company_id: str):
    """
    Client messages:
    - {type: "subscribe", channel: "company-<id>-connection"}
    - {type: "unsubscribe", channel: "..."}
    - {type: "ping"}

    The company main channel is subscribed on connect. Clients may only
    subscribe to channels of their own company.
    """
    await websocket.accept()
    manager = get_connection_manager()
    await manager.register(websocket, user_id)
    manager.subscribe(websocket, company_channel(company_id))

    allowed_prefix = f"company-{company_id}-"
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = InboundMessage.model_validate_json(raw)
            except ValidationError:
                logger.warning("crm_websocket_invalid_message user_id=%s", user_id)
                continue

            if message.type == InboundMessageType.PING:
                await manager.send_heartbeat(websocket)
                continue

            channel = message.channel or connection_channel(company_id)
            if not channel.startswith(allowed_prefix):
                logger.warning("crm_websocket_channel_denied user_id=%s channel=%s", user_id, channel)
                continue

            if message.type == InboundMessageType.SUBSCRIBE:
                manager.subscribe(websocket, channel)
                ack = WebSocketEvent(event=EventType.CONNECTION_ACK, data={"subscribed_to": channel})
                await websocket.send_json(ack.model_dump(mode="json"))
            elif message.type == InboundMessageType.UNSUBSCRIBE:
                manager.unsubscribe(websocket, channel)
    except WebSocketDisconnect:
        logger.debug("crm_websocket_disconnected user_id=%s", user_id)
    except Exception as exc:
        logger.warning("crm_websocket_error user_id=%s error=%s", user_id, exc)
    finally:
        manager.unregister(websocket)
