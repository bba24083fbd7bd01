from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from app.config import settings
from app.logging import get_logger
from app.websocket.events import EventType, WebSocketEvent

logger = get_logger(__name__)

CHANNEL_PREFIX = "crm_ws:"


class ConnectionManager:
    """
    Fans CRM events out to WebSocket observers.

    Every process subscribes to ``crm_ws:*`` on Redis and delivers what it
    receives to its own sockets, so a publish from a Celery worker or another
    API replica reaches every observer. Without Redis, delivery is local only.

    Channel subscriptions: channel -> {id(websocket): WebSocket}
    """

    def __init__(self, redis_url: str | None = None) -> None:
        self._redis_url = redis_url or settings.redis_url
        self._channels: dict[str, dict[int, WebSocket]] = {}
        self._users: dict[int, str] = {}
        self._redis_client: Any | None = None
        self._pubsub: Any | None = None
        self._listener_task: asyncio.Task | None = None

    @property
    def is_connected(self) -> bool:
        return self._redis_client is not None

    async def connect(self) -> None:
        try:
            import redis.asyncio as aioredis

            client = aioredis.from_url(self._redis_url, decode_responses=True)
            pubsub = client.pubsub()
            await pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
        except Exception as exc:
            logger.warning("websocket_manager_redis_failed redis=%s error=%s", self._redis_url, exc)
            return
        self._redis_client = client
        self._pubsub = pubsub
        self._listener_task = asyncio.create_task(self._listen(pubsub))
        logger.info("websocket_manager_connected redis=%s", self._redis_url)

    async def disconnect(self) -> None:
        if self._listener_task:
            self._listener_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener_task
            self._listener_task = None
        if self._pubsub:
            await self._pubsub.punsubscribe()
            await self._pubsub.close()
        if self._redis_client:
            await self._redis_client.close()
        self._redis_client = None
        self._pubsub = None
        logger.info("websocket_manager_disconnected")

    async def _listen(self, pubsub) -> None:
        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if not message or message["type"] != "pmessage":
                    continue
                try:
                    envelope = json.loads(message["data"])
                    await self._deliver(envelope["channel"], envelope["event"])
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("websocket_redis_message_invalid channel=%s error=%s", message["channel"], exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("websocket_redis_listener_error error=%s", exc)

    async def _deliver(self, channel: str, event_data: dict) -> None:
        for websocket in list(self._channels.get(channel, {}).values()):
            await self._send(websocket, event_data)

    async def _send(self, websocket: WebSocket, event_data: dict) -> None:
        try:
            if websocket.client_state == WebSocketState.CONNECTED:
                await websocket.send_json(event_data)
        except Exception:
            self.unregister(websocket)

    async def register(self, websocket: WebSocket, user_id: str) -> None:
        self._users[id(websocket)] = user_id
        ack = WebSocketEvent(event=EventType.CONNECTION_ACK, data={"user_id": user_id, "status": "connected"})
        await websocket.send_json(ack.model_dump(mode="json"))
        logger.debug("websocket_registered user_id=%s", user_id)

    def unregister(self, websocket: WebSocket) -> None:
        user_id = self._users.pop(id(websocket), None)
        for channel in list(self._channels):
            self.unsubscribe(websocket, channel)
        logger.debug("websocket_unregistered user_id=%s", user_id)

    def subscribe(self, websocket: WebSocket, channel: str) -> None:
        self._channels.setdefault(channel, {})[id(websocket)] = websocket
        logger.debug("websocket_subscribed user_id=%s channel=%s", self._users.get(id(websocket)), channel)

    def unsubscribe(self, websocket: WebSocket, channel: str) -> None:
        sockets = self._channels.get(channel)
        if sockets is None:
            return
        sockets.pop(id(websocket), None)
        if not sockets:
            del self._channels[channel]

    async def send_heartbeat(self, websocket: WebSocket) -> None:
        heartbeat = WebSocketEvent(event=EventType.HEARTBEAT, data={"status": "ok"})
        await self._send(websocket, heartbeat.model_dump(mode="json"))

    async def broadcast_to_channel(self, channel: str, event: WebSocketEvent) -> None:
        """Publish through Redis, or deliver locally when Redis is unavailable."""
        event_data = event.model_dump(mode="json")
        if self._redis_client:
            try:
                envelope = json.dumps({"channel": channel, "event": event_data})
                await self._redis_client.publish(f"{CHANNEL_PREFIX}{channel}", envelope)
                return
            except Exception as exc:
                logger.warning("websocket_broadcast_redis_error channel=%s error=%s", channel, exc)
        await self._deliver(channel, event_data)


_manager: ConnectionManager | None = None


def get_connection_manager() -> ConnectionManager:
    """Get the singleton ConnectionManager instance."""
    global _manager
    if _manager is None:
        _manager = ConnectionManager()
    return _manager
