"""Messaging gateway collaborator.

The gateway session itself (socket, QR login, reconnects) lives outside this
service. What the import pipeline needs from it is a handle to pass to the
inbound handler and the history-sync messages it has buffered.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Protocol

from app.logging import get_logger
from app.schemas.crm.imports import RawInboundMessage

logger = get_logger(__name__)


@dataclass(frozen=True)
class GatewayHandle:
    connection_id: str
    session: Any = None


class GatewayClient(Protocol):
    def get_connection_handle(self, connection_id: str) -> GatewayHandle: ...

    def get_buffered_messages(self, connection_id: str) -> list[RawInboundMessage]: ...


class BufferedGatewayClient:
    """In-process gateway registry fed by the session listener.

    The listener registers a handle when a session comes up and pushes every
    history-sync event it receives; the import pipeline drains the buffer.
    """

    def __init__(self) -> None:
        self._handles: dict[str, GatewayHandle] = {}
        self._buffers: dict[str, list[RawInboundMessage]] = {}
        self._lock = threading.Lock()

    def register_handle(self, connection_id: str, session: Any = None) -> GatewayHandle:
        handle = GatewayHandle(connection_id=str(connection_id), session=session)
        with self._lock:
            self._handles[str(connection_id)] = handle
        logger.info("gateway_handle_registered connection_id=%s", connection_id)
        return handle

    def remove_handle(self, connection_id: str) -> None:
        with self._lock:
            self._handles.pop(str(connection_id), None)
            self._buffers.pop(str(connection_id), None)
        logger.info("gateway_handle_removed connection_id=%s", connection_id)

    def push_history(self, connection_id: str, messages: list[RawInboundMessage | dict]) -> int:
        parsed = [m if isinstance(m, RawInboundMessage) else RawInboundMessage.model_validate(m) for m in messages]
        with self._lock:
            self._buffers.setdefault(str(connection_id), []).extend(parsed)
        logger.debug("gateway_history_buffered connection_id=%s count=%d", connection_id, len(parsed))
        return len(parsed)

    def get_connection_handle(self, connection_id: str) -> GatewayHandle:
        """Handle for a connection, registering a bare one on first use.

        Replay only needs the connection id. A session registered by the
        listener rides along when there is one.
        """
        key = str(connection_id)
        with self._lock:
            handle = self._handles.get(key)
            if handle is None:
                handle = self._handles[key] = GatewayHandle(connection_id=key)
        return handle

    def get_buffered_messages(self, connection_id: str) -> list[RawInboundMessage]:
        with self._lock:
            return list(self._buffers.pop(str(connection_id), []))
