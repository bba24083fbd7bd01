"""Tests for best-effort event publishing from API processes and Celery workers."""

import asyncio
import json
import uuid

import pytest
from starlette.websockets import WebSocketState

from app.websocket import broadcaster
from app.websocket.broadcaster import publish as real_publish
from app.websocket.events import EventType
from app.websocket.manager import ConnectionManager


class FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    def publish(self, channel, message):
        if self.fail:
            raise ConnectionError("redis went away")
        self.published.append((channel, json.loads(message)))
        return 1


class FakeWebSocket:
    client_state = WebSocketState.CONNECTED

    def __init__(self):
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)


def test_publish_without_event_loop_goes_through_redis(monkeypatch):
    client = FakeRedis()
    monkeypatch.setattr(broadcaster, "_get_redis", lambda: client)
    company_id = uuid.uuid4()
    channel = broadcaster.company_channel(company_id)

    real_publish(channel, EventType.IMPORT_MESSAGES, {"action": "refresh"}, topic=f"importMessages-{company_id}")

    assert len(client.published) == 1
    redis_channel, envelope = client.published[0]
    assert redis_channel == f"crm_ws:{channel}"
    assert envelope["channel"] == channel
    assert envelope["event"]["event"] == EventType.IMPORT_MESSAGES.value
    assert envelope["event"]["data"] == {"action": "refresh"}
    assert envelope["event"]["topic"] == f"importMessages-{company_id}"


def test_publish_without_redis_is_dropped_quietly(monkeypatch):
    monkeypatch.setattr(broadcaster, "_get_redis", lambda: None)

    real_publish("company-x-mainchannel", EventType.TICKET_DELETED, {"action": "delete"})


def test_publish_never_raises_when_redis_fails(monkeypatch):
    monkeypatch.setattr(broadcaster, "_get_redis", lambda: FakeRedis(fail=True))

    real_publish("company-x-mainchannel", EventType.TICKET_DELETED, {"action": "delete"})


@pytest.mark.asyncio
async def test_publish_inside_event_loop_delivers_to_local_subscribers(monkeypatch):
    manager = ConnectionManager(redis_url="redis://unused")
    monkeypatch.setattr(broadcaster, "get_connection_manager", lambda: manager)
    monkeypatch.setattr(broadcaster, "_ensure_manager_connected", lambda _manager: None)
    websocket = FakeWebSocket()
    manager.subscribe(websocket, "company-x-mainchannel")

    real_publish("company-x-mainchannel", EventType.TICKET_UPDATED, {"action": "update"})
    for _ in range(3):
        await asyncio.sleep(0)

    assert [sent["event"] for sent in websocket.sent] == [EventType.TICKET_UPDATED.value]
    assert websocket.sent[0]["data"] == {"action": "update"}


def test_event_types_are_the_ones_published():
    assert {event.value for event in EventType} == {
        "import_messages",
        "ticket_updated",
        "ticket_deleted",
        "connection_deleted",
        "connection_ack",
        "heartbeat",
    }
