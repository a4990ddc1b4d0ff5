"""
Tests for notification dispatch and the telemetry registry.

Tests:
- Fire-and-forget delivery and failure isolation
- Webhook sink
- Connection registry authorization, registration and broadcast
"""

import json
from uuid import uuid4

import httpx
import pytest

from clinicflow.notifications.dispatcher import (
    NotificationDispatcher,
    NotificationEvent,
    NotificationType,
    WebhookSink,
)
from clinicflow.notifications.messages import package_ready_message, state_change_message
from clinicflow.telemetry.registry import ConnectionRegistry, TelemetrySink
from clinicflow.workflow.states import ClientState

from conftest import RecordingSink


class FailingSink:
    name = "failing"

    async def send(self, event):
        raise RuntimeError("sink down")


class FakeConnection:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.closed_with = None
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise ConnectionResetError("gone")
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.closed_with = code


def make_event(**payload) -> NotificationEvent:
    return NotificationEvent(type=NotificationType.TRANSITION, referral_id=uuid4(), payload=payload)


class TestDispatcher:
    """Tests for NotificationDispatcher."""

    @pytest.mark.asyncio
    async def test_notify_does_not_wait(self):
        sink = RecordingSink()
        dispatcher = NotificationDispatcher([sink])

        dispatcher.notify(make_event(to_status="staging"))

        assert sink.events == []
        assert dispatcher.pending == 1
        await dispatcher.drain()
        assert len(sink.events) == 1
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_affect_others(self):
        sink = RecordingSink()
        dispatcher = NotificationDispatcher([FailingSink(), sink])

        dispatcher.notify(make_event())
        await dispatcher.drain()

        assert dispatcher.failures == 1
        assert len(sink.events) == 1

    def test_loggable_payload_drops_sensitive_keys(self):
        event = make_event(package_id="p1", download_url="https://signed", message={"body": "x"})
        assert event.loggable_payload() == {"package_id": "p1"}


class TestWebhookSink:
    """Tests for WebhookSink."""

    @pytest.mark.asyncio
    async def test_posts_event_json(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = WebhookSink("https://hooks.example.com/events", client=client, api_key="secret")
        event = make_event(to_status="staging")

        await sink.send(event)
        await sink.close()

        assert received[0].headers["Authorization"] == "Bearer secret"
        assert received[0].headers["X-Source"] == "clinicflow"
        body = json.loads(received[0].content)
        assert body["type"] == "transition"
        assert body["referral_id"] == str(event.referral_id)

    @pytest.mark.asyncio
    async def test_http_error_is_counted_by_dispatcher(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        dispatcher = NotificationDispatcher([WebhookSink("https://hooks.example.com/events", client=client)])

        dispatcher.notify(make_event())
        await dispatcher.drain()

        assert dispatcher.failures == 1


class TestMessages:
    """Tests for message templates."""

    def test_state_change_message(self, sample_referral):
        message = state_change_message(sample_referral, ClientState.PROSPECTIVE, ClientState.PENDING)

        assert message.to == "jordan@example.com"
        assert "Previous Status: Pre-Staging" in message.body
        assert "New Status: Pending Assignment" in message.body

    def test_package_ready_message(self, sample_referral):
        message = package_ready_message(
            "intake@clinic.example", "Referral-abc", "https://signed/url", sample_referral.created_at
        )
        assert message.subject == "Intake package ready: Referral-abc"
        assert "https://signed/url" in message.body


class TestConnectionRegistry:
    """Tests for the telemetry connection registry."""

    def test_authorize(self):
        registry = ConnectionRegistry(token="s3cret")
        assert registry.authorize("s3cret")
        assert not registry.authorize("wrong")
        assert not registry.authorize(None)

    def test_no_token_rejects_everyone(self):
        assert not ConnectionRegistry().authorize("anything")

    @pytest.mark.asyncio
    async def test_register_sends_ack(self):
        registry = ConnectionRegistry(token="t")
        connection = FakeConnection()

        client_id = await registry.register(connection)

        assert registry.count == 1
        assert connection.sent[0]["type"] == "connection_ack"
        assert connection.sent[0]["clientId"] == client_id

        await registry.unregister(client_id)
        assert registry.count == 0

    @pytest.mark.asyncio
    async def test_broadcast_drops_dead_clients(self):
        registry = ConnectionRegistry(token="t")
        alive = FakeConnection()
        dead = FakeConnection()
        await registry.register(alive)
        await registry.register(dead)
        dead.fail = True

        sent = await registry.broadcast({"type": "ping"})

        assert sent == 1
        assert registry.count == 1
        assert alive.sent[-1] == {"type": "ping"}

    @pytest.mark.asyncio
    async def test_close_all(self):
        registry = ConnectionRegistry(token="t")
        connection = FakeConnection()
        await registry.register(connection)

        await registry.close_all()

        assert registry.count == 0
        assert connection.closed_with == 1001

    @pytest.mark.asyncio
    async def test_telemetry_sink_strips_sensitive_payload(self):
        registry = ConnectionRegistry(token="t")
        connection = FakeConnection()
        await registry.register(connection)

        await TelemetrySink(registry).send(make_event(package_id="p1", download_url="https://signed"))

        broadcast = connection.sent[-1]
        assert broadcast["type"] == "transition"
        assert broadcast["payload"] == {"package_id": "p1"}
