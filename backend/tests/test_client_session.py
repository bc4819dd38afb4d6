"""Tests for the client chat session against a scripted transport."""
import asyncio
import json
from datetime import datetime, timezone

import pytest
from websockets.datastructures import Headers
from websockets.exceptions import InvalidMessage, InvalidStatus
from websockets.http11 import Response

from exchange_chat.chat.schemas import ChatMessage, message_received_event
from exchange_chat.client import ChatClientSession
from exchange_chat.config import AppConfig, ChatSettings, ClientSettings
from exchange_chat.errors import ConnectionLost, InvalidArgument, TransientStoreFailure

T0 = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeTransport:
    """Stands in for a websockets connection."""

    def __init__(self):
        self.sent = []
        self.inbox = asyncio.Queue()
        self.closed = False

    async def send(self, raw):
        self.sent.append(json.loads(raw))

    async def recv(self):
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        return json.dumps(item)

    async def close(self):
        self.closed = True
        self.drop()

    def push(self, frame):
        self.inbox.put_nowait(frame)

    def push_history(self, messages=(), is_recovery=False):
        self.push({
            "type": "history",
            "exchangeId": "ex1",
            "messages": [m.model_dump(mode="json") for m in messages],
            "isRecovery": is_recovery,
        })

    def drop(self):
        self.inbox.put_nowait(ConnectionResetError("connection reset"))


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class Connector:
    """Hands out prepared transports in order; raises OSError when out.

    An exception in the list is raised for that attempt instead.
    """

    def __init__(self, *transports):
        self.transports = list(transports)
        self.urls = []

    async def __call__(self, url):
        self.urls.append(url)
        if not self.transports:
            raise OSError("connection refused")
        item = self.transports.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_session(connector, **kwargs):
    kwargs.setdefault("reconnect_base_delay", 0.001)
    kwargs.setdefault("reconnect_max_delay", 0.01)
    return ChatClientSession("ws://chat.local/ws/chat", "tok", "ex1", "alice", connect=connector, **kwargs)


class TestSending:
    @pytest.mark.asyncio
    async def test_optimistic_send_is_confirmed(self):
        transport = FakeTransport()
        connector = Connector(transport)
        session = make_session(connector)
        received = []
        session.on_message(received.append)

        await session.start()
        await wait_until(lambda: transport.sent)
        assert connector.urls == ["ws://chat.local/ws/chat?token=tok"]
        assert transport.sent[0] == {"type": "join", "exchangeId": "ex1"}

        entry = session.send_message("hello")
        assert [e.optimistic for e in session.timeline.entries()] == [True]

        transport.push_history()
        await session.wait_joined(timeout=1)
        await wait_until(lambda: len(transport.sent) == 2)
        frame = transport.sent[1]
        assert frame["type"] == "send_message"
        assert frame["content"] == "hello"
        assert frame["clientId"] == entry.id

        message = ChatMessage(exchangeId="ex1", senderId="alice", content="hello", clientId=entry.id)
        transport.push(message_received_event(message))
        await wait_until(lambda: received)

        entries = session.timeline.entries()
        assert len(entries) == 1
        assert entries[0].optimistic is False
        assert entries[0].id == message.id
        await session.close()

    @pytest.mark.asyncio
    async def test_rejected_send_is_retracted(self):
        transport = FakeTransport()
        session = make_session(Connector(transport))
        errors = []
        session.on_error(errors.append)

        await session.start()
        transport.push_history()
        await session.wait_joined(timeout=1)
        entry = session.send_message("x" * 10)
        await wait_until(lambda: len(transport.sent) == 2)

        transport.push({"type": "error", "code": "invalid_argument", "message": "too long", "clientId": entry.id})
        await wait_until(lambda: errors)

        assert isinstance(errors[0], InvalidArgument)
        assert errors[0].client_id == entry.id
        assert session.timeline.outstanding() == []
        await session.close()

    @pytest.mark.asyncio
    async def test_blank_message_is_refused_locally(self):
        session = make_session(Connector(FakeTransport()))
        await session.start()

        with pytest.raises(InvalidArgument):
            session.send_message("   ", images=[])
        assert len(session.timeline) == 0
        await session.close()


class TestReconnect:
    @pytest.mark.asyncio
    async def test_rejoin_uses_newest_confirmed_cursor(self):
        first, second = FakeTransport(), FakeTransport()
        connector = Connector(first, second)
        session = make_session(connector)
        await session.start()

        seen = ChatMessage(exchangeId="ex1", senderId="bob", content="hi", createdAt=T0)
        first.push_history([seen])
        await session.wait_joined(timeout=1)
        entry = session.send_message("in flight")
        await wait_until(lambda: len(first.sent) == 2)

        first.drop()
        await wait_until(lambda: second.sent)
        assert second.sent[0] == {"type": "join", "exchangeId": "ex1", "since": T0.isoformat()}

        persisted = ChatMessage(exchangeId="ex1", senderId="alice", content="in flight", clientId=entry.id)
        second.push_history([persisted], is_recovery=True)
        await session.wait_joined(timeout=1)

        assert session.timeline.outstanding() == []
        assert [e.content for e in session.timeline.entries()] == ["hi", "in flight"]
        await session.close()

    @pytest.mark.asyncio
    async def test_unconfirmed_sends_fail_after_replay(self):
        first, second = FakeTransport(), FakeTransport()
        session = make_session(Connector(first, second))
        errors = []
        session.on_error(errors.append)
        await session.start()

        first.push_history()
        await session.wait_joined(timeout=1)
        entry = session.send_message("lost")
        await wait_until(lambda: len(first.sent) == 2)

        first.drop()
        await wait_until(lambda: second.sent)
        second.push_history(is_recovery=True)
        await wait_until(lambda: errors)

        assert isinstance(errors[0], ConnectionLost)
        assert errors[0].client_id == entry.id
        assert session.timeline.outstanding() == []
        await session.close()

    @pytest.mark.asyncio
    async def test_queued_sends_fail_when_connection_drops(self):
        first, second = FakeTransport(), FakeTransport()
        session = make_session(Connector(first, second))
        errors = []
        session.on_error(errors.append)
        await session.start()
        await wait_until(lambda: first.sent)

        # Not joined yet, so the frame never leaves the queue
        entry = session.send_message("queued")
        first.drop()
        await wait_until(lambda: errors)

        assert isinstance(errors[0], ConnectionLost)
        assert errors[0].client_id == entry.id
        await wait_until(lambda: second.sent)
        assert second.sent == [{"type": "join", "exchangeId": "ex1"}]
        await session.close()

    @pytest.mark.asyncio
    async def test_gives_up_after_bounded_attempts(self):
        connector = Connector()
        session = make_session(connector, reconnect_attempts=2)
        errors = []
        session.on_error(errors.append)

        await session.start()
        await wait_until(lambda: session.fatal_error is not None)

        assert len(connector.urls) == 3
        assert isinstance(errors[-1], ConnectionLost)
        with pytest.raises(ConnectionLost):
            session.send_message("anyone there?")
        await session.close()

    @pytest.mark.asyncio
    async def test_forbidden_join_is_not_retried(self):
        transport = FakeTransport()
        connector = Connector(transport, FakeTransport())
        session = make_session(connector)
        await session.start()

        transport.push({"type": "error", "code": "forbidden", "message": "not a participant"})
        transport.drop()
        await wait_until(lambda: session.fatal_error is not None)
        await asyncio.sleep(0.05)

        assert session.fatal_error.code == "forbidden"
        assert len(connector.urls) == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_failed_join_reconnects_and_fails_queued_sends(self):
        first, second = FakeTransport(), FakeTransport()
        connector = Connector(first, second)
        session = make_session(connector)
        errors = []
        session.on_error(errors.append)
        await session.start()
        await wait_until(lambda: first.sent)

        entry = session.send_message("queued")
        first.push({"type": "error", "code": "transient_store_failure", "message": "Message store unavailable"})
        await wait_until(lambda: second.sent)

        assert first.closed
        assert second.sent == [{"type": "join", "exchangeId": "ex1"}]
        assert isinstance(errors[0], TransientStoreFailure)
        assert any(isinstance(e, ConnectionLost) and e.client_id == entry.id for e in errors)
        assert session.fatal_error is None

        second.push_history()
        await session.wait_joined(timeout=1)
        assert session.connected
        await session.close()

    @pytest.mark.asyncio
    async def test_repeated_join_failures_give_up(self):
        transports = [FakeTransport() for _ in range(3)]
        for transport in transports:
            transport.push({"type": "error", "code": "transient_store_failure", "message": "down"})
        connector = Connector(*transports)
        session = make_session(connector, reconnect_attempts=2)
        await session.start()

        await wait_until(lambda: session.fatal_error is not None)
        assert isinstance(session.fatal_error, ConnectionLost)
        assert len(connector.urls) == 3
        await session.close()

    @pytest.mark.asyncio
    async def test_interrupted_handshake_is_retried(self):
        transport = FakeTransport()
        connector = Connector(InvalidMessage("did not receive a valid HTTP response"), transport)
        session = make_session(connector)
        await session.start()

        await wait_until(lambda: transport.sent)
        assert len(connector.urls) == 2
        assert session.fatal_error is None
        transport.push_history()
        await session.wait_joined(timeout=1)
        await session.close()

    @pytest.mark.asyncio
    async def test_server_error_status_is_retried(self):
        transport = FakeTransport()
        bad_gateway = InvalidStatus(Response(502, "Bad Gateway", Headers()))
        connector = Connector(bad_gateway, transport)
        session = make_session(connector)
        await session.start()

        await wait_until(lambda: transport.sent)
        assert session.fatal_error is None
        await session.close()

    @pytest.mark.asyncio
    async def test_rejected_token_is_not_retried(self):
        connector = Connector(InvalidStatus(Response(403, "Forbidden", Headers())), FakeTransport())
        session = make_session(connector)
        await session.start()

        await wait_until(lambda: session.fatal_error is not None)
        await asyncio.sleep(0.05)
        assert session.fatal_error.code == "unauthenticated"
        assert len(connector.urls) == 1
        await session.close()


class TestTyping:
    @pytest.mark.asyncio
    async def test_emit_typing_is_throttled(self):
        transport = FakeTransport()
        clock = FakeClock()
        session = make_session(Connector(transport), clock=clock, typing_debounce=0.5)
        await session.start()
        assert session.emit_typing() is False

        transport.push_history()
        await session.wait_joined(timeout=1)
        assert session.emit_typing() is True
        clock.now = 0.3
        assert session.emit_typing() is False
        clock.now = 0.6
        assert session.emit_typing() is True

        await wait_until(lambda: len(transport.sent) == 3)
        assert transport.sent[1] == {"type": "typing", "exchangeId": "ex1"}
        await session.close()

    @pytest.mark.asyncio
    async def test_peer_typing_decays_locally(self):
        transport = FakeTransport()
        clock = FakeClock()
        session = make_session(Connector(transport), clock=clock, typing_window=2.0)
        events = []
        session.on_typing(events.append)
        await session.start()
        transport.push_history()
        await session.wait_joined(timeout=1)

        transport.push({"type": "typing_changed", "exchangeId": "ex1", "userId": "bob", "isTyping": True})
        await wait_until(lambda: events)
        assert session.is_peer_typing("bob")

        clock.now = 2.5
        assert not session.is_peer_typing("bob")
        await session.close()


def test_from_config_uses_configured_timings():
    config = AppConfig(
        chat=ChatSettings(typing_window_seconds=3.0, typing_debounce_seconds=1.0),
        client=ClientSettings(reconnect_attempts=7, reconnect_base_delay=0.25),
    )
    session = ChatClientSession.from_config("ws://chat.local/ws/chat", "tok", "ex1", "alice", config)

    assert session.reconnect_attempts == 7
    assert session.reconnect_base_delay == 0.25
    assert session.typing_window == 3.0
    assert session.typing_debounce == 1.0
