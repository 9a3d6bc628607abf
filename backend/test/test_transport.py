"""Tests for signaling transports."""

import pytest
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import ConnectionError as RedisConnectionError

from callcore.errors import TransportOpenError
from callcore.signaling import transport as transport_module
from callcore.signaling.messages import MessageKind
from callcore.signaling.transport import (
    InMemoryTransport,
    RedisTransport,
    SignalingTransport,
    WebSocketTransport,
    open_transport,
)
from conftest import settle

CHANNEL = "call-u1-u2-17"


async def _open(relay, local_id, channel=CHANNEL):
    return await open_transport(channel, local_id, backend="memory", relay=relay)


class TestReceiveFiltering:
    """Test recipient and echo filtering."""

    async def test_only_addressed_recipient_receives(self, relay):
        """Test A -> B is handled by B and never by C."""
        a = await _open(relay, "A")
        b = await _open(relay, "B")
        c = await _open(relay, "C")
        b_handler = MagicMock()
        c_handler = MagicMock()
        b.on_message(MessageKind.OFFER, b_handler)
        c.on_message(MessageKind.OFFER, c_handler)

        await a.send(MessageKind.OFFER, {"sdp": "x", "type": "offer"}, to="B")
        await settle(relay)

        b_handler.assert_called_once()
        assert b_handler.call_args[0][0].sender == "A"
        c_handler.assert_not_called()

    async def test_self_echo_dropped(self, relay):
        """Test the sender never handles its own broadcast."""
        a = await _open(relay, "A")
        handler = MagicMock()
        a.on_message(MessageKind.OFFER, handler)

        await a.send(MessageKind.OFFER, {"sdp": "x", "type": "offer"}, to="A")
        await settle(relay)

        handler.assert_not_called()

    async def test_malformed_message_dropped(self, relay):
        """Test frames that are not signaling messages are ignored."""
        b = await _open(relay, "B")
        handler = MagicMock()
        b.on_message(MessageKind.OFFER, handler)

        relay.publish(CHANNEL, {"hello": "world"})
        await settle(relay)

        handler.assert_not_called()

    async def test_async_handler_awaited(self, relay):
        a = await _open(relay, "A")
        b = await _open(relay, "B")
        handler = AsyncMock()
        b.on_message(MessageKind.CANDIDATE, handler)

        await a.send(MessageKind.CANDIDATE, {"candidate": ""}, to="B")
        await settle(relay)

        handler.assert_awaited_once()

    async def test_handler_error_does_not_stop_delivery(self, relay):
        """Test a failing handler does not block later messages."""
        a = await _open(relay, "A")
        b = await _open(relay, "B")
        handler = MagicMock(side_effect=[RuntimeError("boom"), None])
        b.on_message(MessageKind.CANDIDATE, handler)

        await a.send(MessageKind.CANDIDATE, {"candidate": ""}, to="B")
        await a.send(MessageKind.CANDIDATE, {"candidate": ""}, to="B")
        await settle(relay)

        assert handler.call_count == 2

    async def test_other_channel_isolated(self, relay):
        a = await _open(relay, "A", channel="call-A-B-1")
        b = await _open(relay, "B", channel="call-A-B-2")
        handler = MagicMock()
        b.on_message(MessageKind.OFFER, handler)

        await a.send(MessageKind.OFFER, {"sdp": "x", "type": "offer"}, to="B")
        await settle(relay)

        handler.assert_not_called()


class TestSequenceCheck:
    """Test per-sender FIFO checking."""

    def _wire(self, kind, seq, sender="A", to="B"):
        return {"type": kind, "payload": {}, "from": sender, "to": to, "seq": seq}

    async def test_sequence_numbers_per_kind(self, relay):
        a = await _open(relay, "A")
        await a.send(MessageKind.OFFER, {}, to="B")
        await a.send(MessageKind.CANDIDATE, {}, to="B")
        await a.send(MessageKind.CANDIDATE, {}, to="B")

        assert [w["seq"] for w in relay.published] == [1, 1, 2]

    async def test_duplicate_offer_dropped(self, relay):
        """Test a replayed offer with an old sequence number is dropped."""
        b = await _open(relay, "B")
        handler = MagicMock()
        b.on_message(MessageKind.OFFER, handler)

        await b._dispatch(self._wire("offer", 1))
        await b._dispatch(self._wire("offer", 1))

        handler.assert_called_once()

    async def test_out_of_order_candidate_delivered(self, relay):
        """Test candidates are delivered regardless of order."""
        b = await _open(relay, "B")
        handler = MagicMock()
        b.on_message(MessageKind.CANDIDATE, handler)

        await b._dispatch(self._wire("ice-candidate", 2))
        await b._dispatch(self._wire("ice-candidate", 1))

        assert handler.call_count == 2

    async def test_unsequenced_messages_pass(self, relay):
        """Test browser messages without seq are never dropped."""
        b = await _open(relay, "B")
        handler = MagicMock()
        b.on_message(MessageKind.OFFER, handler)

        await b._dispatch(self._wire("offer", 0))
        await b._dispatch(self._wire("offer", 0))

        assert handler.call_count == 2


class TestLifecycle:
    """Test open/close semantics."""

    async def test_close_is_idempotent(self, relay):
        a = await _open(relay, "A")
        await a.close()
        await a.close()

        assert a.closed
        assert CHANNEL not in relay.channels

    async def test_close_unopened_is_safe(self, relay):
        transport = InMemoryTransport(CHANNEL, "A", relay)
        await transport.close()
        assert transport.closed

    async def test_reopen_after_close_fails(self, relay):
        a = await _open(relay, "A")
        await a.close()
        with pytest.raises(TransportOpenError):
            await a.open()

    async def test_send_after_close_is_noop(self, relay):
        a = await _open(relay, "A")
        await a.close()
        await a.send(MessageKind.OFFER, {}, to="B")
        assert relay.published == []

    async def test_close_from_handler(self, relay):
        """Test closing inside a handler ends the reader without hanging flush."""
        a = await _open(relay, "A")
        b = await _open(relay, "B")

        async def handler(message):
            await b.close()

        b.on_message(MessageKind.HANGUP, handler)
        await a.send(MessageKind.HANGUP, {}, to="B")
        await a.send(MessageKind.HANGUP, {}, to="B")
        await settle(relay)

        assert b.closed

    async def test_connect_failure_wrapped(self):
        class BrokenTransport(SignalingTransport):
            async def _connect(self):
                raise ConnectionRefusedError("refused")

        with pytest.raises(TransportOpenError):
            await BrokenTransport(CHANNEL, "A").open()

    async def test_publish_failure_is_swallowed(self, relay):
        """Test send is fire-and-forget."""
        a = await _open(relay, "A")
        a._publish = AsyncMock(side_effect=ConnectionResetError("gone"))
        await a.send(MessageKind.OFFER, {}, to="B")


class TestBackends:
    """Test backend-specific configuration."""

    def test_websocket_url(self):
        transport = WebSocketTransport("call u1", "u1", url="ws://relay/ws/signaling/", token="t 1")
        assert transport.url == "ws://relay/ws/signaling/call%20u1?token=t+1"

    def test_websocket_url_without_token(self):
        transport = WebSocketTransport(CHANNEL, "u1", url="ws://relay/ws/signaling", token="")
        assert transport.url == f"ws://relay/ws/signaling/{CHANNEL}"

    def test_redis_channel_name(self):
        transport = RedisTransport(CHANNEL, "u1", redis_url="redis://localhost:6379")
        assert transport.redis_channel == f"signaling:{CHANNEL}"

    async def test_memory_requires_relay(self):
        with pytest.raises(ValueError):
            await open_transport(CHANNEL, "u1", backend="memory")

    async def test_unknown_backend(self):
        with pytest.raises(ValueError):
            await open_transport(CHANNEL, "u1", backend="carrier-pigeon")


class TestRedisFailures:
    """Test Redis transport cleanup when the server is unreachable."""

    def _client(self, subscribe_error=None):
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock(side_effect=subscribe_error)
        pubsub.unsubscribe = AsyncMock(side_effect=RedisConnectionError("not connected"))
        pubsub.aclose = AsyncMock()
        client = MagicMock()
        client.pubsub.return_value = pubsub
        client.aclose = AsyncMock()
        return client, pubsub

    async def test_failed_subscribe_closes_client(self, monkeypatch):
        client, pubsub = self._client(subscribe_error=RedisConnectionError("Connection refused"))
        monkeypatch.setattr(transport_module.redis, "from_url", MagicMock(return_value=client))
        transport = RedisTransport(CHANNEL, "u1", redis_url="redis://localhost:6379")

        with pytest.raises(TransportOpenError):
            await transport.open()

        pubsub.aclose.assert_awaited_once()
        client.aclose.assert_awaited_once()
        assert transport.client is None
        assert not transport.opened

    async def test_read_loop_connection_error_logged(self, caplog):
        transport = RedisTransport(CHANNEL, "u1", redis_url="redis://localhost:6379")

        async def listen():
            raise RedisConnectionError("Connection reset by peer")
            yield

        transport._pubsub = MagicMock()
        transport._pubsub.listen = listen

        await transport._read_loop()

        assert "Redis" in caplog.text
