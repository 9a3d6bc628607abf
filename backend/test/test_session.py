"""Tests for CallSession end-to-end over the in-memory relay."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from callcore.call.session import CallSession, CallState, make_channel_name
from callcore.errors import ConnectivityFailed, PermissionDenied, TransportOpenError
from callcore.signaling.transport import open_transport
from callcore.webrtc.media import MediaAcquirer
from callcore.webrtc.peer_manager import PeerConnectionManager, PeerState, Role
from conftest import settle

CHANNEL = "call-u1-u2-17"


def _session(relay, fake_pc_factory, local_id, remote_id, role, **kwargs):
    async def transport_factory(channel_name, user_id):
        return await open_transport(channel_name, user_id, backend="memory", relay=relay)

    def peer_factory(peer_role, media):
        return PeerConnectionManager(
            peer_role,
            local_tracks=media.tracks,
            pc_factory=fake_pc_factory,
            trickle_local_candidates=True,
        )

    kwargs.setdefault("media_acquirer", MediaAcquirer(backend="synthetic"))
    kwargs.setdefault("connect_timeout", 0)
    return CallSession(
        local_user_id=local_id,
        remote_user_id=remote_id,
        channel_name=CHANNEL,
        role=role,
        transport_factory=transport_factory,
        peer_factory=peer_factory,
        **kwargs,
    )


async def _connected_pair(relay, fake_pc_factory, **kwargs):
    a = _session(relay, fake_pc_factory, "u1", "u2", Role.INITIATOR, **kwargs)
    b = _session(relay, fake_pc_factory, "u2", "u1", Role.RESPONDER, **kwargs)
    await b.start()
    await a.start()
    await settle(relay)
    return a, b


class TestChannelName:
    """Test channel naming."""

    def test_order_independent(self):
        assert make_channel_name("u2", "u1", 17) == CHANNEL
        assert make_channel_name("u1", "u2", 17) == CHANNEL

    def test_epoch_distinguishes_calls(self):
        assert make_channel_name("u1", "u2", 17) != make_channel_name("u1", "u2", 18)


class TestCallScenario:
    """Test the initiator/responder call flow."""

    async def test_offer_answer_exchange(self, relay, fake_pc_factory):
        """Test one offer u1->u2, one answer u2->u1, both sides connected."""
        a, b = await _connected_pair(relay, fake_pc_factory)

        offers = relay.sent("offer")
        answers = relay.sent("answer")
        assert len(offers) == 1
        assert (offers[0]["from"], offers[0]["to"]) == ("u1", "u2")
        assert len(answers) == 1
        assert (answers[0]["from"], answers[0]["to"]) == ("u2", "u1")

        assert a.state == CallState.CONNECTED
        assert b.state == CallState.CONNECTED
        assert a.status_text == "Connected"
        assert set(a.remote_tracks) == {"audio", "video"}
        assert set(b.remote_tracks) == {"audio", "video"}

        await a.end()
        await b.end()

    async def test_offer_precedes_candidates(self, relay, fake_pc_factory):
        a, b = await _connected_pair(relay, fake_pc_factory)

        kinds = [w["type"] for w in relay.published if w["from"] == "u1"]
        assert kinds[0] == "offer"
        assert kinds.count("ice-candidate") == 2
        # 상대방 candidate는 양쪽 모두 적용됨
        assert len(a.peer.pc.applied_candidates) == 2
        assert len(b.peer.pc.applied_candidates) == 2

        await a.end()
        await b.end()

    async def test_remote_track_callback(self, relay, fake_pc_factory):
        on_remote_track = MagicMock()
        a = _session(relay, fake_pc_factory, "u1", "u2", Role.INITIATOR, on_remote_track=on_remote_track)
        b = _session(relay, fake_pc_factory, "u2", "u1", Role.RESPONDER)
        await b.start()
        await a.start()
        await settle(relay)

        kinds = sorted(call.args[0].kind for call in on_remote_track.call_args_list)
        assert kinds == ["audio", "video"]

        await a.end()
        await b.end()

    async def test_state_change_callback(self, relay, fake_pc_factory):
        states = []
        a = _session(relay, fake_pc_factory, "u1", "u2", Role.INITIATOR, on_state_change=states.append)
        b = _session(relay, fake_pc_factory, "u2", "u1", Role.RESPONDER)
        await b.start()
        await a.start()
        await settle(relay)
        await a.end()

        assert states == [CallState.CONNECTED, CallState.ENDED]
        await b.end()

    async def test_third_party_offer_ignored(self, relay, fake_pc_factory):
        """Test a responder ignores offers from anyone but its peer."""
        b = _session(relay, fake_pc_factory, "u2", "u1", Role.RESPONDER)
        await b.start()
        intruder = await open_transport(CHANNEL, "u3", backend="memory", relay=relay)

        await intruder.send("offer", {"sdp": "v=0\r\n", "type": "offer"}, to="u2")
        await settle(relay)

        assert relay.sent("answer") == []
        assert b.state == CallState.CONNECTING
        await intruder.close()
        await b.end()


class TestStartFailures:
    """Test fatal start errors."""

    async def test_permission_denied(self, relay, fake_pc_factory):
        """Test denied media surfaces one error, ends once and never opens signaling."""
        on_error = MagicMock()
        on_ended = MagicMock()
        transport_factory = AsyncMock()
        acquirer = MediaAcquirer(opener=MagicMock(side_effect=PermissionError("denied")))
        session = CallSession(
            local_user_id="u1",
            remote_user_id="u2",
            channel_name=CHANNEL,
            role=Role.INITIATOR,
            on_ended=on_ended,
            on_error=on_error,
            media_acquirer=acquirer,
            transport_factory=transport_factory,
        )

        await session.start()

        on_error.assert_called_once()
        assert isinstance(on_error.call_args[0][0], PermissionDenied)
        on_ended.assert_called_once_with("start_failed")
        transport_factory.assert_not_called()
        assert session.state == CallState.ENDED

    async def test_transport_open_failure_releases_media(self, relay, fake_pc_factory):
        on_error = MagicMock()
        session = _session(relay, fake_pc_factory, "u1", "u2", Role.INITIATOR, on_error=on_error)

        session.transport_factory = AsyncMock(side_effect=TransportOpenError("connection refused"))
        await session.start()

        on_error.assert_called_once()
        assert on_error.call_args[0][0].user_message.startswith("Failed to start call")
        assert session.local_media.released
        assert session.peer.state == PeerState.CLOSED
        assert session.ended

    async def test_preview_callback_failure_releases_media(self, relay, fake_pc_factory):
        """Test an unexpected start error still tears down and ends once."""
        on_error = MagicMock()
        on_ended = MagicMock()
        session = _session(
            relay,
            fake_pc_factory,
            "u1",
            "u2",
            Role.INITIATOR,
            on_error=on_error,
            on_ended=on_ended,
            on_local_preview=MagicMock(side_effect=RuntimeError("preview widget crashed")),
        )

        await session.start()

        on_error.assert_called_once()
        assert on_error.call_args[0][0].user_message == "Failed to start call."
        on_ended.assert_called_once_with("start_failed")
        assert session.local_media.released
        assert session.peer is None
        assert relay.sent("offer") == []

    async def test_peer_factory_failure_releases_media(self, relay, fake_pc_factory):
        on_error = MagicMock()
        session = _session(relay, fake_pc_factory, "u1", "u2", Role.INITIATOR, on_error=on_error)
        session.peer_factory = MagicMock(side_effect=RuntimeError("addTrack failed"))

        await session.start()

        on_error.assert_called_once()
        assert session.local_media.released
        assert session.ended

    async def test_same_user_rejected(self):
        with pytest.raises(ValueError):
            CallSession(local_user_id="u1", remote_user_id="u1", channel_name=CHANNEL, role=Role.INITIATOR)

    async def test_start_twice(self, relay, fake_pc_factory):
        session = _session(relay, fake_pc_factory, "u1", "u2", Role.RESPONDER)
        await session.start()
        with pytest.raises(RuntimeError):
            await session.start()
        await session.end()


class TestTeardown:
    """Test end() semantics."""

    async def test_end_twice_single_callback(self, relay, fake_pc_factory):
        on_ended = MagicMock()
        a, b = await _connected_pair(relay, fake_pc_factory)
        a.on_ended = on_ended

        await a.end()
        await a.end()

        on_ended.assert_called_once_with("local_hangup")
        assert a.status_text == "Call ended"
        await b.end()

    async def test_end_releases_everything(self, relay, fake_pc_factory):
        a, b = await _connected_pair(relay, fake_pc_factory)
        await a.end()

        assert a.local_media.released
        assert a.peer.state == PeerState.CLOSED
        assert a.transport.closed
        await b.end()

    async def test_end_before_start(self):
        on_ended = MagicMock()
        session = CallSession(
            local_user_id="u1",
            remote_user_id="u2",
            channel_name=CHANNEL,
            role=Role.INITIATOR,
            on_ended=on_ended,
            media_acquirer=MediaAcquirer(backend="synthetic"),
        )
        await session.end()
        on_ended.assert_called_once()

    async def test_remote_hangup_ends_peer(self, relay, fake_pc_factory):
        """Test hanging up on one side ends the other without a reply."""
        b_ended = MagicMock()
        a, b = await _connected_pair(relay, fake_pc_factory)
        b.on_ended = b_ended

        await a.end()
        await settle(relay)

        b_ended.assert_called_once_with("remote_hangup")
        assert len(relay.sent("hangup")) == 1
        assert b.local_media.released

    async def test_context_manager(self, relay, fake_pc_factory):
        b = _session(relay, fake_pc_factory, "u2", "u1", Role.RESPONDER)
        async with b:
            assert b.transport.opened
        assert b.ended


    async def test_end_during_offer_creation_is_silent(self, relay, fake_pc_factory):
        """Test hanging up while the offer is being set surfaces no error."""
        on_error = MagicMock()
        on_ended = MagicMock()
        gate = asyncio.Event()
        a = _session(
            relay,
            lambda: fake_pc_factory(local_description_gate=gate),
            "u1",
            "u2",
            Role.INITIATOR,
            on_error=on_error,
            on_ended=on_ended,
        )

        start_task = asyncio.create_task(a.start())

        async def _wait_for_gated_call():
            while not (
                fake_pc_factory.created
                and "setLocalDescription" in fake_pc_factory.created[0].calls
            ):
                await asyncio.sleep(0.001)

        await asyncio.wait_for(_wait_for_gated_call(), 1)
        assert "setLocalDescription" in fake_pc_factory.created[0].calls

        await a.end()
        gate.set()
        await start_task

        on_error.assert_not_called()
        on_ended.assert_called_once_with("local_hangup")
        assert a.state == CallState.ENDED
        assert relay.sent("offer") == []


class TestToggles:
    """Test mute/camera toggles."""

    async def test_toggle_does_not_renegotiate(self, relay, fake_pc_factory):
        a, b = await _connected_pair(relay, fake_pc_factory)
        published_before = len(relay.published)
        calls_before = list(a.peer.pc.calls)

        assert a.toggle_audio() is False
        assert a.toggle_video() is False
        await settle(relay)

        assert len(relay.published) == published_before
        assert a.peer.pc.calls == calls_before
        assert a.local_media.audio_track.enabled is False
        assert a.local_media.video_track.enabled is False

        assert a.toggle_audio() is True
        await a.end()
        await b.end()

    async def test_toggle_before_start(self):
        session = CallSession(local_user_id="u1", remote_user_id="u2", channel_name=CHANNEL, role=Role.INITIATOR)
        assert session.toggle_audio() is True
        assert session.toggle_video() is True


class TestConnectivity:
    """Test connection failure handling."""

    async def test_peer_failure_surfaces_error(self, relay, fake_pc_factory):
        on_error = MagicMock()
        a, b = await _connected_pair(relay, fake_pc_factory, on_error=on_error)

        a.peer.pc.set_connection_state("failed")
        await settle(relay)

        assert a.state == CallState.FAILED
        assert a.status_text == "Connection failed"
        assert isinstance(on_error.call_args[0][0], ConnectivityFailed)
        assert not a.ended
        await a.end()
        await b.end()

    async def test_transient_disconnect_keeps_connected(self, relay, fake_pc_factory):
        a, b = await _connected_pair(relay, fake_pc_factory)

        a.peer.pc.set_ice_connection_state("disconnected")
        await settle(relay)
        assert a.state == CallState.CONNECTED
        assert a.reconnecting
        assert a.status_text == "Reconnecting..."

        a.peer.pc.set_ice_connection_state("connected")
        await settle(relay)
        assert not a.reconnecting
        await a.end()
        await b.end()

    async def test_connect_timeout(self, relay, fake_pc_factory):
        """Test CONNECTING longer than the timeout moves to FAILED."""
        on_error = MagicMock()
        a = _session(relay, fake_pc_factory, "u1", "u2", Role.INITIATOR, connect_timeout=0.05, on_error=on_error)
        await a.start()
        await asyncio.sleep(0.1)

        assert a.state == CallState.FAILED
        assert isinstance(on_error.call_args[0][0], ConnectivityFailed)
        await a.end()
