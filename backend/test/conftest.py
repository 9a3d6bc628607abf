"""Pytest configuration and fixtures."""

import asyncio
import os

import pytest
from aiortc import MediaStreamTrack, RTCSessionDescription
from aiortc.mediastreams import MediaStreamError
from pyee.asyncio import AsyncIOEventEmitter

from callcore.signaling.transport import InMemoryRelay


def pytest_configure(config):
    """Configure pytest."""
    os.environ.setdefault("LOG_LEVEL", "WARNING")


def make_sdp(base_port: int, host: str = "192.168.0.10") -> str:
    """Minimal two-section SDP with one host candidate per media section."""
    lines = [
        "v=0",
        "o=- 1 1 IN IP4 0.0.0.0",
        "s=-",
        "t=0 0",
        "m=audio 9 UDP/TLS/RTP/SAVPF 111",
        "c=IN IP4 0.0.0.0",
        "a=mid:0",
        f"a=candidate:1 1 udp 2130706431 {host} {base_port} typ host",
        "m=video 9 UDP/TLS/RTP/SAVPF 96",
        "c=IN IP4 0.0.0.0",
        "a=mid:1",
        f"a=candidate:2 1 udp 2130706431 {host} {base_port + 2} typ host",
    ]
    return "\r\n".join(lines) + "\r\n"


def candidate_payload(port: int, mid: str = "0", index: int = 0) -> dict:
    """Browser-style RTCIceCandidateInit payload."""
    return {
        "candidate": f"candidate:9 1 udp 2130706431 10.0.0.5 {port} typ host",
        "sdpMid": mid,
        "sdpMLineIndex": index,
    }


class FakeRemoteTrack(MediaStreamTrack):
    """Remote track stand-in emitted by FakePeerConnection."""

    def __init__(self, kind: str):
        super().__init__()
        self.kind = kind

    async def recv(self):
        raise MediaStreamError


class FakePeerConnection(AsyncIOEventEmitter):
    """In-process RTCPeerConnection double.

    Tracks descriptions and signaling state like aiortc does and emits a remote
    audio and video track once both descriptions are applied.
    """

    def __init__(self, auto_connect: bool = True, fail_on=(), local_description_gate: asyncio.Event = None):
        super().__init__()
        self.local_description_gate = local_description_gate
        self.auto_connect = auto_connect
        self.fail_on = set(fail_on)
        self.localDescription = None
        self.remoteDescription = None
        self.signalingState = "stable"
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.iceGatheringState = "new"
        self.tracks = []
        self.transceivers = []
        self.applied_candidates = []
        self.calls = []
        self._tracks_emitted = False

    def _record(self, name: str):
        self.calls.append(name)
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    def addTrack(self, track):
        self.tracks.append(track)

    def addTransceiver(self, kind, direction="sendrecv"):
        self.transceivers.append((kind, direction))

    async def createOffer(self):
        self._record("createOffer")
        return RTCSessionDescription(sdp=make_sdp(50000), type="offer")

    async def createAnswer(self):
        self._record("createAnswer")
        if self.signalingState != "have-remote-offer":
            raise RuntimeError("createAnswer without remote offer")
        return RTCSessionDescription(sdp=make_sdp(60000), type="answer")

    async def setLocalDescription(self, description):
        self._record("setLocalDescription")
        if self.local_description_gate is not None:
            await self.local_description_gate.wait()
            if self.signalingState == "closed":
                raise RuntimeError("InvalidStateError: connection closed")
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"
        self.iceGatheringState = "complete"
        self._maybe_connect()

    async def setRemoteDescription(self, description):
        self._record("setRemoteDescription")
        if description.type == "answer" and self.signalingState != "have-local-offer":
            raise RuntimeError("answer without local offer")
        self.remoteDescription = description
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"
        self._maybe_connect()

    async def addIceCandidate(self, candidate):
        self._record("addIceCandidate")
        self.applied_candidates.append(candidate)

    async def close(self):
        self.calls.append("close")
        if self.connectionState == "closed":
            return
        self.connectionState = "closed"
        self.signalingState = "closed"
        self.emit("connectionstatechange")

    def set_connection_state(self, state: str):
        self.connectionState = state
        self.emit("connectionstatechange")

    def set_ice_connection_state(self, state: str):
        self.iceConnectionState = state
        self.emit("iceconnectionstatechange")

    def _maybe_connect(self):
        if not self.auto_connect or self._tracks_emitted:
            return
        if self.signalingState != "stable" or self.localDescription is None or self.remoteDescription is None:
            return
        self._tracks_emitted = True
        for kind in ("audio", "video"):
            self.emit("track", FakeRemoteTrack(kind))


class RecordingRelay(InMemoryRelay):
    """InMemoryRelay that keeps every published wire message."""

    def __init__(self):
        super().__init__()
        self.published = []

    def publish(self, channel_name, wire):
        self.published.append(dict(wire))
        super().publish(channel_name, wire)

    def sent(self, kind: str):
        return [w for w in self.published if w["type"] == kind]


async def settle(relay: InMemoryRelay = None, rounds: int = 10):
    """Let relayed messages and emitter tasks run to completion."""
    for _ in range(rounds):
        if relay is not None:
            await relay.flush()
        await asyncio.sleep(0)


@pytest.fixture
def relay():
    return RecordingRelay()


@pytest.fixture
def fake_pc_factory():
    """Factory that remembers every FakePeerConnection it builds."""
    created = []

    def factory(**kwargs):
        pc = FakePeerConnection(**kwargs)
        created.append(pc)
        return pc

    factory.created = created
    return factory
