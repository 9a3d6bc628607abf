"""WebRTC 피어 연결 관리 모듈.

1:1 영상 통화의 P2P 연결 협상 상태 머신을 구현합니다.
aiortc RTCPeerConnection을 감싸 offer/answer/ICE candidate를 처리하고
원격 미디어와 연결 상태 변화를 상위(CallSession)에 전달합니다.

주요 기능:
    - 역할(Initiator/Responder)에 따른 offer/answer 생성 및 검증
    - remote description 설정 전 도착한 ICE candidate 버퍼링 후 일괄 적용
    - candidate 중복 적용 방지 (candidate별 정확히 1회)
    - 로컬 SDP에 포함된 candidate를 개별 메시지로 추출 (aiortc는 icecandidate 이벤트 없음)
    - 연결 상태 매핑 및 전이 규칙 강제

State Machine:
    NEW ──(local/remote description)──> NEGOTIATING ──(연결/미디어)──> CONNECTED
    CONNECTED <──> DISCONNECTED (ICE 자동 재연결, 애플리케이션 조치 없음)
    모든 상태 ──> FAILED (복구 불가 오류)
    모든 상태 ──> CLOSED (명시적 종료)

    CONNECTED에 한 번 도달하면 NEGOTIATING으로 되돌아가지 않습니다.

Examples:
    >>> initiator = PeerConnectionManager(Role.INITIATOR, local_tracks=media.tracks)
    >>> offer = await initiator.create_offer()
    >>> # ... 시그널링으로 offer 전송, answer 수신 ...
    >>> await initiator.accept_answer(answer)
    >>> await initiator.add_remote_candidate({"candidate": "candidate:...", "sdpMid": "0"})
    >>> await initiator.close()

See Also:
    aiortc Documentation: https://aiortc.readthedocs.io/
"""
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
)
from aiortc.sdp import SessionDescription, candidate_to_sdp

from ..errors import NegotiationError
from ..signaling.messages import (
    candidate_to_payload,
    description_to_payload,
    payload_to_candidate,
    payload_to_description,
)
from .config import connection_config, ice_config

logger = logging.getLogger(__name__)

CandidateKey = Tuple[str, Optional[str], Optional[int]]


class Role(str, Enum):
    """통화 내 역할. 생성 시 고정되며 누가 먼저 offer를 보내는지 결정합니다."""

    INITIATOR = "initiator"
    RESPONDER = "responder"


class PeerState(str, Enum):
    """피어 연결 상태."""

    NEW = "new"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


_TRANSITIONS = {
    PeerState.NEW: {PeerState.NEGOTIATING, PeerState.CONNECTED, PeerState.FAILED, PeerState.CLOSED},
    PeerState.NEGOTIATING: {PeerState.CONNECTED, PeerState.FAILED, PeerState.CLOSED},
    PeerState.CONNECTED: {PeerState.DISCONNECTED, PeerState.FAILED, PeerState.CLOSED},
    PeerState.DISCONNECTED: {PeerState.CONNECTED, PeerState.FAILED, PeerState.CLOSED},
    PeerState.FAILED: {PeerState.CLOSED},
    PeerState.CLOSED: set(),
}


def build_rtc_configuration() -> RTCConfiguration:
    """설정된 STUN/TURN 서버로 RTCConfiguration을 만듭니다."""
    ice_servers = []

    if ice_config.STUN_SERVER_URL:
        ice_servers.append(RTCIceServer(urls=[ice_config.STUN_SERVER_URL]))
        logger.info(f"[WebRTC] STUN 서버 설정: {ice_config.STUN_SERVER_URL}")

    # Google STUN 서버 (백업용)
    for stun_url in ice_config.DEFAULT_STUN_SERVERS:
        ice_servers.append(RTCIceServer(urls=[stun_url]))

    if ice_config.has_turn_server:
        ice_servers.append(RTCIceServer(
            urls=[ice_config.TURN_SERVER_URL],
            username=ice_config.TURN_USERNAME,
            credential=ice_config.TURN_CREDENTIAL
        ))
        logger.info(f"[WebRTC] TURN 서버 설정: {ice_config.TURN_SERVER_URL}")
    else:
        logger.info("[WebRTC] TURN 서버 설정 없음 - STUN만 사용")

    return RTCConfiguration(iceServers=ice_servers)


def _default_pc_factory() -> RTCPeerConnection:
    return RTCPeerConnection(configuration=build_rtc_configuration())


def _candidate_key(candidate: RTCIceCandidate) -> CandidateKey:
    return (candidate_to_sdp(candidate), candidate.sdpMid, candidate.sdpMLineIndex)


async def _invoke(handler: Callable, *args) -> None:
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class PeerConnectionManager:
    """1:1 통화의 RTCPeerConnection과 협상 상태를 관리하는 클래스.

    Attributes:
        role (Role): 이 쪽의 역할
        pc (RTCPeerConnection): 내부 피어 연결
        state (PeerState): 현재 협상/연결 상태
        remote_tracks (Dict[str, MediaStreamTrack]): 종류별 원격 트랙 (재협상 시 통째로 교체)

    Args:
        role: Initiator 또는 Responder
        local_tracks: 송출할 로컬 트랙 (생성 시 연결에 추가)
        pc_factory: RTCPeerConnection 생성 함수 (기본값: 설정된 ICE 서버 사용)
        trickle_local_candidates: 로컬 SDP의 candidate를 개별 송신할지 여부

    Note:
        - 모든 변경은 단일 이벤트 루프에서 일어나므로 잠금이 필요 없음
        - 상태 변경 핸들러는 전이마다 호출되며, 일시적 DISCONNECTED도 전달됨
    """

    def __init__(
        self,
        role: Role,
        local_tracks: Iterable[MediaStreamTrack] = (),
        pc_factory: Optional[Callable[[], Any]] = None,
        trickle_local_candidates: Optional[bool] = None,
    ):
        self.role = Role(role)
        self.pc = (pc_factory or _default_pc_factory)()
        self.state = PeerState.NEW
        self.remote_tracks: Dict[str, MediaStreamTrack] = {}
        self.trickle_local_candidates = (
            connection_config.TRICKLE_LOCAL_CANDIDATES
            if trickle_local_candidates is None else trickle_local_candidates
        )

        self._remote_description_set = False
        self._local_offer_pending = False
        self._ever_connected = False

        # remote description 설정 전 도착한 candidate
        self._pending_candidates: List[Tuple[CandidateKey, RTCIceCandidate]] = []
        self._seen_candidates: Set[CandidateKey] = set()
        self._emitted_local_candidates: Set[CandidateKey] = set()

        self._track_handlers: List[Callable] = []
        self._state_handlers: List[Callable] = []
        self._local_candidate_handlers: List[Callable] = []

        kinds = set()
        for track in local_tracks:
            self.pc.addTrack(track)
            kinds.add(track.kind)

        # offer는 항상 오디오와 비디오를 모두 요청
        if self.role == Role.INITIATOR:
            for kind in ("audio", "video"):
                if kind not in kinds:
                    self.pc.addTransceiver(kind, direction="recvonly")

        self._register_pc_events()
        logger.info(f"[WebRTC] 피어 연결 생성: role={self.role.value}, 로컬 트랙={sorted(kinds)}")

    # ------------------------------------------------------------
    # 핸들러 등록
    # ------------------------------------------------------------

    def on_remote_track(self, handler: Callable[[MediaStreamTrack], Any]) -> None:
        """원격 미디어 트랙 수신 시 호출될 핸들러를 등록합니다."""
        self._track_handlers.append(handler)

    def on_connection_state_change(self, handler: Callable[[PeerState], Any]) -> None:
        """상태 전이마다 호출될 핸들러를 등록합니다."""
        self._state_handlers.append(handler)

    def on_local_candidate(self, handler: Callable[[Dict[str, Any]], Any]) -> None:
        """로컬 ICE candidate (브라우저 RTCIceCandidateInit 형식) 핸들러를 등록합니다."""
        self._local_candidate_handlers.append(handler)

    @property
    def ever_connected(self) -> bool:
        return self._ever_connected

    @property
    def remote_description_set(self) -> bool:
        return self._remote_description_set

    @property
    def pending_candidate_count(self) -> int:
        return len(self._pending_candidates)

    # ------------------------------------------------------------
    # 협상
    # ------------------------------------------------------------

    async def create_offer(self) -> Dict[str, str]:
        """오디오+비디오 offer를 만들어 local description으로 설정하고 반환합니다.

        Returns:
            dict: {"sdp": ..., "type": "offer"}

        Raises:
            NegotiationError: Initiator가 아니거나 NEW 상태가 아닌 경우
        """
        if self.role != Role.INITIATOR:
            raise NegotiationError("Only the initiator may create an offer")
        if self.state != PeerState.NEW:
            raise NegotiationError(f"Cannot create offer in state '{self.state.value}'")

        try:
            offer = await self.pc.createOffer()
            await self.pc.setLocalDescription(offer)
        except Exception as e:
            logger.error(f"[WebRTC] offer 생성/설정 실패: {e}")
            await self._transition(PeerState.FAILED)
            raise NegotiationError(f"Failed to create offer: {e}") from e

        self._local_offer_pending = True
        await self._transition(PeerState.NEGOTIATING)

        candidate_count = self.pc.localDescription.sdp.count("a=candidate:")
        logger.info(f"[WebRTC] offer 생성 완료: 후보수={candidate_count}")
        return description_to_payload(self.pc.localDescription)

    async def accept_offer(self, remote_description: Dict[str, Any]) -> Dict[str, str]:
        """원격 offer를 적용하고 answer를 만들어 반환합니다.

        이미 적용한 동일 offer가 다시 오면 재응답하지 않고 현재 answer를 반환합니다.
        연결된 상태에서 새 offer가 오면 재협상하며 CONNECTED 상태는 유지됩니다.

        Returns:
            dict: {"sdp": ..., "type": "answer"}

        Raises:
            NegotiationError: Responder가 아니거나, 닫힌/실패 상태이거나, offer가 잘못된 경우
        """
        if self.role != Role.RESPONDER:
            raise NegotiationError("Only the responder may accept an offer")
        if self.state in (PeerState.FAILED, PeerState.CLOSED):
            raise NegotiationError(f"Cannot accept offer in state '{self.state.value}'")

        description = self._parse_description(remote_description, "offer")

        current_remote = self.pc.remoteDescription
        if (
            current_remote is not None
            and current_remote.sdp == description.sdp
            and self.pc.signalingState == "stable"
            and self.pc.localDescription is not None
        ):
            logger.info("[WebRTC] 이미 적용된 offer - 재응답 없이 현재 answer 반환")
            return description_to_payload(self.pc.localDescription)

        if self._remote_description_set:
            logger.info(f"[WebRTC] 새 offer 수신 - 재협상 (signaling={self.pc.signalingState})")

        try:
            await self.pc.setRemoteDescription(description)
            self._remote_description_set = True
            await self._flush_pending_candidates()

            answer = await self.pc.createAnswer()
            await self.pc.setLocalDescription(answer)
        except Exception as e:
            logger.error(f"[WebRTC] offer 처리 실패: {e}")
            logger.error(f"[WebRTC] PC 상태: signaling={self.pc.signalingState}, connection={self.pc.connectionState}")
            await self._transition(PeerState.FAILED)
            raise NegotiationError(f"Failed to accept offer: {e}") from e

        if self.state == PeerState.NEW:
            await self._transition(PeerState.NEGOTIATING)

        candidate_count = self.pc.localDescription.sdp.count("a=candidate:")
        logger.info(f"[WebRTC] answer 생성 완료: 후보수={candidate_count}, gathering={self.pc.iceGatheringState}")
        return description_to_payload(self.pc.localDescription)

    async def accept_answer(self, remote_description: Dict[str, Any]) -> None:
        """원격 answer를 적용합니다.

        Raises:
            NegotiationError: Initiator가 아니거나 대기 중인 로컬 offer가 없는 경우
        """
        if self.role != Role.INITIATOR:
            raise NegotiationError("Only the initiator may accept an answer")
        if not self._local_offer_pending or self.pc.signalingState != "have-local-offer":
            raise NegotiationError("No local offer is pending")

        description = self._parse_description(remote_description, "answer")

        try:
            await self.pc.setRemoteDescription(description)
        except Exception as e:
            logger.error(f"[WebRTC] answer 적용 실패: {e}")
            await self._transition(PeerState.FAILED)
            raise NegotiationError(f"Failed to accept answer: {e}") from e

        self._local_offer_pending = False
        self._remote_description_set = True
        logger.info(f"[WebRTC] answer 적용 완료: signaling={self.pc.signalingState}")
        await self._flush_pending_candidates()

    async def add_remote_candidate(self, payload: Dict[str, Any]) -> None:
        """원격 ICE candidate를 추가합니다.

        remote description 설정 전이면 큐에 보관했다가 설정 직후 적용합니다.
        같은 candidate는 몇 번 도착하든 한 번만 적용합니다.
        """
        if self.state == PeerState.CLOSED:
            logger.debug("[WebRTC] 닫힌 연결 - candidate 무시")
            return

        try:
            candidate = payload_to_candidate(payload)
        except ValueError as e:
            logger.warning(f"[WebRTC] candidate 파싱 실패, 무시: {e}")
            return

        if candidate is None:
            logger.debug("[WebRTC] end-of-candidates 수신")
            return

        key = _candidate_key(candidate)
        if key in self._seen_candidates:
            logger.debug(f"[WebRTC] 중복 candidate 무시: {key[0][:40]}")
            return
        self._seen_candidates.add(key)

        if not self._remote_description_set:
            self._pending_candidates.append((key, candidate))
            logger.info(f"[WebRTC] remote description 전 candidate 보관 (대기 {len(self._pending_candidates)}개)")
            return

        await self._apply_candidate(key, candidate)

    async def emit_local_candidates(self) -> int:
        """로컬 SDP에서 gathering된 candidate를 추출해 on_local_candidate 핸들러로 전달합니다.

        aiortc는 setLocalDescription 안에서 gathering을 마치고 icecandidate 이벤트를
        내보내지 않으므로, 브라우저 피어를 위해 SDP의 candidate를 개별로 보냅니다.
        offer/answer를 상대에게 보낸 뒤 호출합니다. 이미 보낸 candidate는 다시 보내지 않습니다.

        Returns:
            int: 새로 전달한 candidate 수
        """
        if not self.trickle_local_candidates or not self._local_candidate_handlers:
            return 0
        local = self.pc.localDescription
        if local is None:
            return 0

        emitted = 0
        parsed = SessionDescription.parse(local.sdp)
        for index, media in enumerate(parsed.media):
            for candidate in media.ice_candidates:
                candidate.sdpMid = media.rtp.muxId
                candidate.sdpMLineIndex = index
                key = _candidate_key(candidate)
                if key in self._emitted_local_candidates:
                    continue
                self._emitted_local_candidates.add(key)
                payload = candidate_to_payload(candidate)
                for handler in list(self._local_candidate_handlers):
                    await _invoke(handler, payload)
                emitted += 1
        if emitted:
            logger.info(f"[WebRTC] 로컬 candidate {emitted}개 전달 ({self.role.value})")
        return emitted

    async def close(self) -> None:
        """피어 연결을 닫습니다. 여러 번 호출해도 안전합니다."""
        if self.state == PeerState.CLOSED:
            return

        try:
            await self.pc.close()
        except Exception as e:
            logger.warning(f"[WebRTC] 피어 연결 종료 중 오류: {e}")

        self._pending_candidates.clear()
        await self._transition(PeerState.CLOSED)
        logger.info(f"[WebRTC] 피어 연결 종료 (role={self.role.value})")

    # ------------------------------------------------------------
    # 내부
    # ------------------------------------------------------------

    def _parse_description(self, payload: Dict[str, Any], expected_type: str):
        try:
            description = payload_to_description(payload)
        except ValueError as e:
            raise NegotiationError(str(e)) from e
        if description.type != expected_type:
            raise NegotiationError(f"Expected '{expected_type}' description, got '{description.type}'")
        return description

    async def _apply_candidate(self, key: CandidateKey, candidate: RTCIceCandidate) -> None:
        try:
            await self.pc.addIceCandidate(candidate)
            logger.info(f"[WebRTC] ICE candidate 적용: type={candidate.type}, mid={candidate.sdpMid}")
        except Exception as e:
            # 재전송되면 다시 시도할 수 있도록
            self._seen_candidates.discard(key)
            logger.warning(f"[WebRTC] ICE candidate 적용 실패: {e}")

    async def _flush_pending_candidates(self) -> None:
        if not self._pending_candidates:
            return
        pending = self._pending_candidates
        self._pending_candidates = []
        logger.info(f"[WebRTC] 보관된 candidate {len(pending)}개 적용")
        for key, candidate in pending:
            await self._apply_candidate(key, candidate)

    async def _transition(self, new_state: PeerState) -> bool:
        if new_state == self.state:
            return False
        if new_state not in _TRANSITIONS[self.state]:
            logger.debug(f"[WebRTC] 허용되지 않은 상태 전이 무시: {self.state.value} -> {new_state.value}")
            return False

        old_state = self.state
        self.state = new_state
        if new_state == PeerState.CONNECTED:
            self._ever_connected = True
        logger.info(f"[WebRTC] 상태 전이 ({self.role.value}): {old_state.value} -> {new_state.value}")

        for handler in list(self._state_handlers):
            try:
                await _invoke(handler, new_state)
            except Exception as e:
                logger.error(f"[WebRTC] 상태 핸들러 오류: {type(e).__name__}: {e}", exc_info=True)
        return True

    def _register_pc_events(self) -> None:
        pc = self.pc

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            """연결 상태 매핑: connected/failed/closed."""
            state = pc.connectionState
            logger.info(f"[WebRTC] connectionState: {state} ({self.role.value})")
            if state == "connected":
                await self._transition(PeerState.CONNECTED)
            elif state == "failed":
                await self._transition(PeerState.FAILED)
            elif state == "closed":
                await self._transition(PeerState.CLOSED)

        @pc.on("iceconnectionstatechange")
        async def on_ice_connection_state_change():
            """ICE disconnected는 일시적 상태로 취급 (ICE가 스스로 재연결)."""
            state = pc.iceConnectionState
            logger.info(f"[WebRTC] ICE 상태: {state} ({self.role.value})")
            if state == "disconnected" and self.state == PeerState.CONNECTED:
                await self._transition(PeerState.DISCONNECTED)
            elif state in ("connected", "completed") and self.state == PeerState.DISCONNECTED:
                await self._transition(PeerState.CONNECTED)
            elif state == "failed":
                await self._transition(PeerState.FAILED)

        @pc.on("track")
        async def on_track(track: MediaStreamTrack):
            """원격 트랙 수신. 같은 종류의 기존 트랙은 교체됩니다."""
            logger.info(f"[WebRTC] 원격 {track.kind} 트랙 수신 ({self.role.value})")
            self.remote_tracks[track.kind] = track

            @track.on("ended")
            async def on_ended():
                logger.info(f"[WebRTC] 원격 {track.kind} 트랙 종료")

            for handler in list(self._track_handlers):
                try:
                    await _invoke(handler, track)
                except Exception as e:
                    logger.error(f"[WebRTC] 트랙 핸들러 오류: {type(e).__name__}: {e}", exc_info=True)

            # 원격 미디어 수신 = 협상 완료
            if self.pc.remoteDescription is not None and self.state in (PeerState.NEW, PeerState.NEGOTIATING):
                await self._transition(PeerState.CONNECTED)
