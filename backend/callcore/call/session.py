"""영상 통화 세션 컨트롤러.

호스트 UI가 사용하는 단일 진입/종료 지점입니다. 미디어 획득, 시그널링 전송,
피어 연결 관리자를 하나의 통화로 묶고 음소거/화면 끄기/종료를 제공합니다.

주요 기능:
    - start(): 미디어 획득 → 프리뷰 → 피어 연결 생성 → 채널 참가 → 핸들러 등록 → (Initiator) offer 및 로컬 candidate 송신
    - toggle_audio()/toggle_video(): 로컬 트랙 enabled 플래그만 변경 (재협상 없음)
    - end(): 역순 정리 (전송 → 피어 연결 → 로컬 미디어) 후 on_ended 정확히 1회 호출
    - Connecting 상태 타임아웃 감시 (초과 시 Failed)
    - hangup 메시지로 상대방 종료를 즉시 감지

CallState:
    CONNECTING ──> CONNECTED
    CONNECTING, CONNECTED ──> FAILED (연결 실패, 타임아웃, 협상 오류)
    모든 상태 ──> ENDED (end()는 어느 상태에서든 호출 가능)

    일시적 DISCONNECTED는 CONNECTED로 취급합니다 (로그만 남김).

Examples:
    >>> session = CallSession(
    ...     local_user_id="u1",
    ...     remote_user_id="u2",
    ...     channel_name=make_channel_name("u1", "u2", 17),
    ...     role=Role.INITIATOR,
    ...     on_ended=lambda reason: print("ended", reason),
    ... )
    >>> await session.start()
    >>> session.toggle_audio()
    >>> await session.end()
"""
import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from aiortc import MediaStreamTrack

from ..errors import (
    CallError,
    ConnectivityFailed,
    MediaAcquisitionError,
    NegotiationError,
    TransientDisconnect,
    TransportOpenError,
)
from ..signaling.messages import MessageKind, SignalingMessage
from ..signaling.transport import SignalingTransport, open_transport
from ..webrtc.config import connection_config
from ..webrtc.media import LocalMediaHandle, MediaAcquirer, MediaConstraints
from ..webrtc.peer_manager import PeerConnectionManager, PeerState, Role

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str, str], Awaitable[SignalingTransport]]
PeerFactory = Callable[[Role, LocalMediaHandle], PeerConnectionManager]


class CallState(str, Enum):
    """호스트 UI에 노출되는 통화 상태."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    ENDED = "ended"

    @property
    def status_text(self) -> str:
        return _STATUS_TEXT[self]


_STATUS_TEXT = {
    CallState.CONNECTING: "Connecting…",
    CallState.CONNECTED: "Connected",
    CallState.FAILED: "Connection failed",
    CallState.ENDED: "Call ended",
}


def make_channel_name(user_a: str, user_b: str, epoch: Any) -> str:
    """두 사용자와 통화 회차로 고유한 채널 이름을 만듭니다.

    사용자 순서와 관계없이 같은 이름이 나오며, 회차가 다르면 이전 통화와 겹치지 않습니다.

    Examples:
        >>> make_channel_name("u2", "u1", 17)
        'call-u1-u2-17'
    """
    low, high = sorted([user_a, user_b])
    return f"call-{low}-{high}-{epoch}"


async def _default_transport_factory(channel_name: str, local_id: str) -> SignalingTransport:
    return await open_transport(channel_name, local_id)


def _default_peer_factory(role: Role, media: LocalMediaHandle) -> PeerConnectionManager:
    return PeerConnectionManager(role, local_tracks=media.tracks)


async def _invoke(callback: Optional[Callable], *args) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class CallSession:
    """활성 통화 1건을 소유하는 세션 컨트롤러.

    로컬 미디어, 피어 연결 관리자, 시그널링 전송은 모두 이 세션이 단독 소유하며
    다른 세션과 공유하지 않습니다.

    Attributes:
        local_user_id (str): 로컬 사용자 ID
        remote_user_id (str): 상대 사용자 ID
        channel_name (str): 양쪽이 공유하는 시그널링 채널 이름
        role (Role): 생성 시 고정되는 역할
        state (CallState): 현재 통화 상태
        local_media (Optional[LocalMediaHandle]): 로컬 미디어 (프리뷰/송출)
        remote_tracks (dict): 종류별 원격 트랙
        audio_enabled (bool): 마이크 송출 여부
        video_enabled (bool): 카메라 송출 여부

    Args:
        on_ended: 통화 종료 시 정확히 1회 호출 (reason 인자)
        on_error: 사용자에게 보여줄 오류 (CallError) 발생 시 호출
        on_state_change: CallState 변경 시 호출
        on_remote_track: 원격 트랙 수신 시 호출 (렌더링용)
        on_local_preview: 로컬 미디어 획득 직후 호출 (프리뷰용)
        media_acquirer: 미디어 획득기 (기본값: 설정값 기반)
        transport_factory: (channel_name, local_id) -> 열린 전송
        peer_factory: (role, local_media) -> PeerConnectionManager
        connect_timeout: CONNECTING 최대 유지 시간 (초, 0이면 감시 안 함)
        constraints: 캡처 제약 조건
    """

    def __init__(
        self,
        local_user_id: str,
        remote_user_id: str,
        channel_name: str,
        role: Role,
        on_ended: Optional[Callable[[str], Any]] = None,
        on_error: Optional[Callable[[CallError], Any]] = None,
        on_state_change: Optional[Callable[[CallState], Any]] = None,
        on_remote_track: Optional[Callable[[MediaStreamTrack], Any]] = None,
        on_local_preview: Optional[Callable[[LocalMediaHandle], Any]] = None,
        media_acquirer: Optional[MediaAcquirer] = None,
        transport_factory: Optional[TransportFactory] = None,
        peer_factory: Optional[PeerFactory] = None,
        connect_timeout: Optional[float] = None,
        constraints: Optional[MediaConstraints] = None,
    ):
        if local_user_id == remote_user_id:
            raise ValueError("local and remote user ids must differ")

        self.local_user_id = local_user_id
        self.remote_user_id = remote_user_id
        self.channel_name = channel_name
        self.role = Role(role)
        self.state = CallState.CONNECTING
        self.audio_enabled = True
        self.video_enabled = True
        self.end_reason: Optional[str] = None
        # 일시적 연결 끊김 (UI 표시용, 오류 아님)
        self.reconnecting = False

        self.on_ended = on_ended
        self.on_error = on_error
        self.on_state_change = on_state_change
        self.on_remote_track = on_remote_track
        self.on_local_preview = on_local_preview

        self.media_acquirer = media_acquirer or MediaAcquirer()
        self.transport_factory = transport_factory or _default_transport_factory
        self.peer_factory = peer_factory or _default_peer_factory
        self.connect_timeout = (
            connection_config.ICE_CONNECTION_TIMEOUT if connect_timeout is None else connect_timeout
        )
        self.constraints = constraints

        # 세션 소유 리소스
        self.local_media: Optional[LocalMediaHandle] = None
        self.peer: Optional[PeerConnectionManager] = None
        self.transport: Optional[SignalingTransport] = None

        self._started = False
        self._ended = False
        self._error_surfaced = False
        self._watchdog: Optional[asyncio.Task] = None

    # ------------------------------------------------------------
    # 공개 API
    # ------------------------------------------------------------

    @property
    def status_text(self) -> str:
        """호스트 UI 표시용 상태 문자열. 일시적 끊김 중에는 재연결 안내를 표시합니다."""
        if self.reconnecting and self.state == CallState.CONNECTED:
            return TransientDisconnect.user_message
        return self.state.status_text

    @property
    def remote_tracks(self) -> dict:
        return dict(self.peer.remote_tracks) if self.peer else {}

    @property
    def ended(self) -> bool:
        return self._ended

    async def start(self) -> None:
        """통화를 시작합니다.

        순서: 미디어 획득 → 프리뷰 → 피어 연결 생성 → 채널 참가 → 핸들러 등록 → (Initiator) offer 송신.
        치명적 오류(미디어 획득/채널 참가 실패)는 지금까지 획득한 리소스를 정리하고
        on_error를 1회 호출한 뒤 on_ended로 종료합니다. 예외는 호출자에게 전파하지 않습니다.
        """
        if self._started:
            raise RuntimeError("CallSession.start() may only be called once")
        self._started = True

        logger.info(
            f"[Call] 통화 시작: {self.local_user_id} -> {self.remote_user_id}, "
            f"role={self.role.value}, channel='{self.channel_name}'"
        )

        try:
            self.local_media = await self.media_acquirer.acquire(self.constraints)
            if self._ended:
                # 획득 도중 end() 호출됨
                self.local_media.release()
                return
            await _invoke(self.on_local_preview, self.local_media)

            self.peer = self.peer_factory(self.role, self.local_media)
            self.peer.on_remote_track(self._handle_remote_track)
            self.peer.on_connection_state_change(self._handle_peer_state)
            self.peer.on_local_candidate(self._send_local_candidate)

            transport = await self.transport_factory(self.channel_name, self.local_user_id)
            if self._ended:
                await transport.close()
                return
            self.transport = transport

            self.transport.on_message(MessageKind.OFFER, self._handle_offer)
            self.transport.on_message(MessageKind.ANSWER, self._handle_answer)
            self.transport.on_message(MessageKind.CANDIDATE, self._handle_candidate)
            self.transport.on_message(MessageKind.HANGUP, self._handle_hangup)

            self._start_watchdog()

            if self.role == Role.INITIATOR:
                offer = await self.peer.create_offer()
                if self._ended:
                    return
                await self.transport.send(MessageKind.OFFER, offer, to=self.remote_user_id)
                logger.info(f"[Call] offer 송신: {self.local_user_id} -> {self.remote_user_id}")
                await self.peer.emit_local_candidates()
            else:
                logger.info(f"[Call] offer 대기 중 ({self.local_user_id})")

        except (MediaAcquisitionError, TransportOpenError) as e:
            logger.error(f"[Call] 통화 시작 실패: {type(e).__name__}: {e}")
            await self._surface_error(e)
            await self.end(reason="start_failed")
        except NegotiationError as e:
            if self._ended:
                # 협상 도중 사용자가 종료함
                logger.info(f"[Call] 종료 후 협상 중단: {e}")
                return
            logger.error(f"[Call] 통화 시작 중 협상 실패: {e}")
            await self._set_state(CallState.FAILED)
            await self._surface_error(e)
            await self.end(reason="start_failed")
        except Exception as e:
            logger.error(f"[Call] 통화 시작 중 예외: {type(e).__name__}: {e}", exc_info=True)
            error = CallError(f"{type(e).__name__}: {e}", user_message="Failed to start call.")
            await self._surface_error(error)
            await self.end(reason="start_failed")

    def toggle_audio(self) -> bool:
        """마이크 송출을 토글합니다. 재협상/시그널링은 발생하지 않습니다."""
        track = self.local_media.audio_track if self.local_media else None
        if track is None:
            return self.audio_enabled
        track.enabled = not track.enabled
        self.audio_enabled = track.enabled
        return self.audio_enabled

    def toggle_video(self) -> bool:
        """카메라 송출을 토글합니다. 재협상/시그널링은 발생하지 않습니다."""
        track = self.local_media.video_track if self.local_media else None
        if track is None:
            return self.video_enabled
        track.enabled = not track.enabled
        self.video_enabled = track.enabled
        return self.video_enabled

    async def end(self, reason: str = "local_hangup") -> None:
        """통화를 종료합니다. 어느 상태에서든 호출할 수 있고, 여러 번 호출해도 on_ended는 1회만 호출됩니다.

        정리 순서: hangup 송신(가능한 경우) → 전송 종료 → 피어 연결 종료 → 로컬 미디어 해제 → on_ended.
        """
        if self._ended:
            return
        self._ended = True
        self.end_reason = reason
        logger.info(f"[Call] 통화 종료 ({reason}): {self.local_user_id}, channel='{self.channel_name}'")

        if self._watchdog and self._watchdog is not asyncio.current_task():
            self._watchdog.cancel()
        self._watchdog = None

        if self.transport is not None:
            if reason != "remote_hangup" and self.transport.opened:
                await self.transport.send(MessageKind.HANGUP, {"reason": reason}, to=self.remote_user_id)
            await self.transport.close()

        if self.peer is not None:
            await self.peer.close()

        if self.local_media is not None:
            self.local_media.release()

        await self._set_state(CallState.ENDED)
        try:
            await _invoke(self.on_ended, reason)
        except Exception as e:
            logger.error(f"[Call] on_ended 콜백 오류: {e}", exc_info=True)

    async def __aenter__(self) -> "CallSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.end()

    # ------------------------------------------------------------
    # 시그널링 핸들러 (수신자 필터링은 전송에서 처리됨)
    # ------------------------------------------------------------

    def _from_peer(self, message: SignalingMessage) -> bool:
        if message.sender != self.remote_user_id:
            logger.debug(f"[Call] 상대방이 아닌 송신자 메시지 무시: from={message.sender}")
            return False
        return True

    async def _handle_offer(self, message: SignalingMessage) -> None:
        if self._ended or self.peer is None or not self._from_peer(message):
            return
        logger.info(f"[Call] offer 수신: from={message.sender}")
        try:
            answer = await self.peer.accept_offer(message.payload)
        except NegotiationError as e:
            await self._negotiation_failed(e)
            return
        await self.transport.send(MessageKind.ANSWER, answer, to=self.remote_user_id)
        logger.info(f"[Call] answer 송신: {self.local_user_id} -> {self.remote_user_id}")
        await self.peer.emit_local_candidates()

    async def _handle_answer(self, message: SignalingMessage) -> None:
        if self._ended or self.peer is None or not self._from_peer(message):
            return
        logger.info(f"[Call] answer 수신: from={message.sender}")
        try:
            await self.peer.accept_answer(message.payload)
        except NegotiationError as e:
            await self._negotiation_failed(e)

    async def _handle_candidate(self, message: SignalingMessage) -> None:
        if self._ended or self.peer is None or not self._from_peer(message):
            return
        await self.peer.add_remote_candidate(message.payload)

    async def _handle_hangup(self, message: SignalingMessage) -> None:
        if not self._from_peer(message):
            return
        logger.info(f"[Call] 상대방 종료 수신: from={message.sender}")
        await self.end(reason="remote_hangup")

    async def _send_local_candidate(self, payload: dict) -> None:
        if self.transport is None or self._ended:
            return
        await self.transport.send(MessageKind.CANDIDATE, payload, to=self.remote_user_id)

    # ------------------------------------------------------------
    # 피어 연결 이벤트
    # ------------------------------------------------------------

    async def _handle_remote_track(self, track: MediaStreamTrack) -> None:
        try:
            await _invoke(self.on_remote_track, track)
        except Exception as e:
            logger.error(f"[Call] on_remote_track 콜백 오류: {e}", exc_info=True)

    async def _handle_peer_state(self, peer_state: PeerState) -> None:
        if self._ended:
            return
        if peer_state == PeerState.CONNECTED:
            self.reconnecting = False
            await self._set_state(CallState.CONNECTED)
        elif peer_state == PeerState.DISCONNECTED:
            self.reconnecting = True
            logger.info(f"[Call] 일시적 연결 끊김 - 자동 재연결 대기 ({self.local_user_id})")
        elif peer_state == PeerState.FAILED:
            await self._set_state(CallState.FAILED)
            await self._surface_error(ConnectivityFailed("Peer connection failed"))

    async def _negotiation_failed(self, error: NegotiationError) -> None:
        if self._ended:
            logger.info(f"[Call] 종료 후 협상 오류 무시: {error}")
            return
        logger.error(f"[Call] 협상 오류: {error}")
        await self._set_state(CallState.FAILED)
        await self._surface_error(error)

    # ------------------------------------------------------------
    # 내부
    # ------------------------------------------------------------

    def _start_watchdog(self) -> None:
        if self.connect_timeout and self.connect_timeout > 0:
            self._watchdog = asyncio.create_task(self._connect_watchdog(self.connect_timeout))

    async def _connect_watchdog(self, timeout: float) -> None:
        """CONNECTING 상태가 timeout을 넘기면 FAILED로 전이합니다."""
        await asyncio.sleep(timeout)
        if self._ended or self.state != CallState.CONNECTING:
            return
        logger.warning(f"[Call] 연결 타임아웃 ({timeout}s): {self.local_user_id}")
        await self._set_state(CallState.FAILED)
        await self._surface_error(ConnectivityFailed(f"Not connected within {timeout}s"))

    async def _set_state(self, new_state: CallState) -> None:
        if new_state == self.state:
            return
        # ENDED는 종단, FAILED는 ENDED로만 이동
        if self.state == CallState.ENDED:
            return
        if self.state == CallState.FAILED and new_state != CallState.ENDED:
            return

        old_state = self.state
        self.state = new_state
        logger.info(f"[Call] 상태: {old_state.value} -> {new_state.value} ({self.local_user_id})")
        try:
            await _invoke(self.on_state_change, new_state)
        except Exception as e:
            logger.error(f"[Call] on_state_change 콜백 오류: {e}", exc_info=True)

    async def _surface_error(self, error: CallError) -> None:
        """사용자에게 보여줄 오류를 1회만 전달합니다."""
        if self._error_surfaced:
            logger.debug(f"[Call] 추가 오류 (이미 전달됨): {error}")
            return
        self._error_surfaced = True
        try:
            await _invoke(self.on_error, error)
        except Exception as e:
            logger.error(f"[Call] on_error 콜백 오류: {e}", exc_info=True)
