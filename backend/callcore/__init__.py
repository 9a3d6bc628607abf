"""캠퍼스 매칭 영상 통화 코어 패키지.

이 패키지는 두 브라우저/클라이언트 간 P2P 영상 통화의 협상 계층을 포함합니다.

Modules:
    webrtc: 미디어 획득, 송출 트랙, 피어 연결 협상
    signaling: 시그널링 메시지, 전송, 릴레이 채널 관리
    call: 통화 세션 컨트롤러
    errors: 통화 예외 정의
"""

from .errors import (
    CallError,
    PermissionDenied,
    DeviceUnavailable,
    NegotiationError,
    ConnectivityFailed,
    TransientDisconnect,
    TransportOpenError,
)
from .webrtc import PeerConnectionManager, PeerState, Role, MediaAcquirer, LocalMediaHandle
from .signaling import MessageKind, SignalingMessage, open_transport, ChannelRegistry
from .call import CallSession, CallState, make_channel_name

__all__ = [
    # Errors
    "CallError",
    "PermissionDenied",
    "DeviceUnavailable",
    "NegotiationError",
    "ConnectivityFailed",
    "TransientDisconnect",
    "TransportOpenError",
    # WebRTC
    "PeerConnectionManager",
    "PeerState",
    "Role",
    "MediaAcquirer",
    "LocalMediaHandle",
    # Signaling
    "MessageKind",
    "SignalingMessage",
    "open_transport",
    "ChannelRegistry",
    # Call
    "CallSession",
    "CallState",
    "make_channel_name",
]
