"""WebRTC 모듈.

로컬 미디어 획득, 송출 트랙 토글, 1:1 피어 연결 협상 기능을 제공합니다.

Classes:
    PeerConnectionManager: 협상 상태 머신 및 RTCPeerConnection 관리
    MediaAcquirer: 카메라/마이크 획득기
    LocalMediaHandle: 로컬 미디어 핸들 (release 멱등)
    ToggleableTrack: enabled 플래그로 송출을 제어하는 트랙

Config:
    ice_config: ICE 서버 설정
    connection_config: WebRTC 연결 설정
    media_config: 미디어 캡처 설정
    signaling_config: 시그널링 백엔드 설정
"""

from .tracks import ToggleableTrack
from .media import MediaAcquirer, MediaConstraints, LocalMediaHandle
from .peer_manager import PeerConnectionManager, PeerState, Role, build_rtc_configuration
from .config import (
    ice_config,
    connection_config,
    media_config,
    signaling_config,
    ICEServerConfig,
    ConnectionConfig,
    MediaConfig,
    SignalingConfig,
)

__all__ = [
    # Classes
    "ToggleableTrack",
    "MediaAcquirer",
    "MediaConstraints",
    "LocalMediaHandle",
    "PeerConnectionManager",
    "PeerState",
    "Role",
    "build_rtc_configuration",
    # Config
    "ice_config",
    "connection_config",
    "media_config",
    "signaling_config",
    "ICEServerConfig",
    "ConnectionConfig",
    "MediaConfig",
    "SignalingConfig",
]
