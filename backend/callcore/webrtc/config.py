"""WebRTC 모듈 설정.

TURN/STUN 서버, ICE 설정, 미디어 캡처, 시그널링 백엔드 등
영상 통화 관련 상수와 환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional, List, Dict

# 환경변수 로드 (상위에서 이미 로드됨)
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정."""

    # TURN 서버
    TURN_SERVER_URL: Optional[str] = os.getenv("TURN_SERVER_URL")
    TURN_USERNAME: Optional[str] = os.getenv("TURN_USERNAME")
    TURN_CREDENTIAL: Optional[str] = os.getenv("TURN_CREDENTIAL")

    # STUN 서버
    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL")

    # 기본 공개 STUN 서버 (fallback)
    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
    )

    @property
    def has_turn_server(self) -> bool:
        """TURN 서버 설정 완료 여부."""
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])

    def to_browser_list(self) -> List[Dict]:
        """브라우저 RTCPeerConnection에 전달할 iceServers 목록.

        Returns:
            List[Dict]: ``{"urls": ..., "username": ..., "credential": ...}`` 형식
        """
        servers: List[Dict] = []
        if self.STUN_SERVER_URL:
            servers.append({"urls": self.STUN_SERVER_URL})
        for stun_url in self.DEFAULT_STUN_SERVERS:
            servers.append({"urls": stun_url})
        if self.has_turn_server:
            servers.append({
                "urls": self.TURN_SERVER_URL,
                "username": self.TURN_USERNAME,
                "credential": self.TURN_CREDENTIAL,
            })
        return servers


# ============================================================
# WebRTC 연결 설정
# ============================================================

@dataclass(frozen=True)
class ConnectionConfig:
    """WebRTC 연결 관련 설정."""

    # Connecting 상태 최대 유지 시간 (초), 초과 시 Failed
    ICE_CONNECTION_TIMEOUT: float = float(os.getenv("ICE_CONNECTION_TIMEOUT", "30"))

    # aiortc는 icecandidate 이벤트를 내보내지 않으므로 SDP에서 추출해 전송
    TRICKLE_LOCAL_CANDIDATES: bool = _env_bool("TRICKLE_LOCAL_CANDIDATES", True)


# ============================================================
# 미디어 캡처 설정
# ============================================================

@dataclass(frozen=True)
class MediaConfig:
    """카메라/마이크 캡처 설정."""

    # device: 실제 장치, synthetic: 검은 화면 + 무음 (헤드리스 참가자)
    MEDIA_BACKEND: str = os.getenv("MEDIA_BACKEND", "device")

    # 장치 이름 (비어 있으면 플랫폼 기본값)
    VIDEO_DEVICE: Optional[str] = os.getenv("VIDEO_DEVICE")
    AUDIO_DEVICE: Optional[str] = os.getenv("AUDIO_DEVICE")

    # 희망 해상도 / 프레임레이트
    VIDEO_WIDTH: int = int(os.getenv("VIDEO_WIDTH", "1280"))
    VIDEO_HEIGHT: int = int(os.getenv("VIDEO_HEIGHT", "720"))
    VIDEO_FRAMERATE: int = int(os.getenv("VIDEO_FRAMERATE", "30"))


# ============================================================
# 시그널링 설정
# ============================================================

@dataclass(frozen=True)
class SignalingConfig:
    """시그널링 릴레이 설정."""

    # memory | websocket | redis
    SIGNALING_BACKEND: str = os.getenv("SIGNALING_BACKEND", "websocket")

    # 릴레이 서버 주소 (websocket 백엔드)
    SIGNALING_URL: str = os.getenv("SIGNALING_URL", "ws://localhost:8000/ws/signaling")
    SIGNALING_TOKEN: Optional[str] = os.getenv("SIGNALING_TOKEN")

    # Redis pub/sub (redis 백엔드)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379")

    # 채널당 최대 구독자 수 (2인 통화 + 여유)
    MAX_CHANNEL_SUBSCRIBERS: int = int(os.getenv("MAX_CHANNEL_SUBSCRIBERS", "8"))


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
connection_config = ConnectionConfig()
media_config = MediaConfig()
signaling_config = SignalingConfig()


# ============================================================
# 설정 로드 확인 로그
# ============================================================

logger.info(f"[WebRTC Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[WebRTC Config] TURN 서버 설정 완료: {ice_config.has_turn_server}")
if ice_config.STUN_SERVER_URL:
    logger.info(f"[WebRTC Config] STUN URL: {ice_config.STUN_SERVER_URL}")
else:
    logger.info(f"[WebRTC Config] STUN URL: 기본 Google STUN 사용")
logger.info(f"[WebRTC Config] 미디어 백엔드: {media_config.MEDIA_BACKEND}")
logger.info(f"[WebRTC Config] 시그널링 백엔드: {signaling_config.SIGNALING_BACKEND}")
