"""Health Check 및 ICE 서버 API 라우터.

서비스 상태 확인과 브라우저 클라이언트용 ICE 서버 목록 엔드포인트를 제공합니다.
"""

import logging

from fastapi import APIRouter, Depends

from callcore.webrtc.config import ice_config
from .deps import verify_auth_header
from .signaling import get_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health_check():
    """릴레이 서버 상태를 확인합니다.

    Returns:
        dict: 서버 상태와 활성 채널/구독자 수
    """
    registry = get_registry()
    if registry is None:
        return {"status": "not_initialized", "channels": 0, "subscribers": 0}

    return {
        "status": "ok",
        "channels": registry.channel_count,
        "subscribers": registry.subscriber_count,
    }


@router.get("/ice-servers")
async def get_ice_servers(_: bool = Depends(verify_auth_header)):
    """브라우저 클라이언트용 ICE 서버 목록을 제공합니다.

    TURN credentials는 Backend 환경 변수에서만 관리하고 이 엔드포인트로 전달합니다.

    Returns:
        list: RTCIceServer 형식 리스트 (STUN + 설정 시 TURN)

    Examples:
        >>> [
        ...     {"urls": "stun:stun.l.google.com:19302"},
        ...     {"urls": "turn:turn.example.com:3478", "username": "u", "credential": "p"},
        ... ]
    """
    servers = ice_config.to_browser_list()
    if ice_config.has_turn_server:
        logger.info("ICE 서버 제공: STUN + TURN")
    else:
        logger.info("ICE 서버 제공: STUN만 (TURN 미설정)")
    return servers
