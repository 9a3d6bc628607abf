"""시그널링 릴레이 WebSocket 라우터.

통화 양쪽 클라이언트가 공유 채널에 접속해 offer/answer/ICE candidate/hangup 메시지를
주고받는 WebSocket 엔드포인트를 제공합니다.

릴레이는 메시지 내용을 해석하지 않고 채널의 모든 구독자(송신자 포함)에게 전달합니다.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from callcore.signaling.relay import ChannelFull, ChannelRegistry
from .deps import verify_ws_token

logger = logging.getLogger(__name__)

router = APIRouter()

# 글로벌 레지스트리 참조 (app.py에서 설정됨)
_registry: Optional[ChannelRegistry] = None


def init_registry(registry: ChannelRegistry):
    """채널 레지스트리 인스턴스를 초기화합니다.

    app.py에서 호출하여 글로벌 레지스트리 참조를 설정합니다.

    Args:
        registry: ChannelRegistry 인스턴스
    """
    global _registry
    _registry = registry
    logger.info("시그널링 라우터 레지스트리 초기화 완료")


def get_registry() -> Optional[ChannelRegistry]:
    return _registry


def _is_json_object(text: str) -> bool:
    try:
        return isinstance(json.loads(text), dict)
    except ValueError:
        return False


@router.websocket("/ws/signaling/{channel_name}")
async def signaling_endpoint(
    websocket: WebSocket,
    channel_name: str,
    token: Optional[str] = Query(None),
):
    """공유 시그널링 채널 WebSocket 엔드포인트.

    수신한 텍스트 프레임이 JSON 객체이면 채널 전체에 그대로 중계합니다.
    JSON 객체가 아닌 프레임은 무시합니다.

    Args:
        websocket: FastAPI WebSocket 연결 객체
        channel_name: 통화 채널 이름 (예: call-u1-u2-17)
        token: 인증 토큰 (쿼리 파라미터)

    Close Codes:
        1011: 서버 준비 안 됨
        4001: 인증 실패
        4003: 채널 구독자 수 초과
    """
    if _registry is None:
        logger.error("레지스트리가 초기화되지 않음")
        await websocket.close(code=1011, reason="Server not ready")
        return

    # 연결 수락 전 토큰 검증
    if not verify_ws_token(token):
        await websocket.close(code=4001, reason="Unauthorized")
        return

    await websocket.accept()

    try:
        subscriber = _registry.join(channel_name, websocket)
    except ChannelFull as e:
        logger.warning(f"[Relay] 채널 참가 거부: {e}")
        await websocket.close(code=4003, reason="Channel full")
        return

    try:
        while True:
            text = await websocket.receive_text()
            if not _is_json_object(text):
                logger.debug(f"[Relay] JSON 객체가 아닌 프레임 무시 ({len(text)} bytes)")
                continue
            await _registry.broadcast(channel_name, text)

    except WebSocketDisconnect:
        logger.info(f"[Relay] 구독자 {subscriber.subscriber_id[:8]} 연결 종료")
    except Exception as e:
        logger.error(f"[Relay] 구독자 {subscriber.subscriber_id[:8]} 처리 중 오류: {e}")
    finally:
        _registry.leave(subscriber.subscriber_id)
