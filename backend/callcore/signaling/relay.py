"""채널 기반 시그널링 릴레이 모듈.

릴레이 서버 측에서 채널(공유 시그널링 채널)과 구독자(WebSocket 연결)를 관리합니다.
릴레이는 메시지 내용을 해석하지 않으며, 채널의 모든 구독자(송신자 포함)에게
그대로 전달합니다. 수신 측 필터링(`to`, 자기 에코)은 클라이언트의 책임입니다.

Architecture:
    - channels: Dict[str, Dict[str, Subscriber]] - 채널 이름 → 구독자 맵
    - subscriber_to_channel: Dict[str, str] - 구독자 ID → 채널 이름 (빠른 조회용)

Classes:
    Subscriber: 채널 구독자 정보
    ChannelRegistry: 채널 및 구독자 관리 클래스

Examples:
    >>> registry = ChannelRegistry(max_subscribers=8)
    >>> sub = registry.join("call-u1-u2-17", websocket)
    >>> await registry.broadcast("call-u1-u2-17", raw_text)
    >>> registry.leave(sub.subscriber_id)
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ChannelFull(Exception):
    """채널 구독자 수가 상한에 도달함."""


@dataclass
class Subscriber:
    """채널에 연결된 구독자.

    Attributes:
        subscriber_id (str): 연결 단위 고유 ID (사용자 ID가 아님)
        websocket (WebSocket): 구독자와의 WebSocket 연결 객체
    """
    websocket: WebSocket
    subscriber_id: str = field(default_factory=lambda: str(uuid.uuid4()))


class ChannelRegistry:
    """시그널링 채널과 구독자를 관리합니다.

    Args:
        max_subscribers (int): 채널당 최대 구독자 수 (0 이하이면 제한 없음)

    Note:
        - 채널은 첫 구독자가 들어올 때 자동 생성, 비면 자동 삭제
        - asyncio 단일 스레드 환경을 가정
    """

    def __init__(self, max_subscribers: int = 8):
        self.max_subscribers = max_subscribers
        # channel_name -> {subscriber_id: Subscriber}
        self.channels: Dict[str, Dict[str, Subscriber]] = {}
        # subscriber_id -> channel_name
        self.subscriber_to_channel: Dict[str, str] = {}

    def join(self, channel_name: str, websocket: WebSocket) -> Subscriber:
        """구독자를 채널에 추가합니다.

        Raises:
            ChannelFull: 채널 구독자 수가 max_subscribers에 도달한 경우
        """
        subscribers = self.channels.get(channel_name, {})
        if self.max_subscribers > 0 and len(subscribers) >= self.max_subscribers:
            raise ChannelFull(f"Channel '{channel_name}' is full ({self.max_subscribers})")

        if channel_name not in self.channels:
            self.channels[channel_name] = subscribers
            logger.info(f"[Relay] 채널 '{channel_name}' 생성")

        subscriber = Subscriber(websocket=websocket)
        subscribers[subscriber.subscriber_id] = subscriber
        self.subscriber_to_channel[subscriber.subscriber_id] = channel_name
        logger.info(
            f"[Relay] 구독자 {subscriber.subscriber_id[:8]} 채널 '{channel_name}' 참가 "
            f"(구독자 {len(subscribers)}명)"
        )
        return subscriber

    def leave(self, subscriber_id: str) -> Optional[str]:
        """구독자를 채널에서 제거합니다.

        Returns:
            Optional[str]: 구독자가 속해 있던 채널 이름. 없으면 None
        """
        channel_name = self.subscriber_to_channel.pop(subscriber_id, None)
        if channel_name is None:
            return None

        subscribers = self.channels.get(channel_name, {})
        subscribers.pop(subscriber_id, None)
        if not subscribers:
            self.channels.pop(channel_name, None)
            logger.info(f"[Relay] 채널 '{channel_name}' 삭제 (비어 있음)")
        else:
            logger.info(
                f"[Relay] 구독자 {subscriber_id[:8]} 채널 '{channel_name}' 퇴장 "
                f"(남은 구독자 {len(subscribers)}명)"
            )
        return channel_name

    def get_subscribers(self, channel_name: str) -> List[Subscriber]:
        return list(self.channels.get(channel_name, {}).values())

    async def broadcast(self, channel_name: str, text: str) -> int:
        """채널의 모든 구독자(송신자 포함)에게 텍스트 프레임을 전달합니다.

        전송에 실패한 구독자는 채널에서 제거합니다.

        Returns:
            int: 전달에 성공한 구독자 수
        """
        delivered = 0
        failed = []
        for subscriber in self.get_subscribers(channel_name):
            try:
                await subscriber.websocket.send_text(text)
                delivered += 1
            except Exception as e:
                logger.warning(f"[Relay] 구독자 {subscriber.subscriber_id[:8]} 전송 실패: {e}")
                failed.append(subscriber.subscriber_id)

        for subscriber_id in failed:
            self.leave(subscriber_id)
        return delivered

    @property
    def channel_count(self) -> int:
        return len(self.channels)

    @property
    def subscriber_count(self) -> int:
        return len(self.subscriber_to_channel)

    def get_channel_list(self) -> List[dict]:
        """활성 채널 목록 (모니터링용)."""
        return [
            {"channel_name": name, "subscriber_count": len(subs)}
            for name, subs in self.channels.items()
        ]

    async def close_all(self) -> None:
        """모든 구독자 연결을 닫고 채널을 비웁니다 (서버 종료 시)."""
        for subscribers in list(self.channels.values()):
            for subscriber in list(subscribers.values()):
                try:
                    await subscriber.websocket.close(code=1001)
                except Exception as e:
                    logger.debug(f"[Relay] 구독자 연결 종료 중 오류 무시: {e}")
        closed = self.subscriber_count
        self.channels.clear()
        self.subscriber_to_channel.clear()
        logger.info(f"[Relay] 모든 채널 정리 완료 (구독자 {closed}명)")
