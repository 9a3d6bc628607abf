"""시그널링 모듈.

offer/answer/ICE candidate/hangup 메시지를 공유 채널로 중계합니다.

Classes:
    SignalingMessage: 와이어 메시지 모델
    SignalingTransport: 전송 공통 베이스 (수신 필터링, 순번 검증)
    InMemoryRelay / InMemoryTransport: 프로세스 내 릴레이
    WebSocketTransport: 릴레이 서버 클라이언트
    RedisTransport: Redis pub/sub 전송
    ChannelRegistry: 릴레이 서버 측 채널/구독자 관리
"""

from .messages import MessageKind, SignalingMessage, parse_message
from .transport import (
    SignalingTransport,
    InMemoryRelay,
    InMemoryTransport,
    WebSocketTransport,
    RedisTransport,
    open_transport,
)
from .relay import ChannelFull, ChannelRegistry, Subscriber

__all__ = [
    "MessageKind",
    "SignalingMessage",
    "parse_message",
    "SignalingTransport",
    "InMemoryRelay",
    "InMemoryTransport",
    "WebSocketTransport",
    "RedisTransport",
    "open_transport",
    "ChannelFull",
    "ChannelRegistry",
    "Subscriber",
]
