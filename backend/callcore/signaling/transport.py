"""시그널링 전송 모듈.

공유 채널 이름으로 식별되는 best-effort 릴레이 채널을 추상화합니다.
채널은 브로드캐스트이므로 수신 측에서 자기 에코와 다른 수신자 대상 메시지를
반드시 걸러야 합니다.

주요 기능:
    - 채널 참가/퇴장 (close는 멱등, 열지 않은 전송에도 안전)
    - fire-and-forget 송신 (전달 실패는 로그만 남김)
    - 수신 필터링: 형식 오류, 자기 에코, 수신자 불일치 메시지 폐기
    - 송신자-종류별 순번(seq)으로 릴레이의 FIFO 보장 여부를 검증

Classes:
    SignalingTransport: 전송 공통 로직 (필터링, 순번 검증, 핸들러 디스패치)
    InMemoryRelay / InMemoryTransport: 프로세스 내 릴레이 (로컬 실행, 테스트)
    WebSocketTransport: 릴레이 서버(/ws/signaling/{channel}) WebSocket 클라이언트
    RedisTransport: Redis pub/sub 채널

Examples:
    >>> transport = await open_transport("call-u1-u2-17", "u1")
    >>> transport.on_message(MessageKind.ANSWER, handle_answer)
    >>> await transport.send(MessageKind.OFFER, offer, to="u2")
    >>> await transport.close()
"""
import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import quote, urlencode

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError, RedisError
import websockets
from websockets.exceptions import ConnectionClosed

from ..errors import TransportOpenError
from ..webrtc.config import signaling_config
from .messages import MessageKind, SignalingMessage, parse_message

logger = logging.getLogger(__name__)

MessageHandler = Callable[[SignalingMessage], Union[None, Awaitable[None]]]

# 중복/역순이면 폐기하는 메시지 종류 (candidate는 순서 무관)
_ORDERED_KINDS = (MessageKind.OFFER, MessageKind.ANSWER, MessageKind.HANGUP)


class SignalingTransport:
    """시그널링 전송의 공통 베이스 클래스.

    하위 클래스는 ``_connect``, ``_publish``, ``_disconnect`` 를 구현하고
    수신한 원시 메시지를 ``_dispatch`` 로 넘깁니다.

    Attributes:
        channel_name (str): 양쪽 피어가 공유하는 채널 이름
        local_id (str): 로컬 사용자 ID (수신 필터 기준)
    """

    backend = "base"

    def __init__(self, channel_name: str, local_id: str):
        self.channel_name = channel_name
        self.local_id = local_id
        self._handlers: Dict[MessageKind, List[MessageHandler]] = defaultdict(list)
        self._send_seq: Dict[MessageKind, int] = defaultdict(int)
        # (sender, kind) -> 마지막으로 받은 seq
        self._last_seq: Dict[Tuple[str, MessageKind], int] = {}
        self._opened = False
        self._closed = False

    @property
    def opened(self) -> bool:
        return self._opened and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> "SignalingTransport":
        """채널에 참가합니다.

        Raises:
            TransportOpenError: 릴레이 연결 실패 또는 이미 닫힌 전송
        """
        if self._closed:
            raise TransportOpenError(f"Transport for '{self.channel_name}' already closed")
        if self._opened:
            return self

        try:
            await self._connect()
        except Exception as e:
            logger.error(f"[Signaling] 채널 '{self.channel_name}' 참가 실패 ({self.backend}): {e}")
            # 일부만 열린 연결 정리
            try:
                await self._disconnect()
            except Exception as cleanup_error:
                logger.warning(f"[Signaling] 참가 실패 후 정리 중 오류: {cleanup_error}")
            if isinstance(e, TransportOpenError):
                raise
            raise TransportOpenError(str(e)) from e

        self._opened = True
        logger.info(f"[Signaling] 채널 '{self.channel_name}' 참가: user={self.local_id}, backend={self.backend}")
        return self

    def on_message(self, kind: Union[MessageKind, str], handler: MessageHandler) -> None:
        """메시지 종류별 핸들러를 등록합니다. 핸들러는 메시지 1건당 1회 호출됩니다."""
        self._handlers[MessageKind(kind)].append(handler)

    async def send(self, kind: Union[MessageKind, str], payload: Dict[str, Any], to: str) -> None:
        """메시지를 채널의 모든 구독자에게 발행합니다 (fire-and-forget).

        전달 실패는 예외로 올리지 않고 로그만 남깁니다.
        """
        kind = MessageKind(kind)
        if not self.opened:
            logger.debug(f"[Signaling] 열리지 않은 전송으로 {kind.value} 송신 무시")
            return

        self._send_seq[kind] += 1
        message = SignalingMessage(
            type=kind,
            payload=payload,
            sender=self.local_id,
            to=to,
            seq=self._send_seq[kind],
        )
        try:
            await self._publish(message.to_wire())
            logger.debug(f"[Signaling] {kind.value} 송신: {self.local_id} -> {to} (seq={message.seq})")
        except Exception as e:
            logger.warning(f"[Signaling] {kind.value} 송신 실패 (채널 '{self.channel_name}'): {e}")

    async def close(self) -> None:
        """채널에서 나갑니다. 여러 번 호출하거나 열지 않은 전송에 호출해도 안전합니다."""
        if self._closed:
            return
        self._closed = True
        if not self._opened:
            return

        try:
            await self._disconnect()
        except Exception as e:
            logger.warning(f"[Signaling] 채널 '{self.channel_name}' 정리 중 오류: {e}")
        self._handlers.clear()
        logger.info(f"[Signaling] 채널 '{self.channel_name}' 퇴장: user={self.local_id}")

    async def _dispatch(self, raw: Union[str, bytes, Dict[str, Any]]) -> None:
        """수신한 원시 메시지를 필터링한 뒤 등록된 핸들러를 호출합니다."""
        message = parse_message(raw)
        if message is None:
            return

        # 자기 에코
        if message.sender == self.local_id:
            return

        # 다른 수신자 대상 메시지
        if message.to != self.local_id:
            logger.debug(f"[Signaling] 수신자 불일치 메시지 무시: to={message.to}, local={self.local_id}")
            return

        if not self._check_order(message):
            return

        for handler in list(self._handlers.get(message.type, [])):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"[Signaling] {message.type.value} 핸들러 오류: {type(e).__name__}: {e}",
                    exc_info=True,
                )

    def _check_order(self, message: SignalingMessage) -> bool:
        """송신자-종류별 FIFO 검증. 전달해야 하면 True.

        seq가 없는(0) 메시지는 순번을 붙이지 않는 클라이언트(브라우저)에서 온 것으로 보고 통과시킵니다.
        """
        if message.seq <= 0:
            return True

        key = (message.sender, message.type)
        last = self._last_seq.get(key, 0)

        if message.seq <= last:
            if message.type in _ORDERED_KINDS:
                logger.warning(
                    f"[Signaling] 중복/역순 {message.type.value} 폐기: from={message.sender}, "
                    f"seq={message.seq}, last={last}"
                )
                return False
            logger.info(
                f"[Signaling] 역순 {message.type.value} 수신: from={message.sender}, seq={message.seq}, last={last}"
            )
            return True

        if message.seq > last + 1:
            logger.warning(
                f"[Signaling] {message.type.value} 순번 누락: from={message.sender}, "
                f"expected={last + 1}, got={message.seq}"
            )
        self._last_seq[key] = message.seq
        return True

    async def _connect(self) -> None:
        raise NotImplementedError

    async def _publish(self, wire: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _disconnect(self) -> None:
        raise NotImplementedError


# ============================================================
# 프로세스 내 릴레이
# ============================================================

class InMemoryRelay:
    """프로세스 내 브로드캐스트 릴레이.

    채널 이름별 구독자 목록을 관리하며, 발행된 메시지를 송신자를 포함한
    모든 구독자에게 전달합니다. 구독자마다 큐가 있어 송신자 단위 FIFO가 유지됩니다.
    """

    def __init__(self):
        # channel_name -> subscribers
        self.channels: Dict[str, List["InMemoryTransport"]] = {}
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def subscribe(self, transport: "InMemoryTransport") -> None:
        self.channels.setdefault(transport.channel_name, []).append(transport)

    def unsubscribe(self, transport: "InMemoryTransport") -> None:
        subscribers = self.channels.get(transport.channel_name)
        if not subscribers or transport not in subscribers:
            return
        subscribers.remove(transport)
        if not subscribers:
            del self.channels[transport.channel_name]

    def publish(self, channel_name: str, wire: Dict[str, Any]) -> None:
        for subscriber in list(self.channels.get(channel_name, [])):
            self._pending += 1
            self._idle.clear()
            subscriber.deliver(wire)

    def delivered(self, count: int = 1) -> None:
        self._pending -= count
        if self._pending <= 0:
            self._pending = 0
            self._idle.set()

    async def flush(self) -> None:
        """대기 중인 모든 메시지(핸들러가 연쇄로 보낸 메시지 포함)가 처리될 때까지 기다립니다."""
        await self._idle.wait()


class InMemoryTransport(SignalingTransport):
    """InMemoryRelay 기반 전송."""

    backend = "memory"

    def __init__(self, channel_name: str, local_id: str, relay: InMemoryRelay):
        super().__init__(channel_name, local_id)
        self.relay = relay
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._reader: Optional[asyncio.Task] = None

    def deliver(self, wire: Dict[str, Any]) -> None:
        self._inbox.put_nowait(wire)

    async def _connect(self) -> None:
        self.relay.subscribe(self)
        self._reader = asyncio.create_task(self._read_loop())

    async def _publish(self, wire: Dict[str, Any]) -> None:
        self.relay.publish(self.channel_name, dict(wire))

    async def _disconnect(self) -> None:
        self.relay.unsubscribe(self)
        if self._reader and self._reader is not asyncio.current_task():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        # 처리되지 않은 메시지는 폐기
        dropped = self._inbox.qsize()
        while not self._inbox.empty():
            self._inbox.get_nowait()
        if dropped:
            self.relay.delivered(dropped)

    async def _read_loop(self) -> None:
        while True:
            wire = await self._inbox.get()
            try:
                await self._dispatch(wire)
            finally:
                self.relay.delivered()
            if self._closed:
                break


# ============================================================
# WebSocket 릴레이 서버 클라이언트
# ============================================================

class WebSocketTransport(SignalingTransport):
    """릴레이 서버의 ``/ws/signaling/{channel}`` 엔드포인트에 연결하는 전송.

    Args:
        channel_name (str): 채널 이름
        local_id (str): 로컬 사용자 ID
        url (Optional[str]): 릴레이 기본 주소 (기본값: SIGNALING_URL)
        token (Optional[str]): 접근 토큰 (기본값: SIGNALING_TOKEN)
    """

    backend = "websocket"

    def __init__(
        self,
        channel_name: str,
        local_id: str,
        url: Optional[str] = None,
        token: Optional[str] = None,
    ):
        super().__init__(channel_name, local_id)
        self.base_url = (url or signaling_config.SIGNALING_URL).rstrip("/")
        self.token = token if token is not None else signaling_config.SIGNALING_TOKEN
        self._ws = None
        self._reader: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        url = f"{self.base_url}/{quote(self.channel_name, safe='')}"
        if self.token:
            url += "?" + urlencode({"token": self.token})
        return url

    async def _connect(self) -> None:
        self._ws = await websockets.connect(self.url, ping_interval=20.0, ping_timeout=10.0)
        self._reader = asyncio.create_task(self._read_loop())

    async def _publish(self, wire: Dict[str, Any]) -> None:
        await self._ws.send(SignalingMessage.model_validate(wire).to_json())

    async def _disconnect(self) -> None:
        if self._reader and self._reader is not asyncio.current_task():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                await self._dispatch(raw)
        except ConnectionClosed as e:
            logger.warning(f"[Signaling] 릴레이 연결 끊김 (채널 '{self.channel_name}'): {e}")


# ============================================================
# Redis pub/sub
# ============================================================

class RedisTransport(SignalingTransport):
    """Redis pub/sub 채널 ``signaling:{channel}`` 을 사용하는 전송.

    Redis는 발행자 자신에게도 메시지를 전달하므로 에코 필터링이 필요합니다.
    """

    backend = "redis"

    def __init__(self, channel_name: str, local_id: str, redis_url: Optional[str] = None):
        super().__init__(channel_name, local_id)
        self.redis_url = redis_url or signaling_config.REDIS_URL
        self.client = None
        self._pubsub = None
        self._reader: Optional[asyncio.Task] = None

    @property
    def redis_channel(self) -> str:
        return f"signaling:{self.channel_name}"

    async def _connect(self) -> None:
        self.client = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        self._pubsub = self.client.pubsub()
        await self._pubsub.subscribe(self.redis_channel)
        self._reader = asyncio.create_task(self._read_loop())

    async def _publish(self, wire: Dict[str, Any]) -> None:
        await self.client.publish(self.redis_channel, SignalingMessage.model_validate(wire).to_json())

    async def _disconnect(self) -> None:
        if self._reader and self._reader is not asyncio.current_task():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self.redis_channel)
            except RedisError as e:
                logger.debug(f"[Signaling] Redis 구독 해제 실패 (채널 '{self.channel_name}'): {e}")
            await self._pubsub.aclose()
            self._pubsub = None
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    async def _read_loop(self) -> None:
        try:
            async for item in self._pubsub.listen():
                if item.get("type") == "message":
                    await self._dispatch(item["data"])
                if self._closed:
                    break
        except RedisConnectionError as e:
            logger.warning(f"[Signaling] Redis 연결 끊김 (채널 '{self.channel_name}'): {e}")


async def open_transport(
    channel_name: str,
    local_id: str,
    backend: Optional[str] = None,
    **kwargs,
) -> SignalingTransport:
    """설정된 백엔드로 전송을 만들고 채널에 참가합니다.

    Args:
        channel_name: 채널 이름
        local_id: 로컬 사용자 ID
        backend: "memory" | "websocket" | "redis" (None이면 SIGNALING_BACKEND)
        **kwargs: 백엔드별 인자 (memory: relay, websocket: url/token, redis: redis_url)

    Raises:
        TransportOpenError: 채널 참가 실패
    """
    backend = backend or signaling_config.SIGNALING_BACKEND

    if backend == "memory":
        relay = kwargs.get("relay")
        if relay is None:
            raise ValueError("memory backend requires a relay")
        transport: SignalingTransport = InMemoryTransport(channel_name, local_id, relay)
    elif backend == "websocket":
        transport = WebSocketTransport(channel_name, local_id, url=kwargs.get("url"), token=kwargs.get("token"))
    elif backend == "redis":
        transport = RedisTransport(channel_name, local_id, redis_url=kwargs.get("redis_url"))
    else:
        raise ValueError(f"Unknown signaling backend: {backend}")

    return await transport.open()
