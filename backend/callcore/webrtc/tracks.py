"""송출 트랙 래퍼 모듈.

로컬 카메라/마이크 트랙을 감싸 음소거/화면 끄기를 제공합니다.
트랙 자체는 연결에서 제거하지 않으므로 토글 시 재협상이 발생하지 않습니다.
"""

import logging

import numpy as np
from av import AudioFrame, VideoFrame
from aiortc import MediaStreamTrack

logger = logging.getLogger(__name__)


def _silence_like(frame: AudioFrame) -> AudioFrame:
    """같은 포맷/길이의 무음 프레임을 만듭니다."""
    muted = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in muted.planes:
        plane.update(bytes(plane.buffer_size))
    muted.sample_rate = frame.sample_rate
    muted.pts = frame.pts
    muted.time_base = frame.time_base
    return muted


def _black_like(frame: VideoFrame) -> VideoFrame:
    """같은 해상도의 검은 프레임을 만듭니다."""
    black = VideoFrame.from_ndarray(
        np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24"
    )
    black.pts = frame.pts
    black.time_base = frame.time_base
    return black


class ToggleableTrack(MediaStreamTrack):
    """enabled 플래그로 송출 여부를 제어하는 릴레이 트랙.

    원본 트랙에서 프레임을 받아 그대로 전달하며, ``enabled`` 가 False이면
    같은 타이밍의 무음(오디오) 또는 검은 화면(비디오) 프레임으로 대체합니다.

    Attributes:
        kind (str): 원본 트랙 종류 ("audio" 또는 "video")
        track (MediaStreamTrack): 원본 트랙
        enabled (bool): 송출 여부

    Examples:
        >>> mic = ToggleableTrack(player.audio)
        >>> pc.addTrack(mic)
        >>> mic.enabled = False  # 음소거, 재협상 없음
    """

    def __init__(self, track: MediaStreamTrack, enabled: bool = True):
        super().__init__()
        self.kind = track.kind
        self.track = track
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        if value != self._enabled:
            logger.info(f"[Media] {self.kind} 트랙 송출 {'재개' if value else '중지'}")
        self._enabled = value

    async def recv(self):
        """원본 프레임을 받아 enabled 상태에 따라 그대로 또는 대체 프레임을 반환합니다."""
        frame = await self.track.recv()
        if self.enabled:
            return frame

        if self.kind == "audio":
            return _silence_like(frame)
        return _black_like(frame)

    def stop(self) -> None:
        super().stop()
        self.track.stop()
