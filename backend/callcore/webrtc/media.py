"""로컬 미디어 획득 모듈.

카메라/마이크를 열어 통화에 송출할 로컬 미디어 핸들을 제공합니다.

주요 기능:
    - 플랫폼별 캡처 장치 열기 (aiortc MediaPlayer: v4l2/pulse, avfoundation, dshow)
    - 헤드리스 참가자를 위한 synthetic 소스 (aiortc 기본 트랙)
    - 권한 거부 / 장치 없음 오류 분류
    - 범위 기반 획득 (async with) 으로 모든 종료 경로에서 release 보장

Classes:
    MediaConstraints: 캡처 품질 제약 조건
    LocalMediaHandle: 획득한 로컬 트랙 묶음 (release는 멱등)
    MediaAcquirer: 설정에 따라 장치를 여는 획득기

Examples:
    >>> acquirer = MediaAcquirer()
    >>> async with acquirer.session() as media:
    ...     pc.addTrack(media.audio_track)
    ...     pc.addTrack(media.video_track)
"""
import asyncio
import logging
import platform
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from aiortc import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaPlayer
from av.error import FFmpegError

from ..errors import DeviceUnavailable, PermissionDenied
from .config import media_config
from .tracks import ToggleableTrack

logger = logging.getLogger(__name__)

# (audio_track, video_track) 를 반환하는 장치 열기 함수
MediaOpener = Callable[["MediaConstraints"], Tuple[Optional[MediaStreamTrack], Optional[MediaStreamTrack]]]


@dataclass
class MediaConstraints:
    """캡처 제약 조건.

    Attributes:
        audio (bool): 마이크 캡처 여부
        video (bool): 카메라 캡처 여부
        width (int): 희망 가로 해상도
        height (int): 희망 세로 해상도
        framerate (int): 희망 프레임레이트
        echo_cancellation (bool): 에코 제거 요청 (캡처 힌트로 기록만 함)
    """
    audio: bool = True
    video: bool = True
    width: int = field(default_factory=lambda: media_config.VIDEO_WIDTH)
    height: int = field(default_factory=lambda: media_config.VIDEO_HEIGHT)
    framerate: int = field(default_factory=lambda: media_config.VIDEO_FRAMERATE)
    echo_cancellation: bool = True

    @property
    def video_size(self) -> str:
        return f"{self.width}x{self.height}"


class LocalMediaHandle:
    """통화 세션이 단독 소유하는 로컬 미디어 핸들.

    release()는 모든 트랙을 정확히 한 번 정지시키며, 여러 번 호출해도 안전합니다.
    """

    def __init__(
        self,
        audio_track: Optional[MediaStreamTrack],
        video_track: Optional[MediaStreamTrack],
        constraints: Optional[MediaConstraints] = None,
    ):
        self.audio_track: Optional[ToggleableTrack] = ToggleableTrack(audio_track) if audio_track else None
        self.video_track: Optional[ToggleableTrack] = ToggleableTrack(video_track) if video_track else None
        self.constraints = constraints or MediaConstraints()
        self._released = False

    @property
    def tracks(self) -> List[ToggleableTrack]:
        return [t for t in (self.audio_track, self.video_track) if t is not None]

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """모든 트랙을 정지합니다 (카메라/마이크 표시등 해제)."""
        if self._released:
            return
        self._released = True
        for track in self.tracks:
            try:
                track.stop()
            except Exception as e:
                logger.warning(f"[Media] {track.kind} 트랙 정지 실패: {e}")
        logger.info(f"[Media] 로컬 미디어 해제 (트랙 {len(self.tracks)}개)")


def _open_synthetic(constraints: MediaConstraints):
    audio = AudioStreamTrack() if constraints.audio else None
    video = VideoStreamTrack() if constraints.video else None
    return audio, video


def _open_device(constraints: MediaConstraints):
    """플랫폼 기본 캡처 장치를 엽니다.

    Raises:
        PermissionError: 장치 접근 거부
        FFmpegError, OSError: 장치 없음/열기 실패
    """
    system = platform.system()
    video_options = {
        "video_size": constraints.video_size,
        "framerate": str(constraints.framerate),
    }
    audio = None
    video = None

    if system == "Darwin":
        # avfoundation은 하나의 입력으로 카메라와 마이크를 함께 엽니다
        video_dev = media_config.VIDEO_DEVICE or "default"
        audio_dev = media_config.AUDIO_DEVICE or "default"
        target = f"{video_dev if constraints.video else 'none'}:{audio_dev if constraints.audio else 'none'}"
        player = MediaPlayer(target, format="avfoundation", options=video_options)
        return player.audio, player.video

    if system == "Windows":
        parts = []
        if constraints.video:
            parts.append(f"video={media_config.VIDEO_DEVICE or 'Integrated Camera'}")
        if constraints.audio:
            parts.append(f"audio={media_config.AUDIO_DEVICE or 'Microphone'}")
        player = MediaPlayer(":".join(parts), format="dshow", options=video_options)
        return player.audio, player.video

    if constraints.video:
        video = MediaPlayer(
            media_config.VIDEO_DEVICE or "/dev/video0", format="v4l2", options=video_options
        ).video
    if constraints.audio:
        try:
            audio = MediaPlayer(media_config.AUDIO_DEVICE or "default", format="pulse").audio
        except Exception:
            # 카메라는 이미 열렸으므로 닫고 원래 예외를 전파
            if video is not None:
                video.stop()
            raise
    return audio, video


class MediaAcquirer:
    """로컬 카메라/마이크 획득기.

    Args:
        backend (Optional[str]): "device" 또는 "synthetic". None이면 설정값 사용
        opener (Optional[MediaOpener]): 장치 열기 함수 (주입 시 backend 무시)

    Note:
        - 실패 시 재시도하지 않음 (호출자가 통화 시도를 중단해야 함)
        - PermissionError → PermissionDenied, 그 외 열기 실패 → DeviceUnavailable
    """

    def __init__(self, backend: Optional[str] = None, opener: Optional[MediaOpener] = None):
        self.backend = backend or media_config.MEDIA_BACKEND
        if opener is not None:
            self._opener = opener
        elif self.backend == "synthetic":
            self._opener = _open_synthetic
        elif self.backend == "device":
            self._opener = _open_device
        else:
            raise ValueError(f"Unknown media backend: {self.backend}")

    async def acquire(self, constraints: Optional[MediaConstraints] = None) -> LocalMediaHandle:
        """오디오+비디오 캡처를 요청하고 로컬 미디어 핸들을 반환합니다.

        Raises:
            PermissionDenied: 플랫폼이 접근을 거부함
            DeviceUnavailable: 장치가 없거나 열 수 없음
        """
        constraints = constraints or MediaConstraints()
        logger.info(
            f"[Media] 로컬 미디어 요청: audio={constraints.audio}, video={constraints.video}, "
            f"{constraints.video_size}@{constraints.framerate}, backend={self.backend}"
        )

        try:
            # 장치 열기(av.open)는 블로킹이므로 스레드에서 실행
            audio, video = await asyncio.to_thread(self._opener, constraints)
        except PermissionError as e:
            logger.error(f"[Media] 카메라/마이크 권한 거부: {e}")
            raise PermissionDenied(str(e)) from e
        except (FFmpegError, OSError) as e:
            logger.error(f"[Media] 카메라/마이크 장치 열기 실패: {e}")
            raise DeviceUnavailable(str(e)) from e

        if (constraints.audio and audio is None) or (constraints.video and video is None):
            for track in (audio, video):
                if track is not None:
                    track.stop()
            missing = "audio" if constraints.audio and audio is None else "video"
            logger.error(f"[Media] {missing} 장치 없음")
            raise DeviceUnavailable(f"No {missing} device available")

        handle = LocalMediaHandle(audio, video, constraints)
        logger.info(f"[Media] 로컬 미디어 획득 완료 (트랙 {len(handle.tracks)}개)")
        return handle

    @asynccontextmanager
    async def session(self, constraints: Optional[MediaConstraints] = None):
        """범위 기반 획득. 블록을 벗어나면 예외 여부와 관계없이 release합니다."""
        handle = await self.acquire(constraints)
        try:
            yield handle
        finally:
            handle.release()
