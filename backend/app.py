"""FastAPI 시그널링 릴레이 서버.

이 모듈은 1:1 P2P 영상 통화를 위한 시그널링 릴레이 서버를 제공합니다.
통화 양쪽 클라이언트(브라우저 또는 callcore.CallSession)는 같은 채널에 접속해
offer/answer/ICE candidate/hangup 메시지를 주고받습니다.

주요 기능:
    - 채널 기반 메시지 중계 (송신자 포함 전체 전달)
    - 접근 토큰 검증
    - 브라우저 클라이언트용 ICE 서버 목록 제공
    - CORS 설정을 통한 크로스 오리진 요청 지원

Architecture:
    - 미디어는 피어 간 직접 전송 (서버는 미디어를 중계하지 않음)
    - ChannelRegistry: 채널 및 구독자 상태 관리
    - WebSocket: 실시간 시그널링 메시지 전송
"""
import glob
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# 환경변수 로드 (config/.env)
load_dotenv(Path(__file__).parent / "config" / ".env")

from callcore.signaling.relay import ChannelRegistry  # noqa: E402
from callcore.webrtc.config import signaling_config  # noqa: E402
from routes import health_router, signaling_router, init_registry  # noqa: E402


# 환경별 로그 레벨 설정 (환경변수로 제어)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENV = os.getenv("ENV", "development")
LOG_DIR = os.getenv("LOG_DIR", "logs")

# 로그 보관 기간 (일) - 기본 60일
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "60"))

# 허용 Origin 정규식 (로컬 네트워크 + 터널링 도메인)
CORS_ORIGIN_REGEX = os.getenv(
    "CORS_ORIGIN_REGEX",
    r"^http://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}|172\.\d{1,3}\.\d{1,3}\.\d{1,3}):\d+$"
    r"|^https://.*\.ngrok(-free)?\.(app|dev|io)$|^https://.*\.trycloudflare\.com$",
)


def cleanup_old_logs(log_dir: str = LOG_DIR, retention_days: int = LOG_RETENTION_DAYS) -> int:
    """오래된 로그 파일을 삭제합니다.

    파일명(server_YYYYMMDD.log)의 날짜가 보관 기간을 넘은 파일만 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    if not os.path.exists(log_dir):
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in glob.glob(os.path.join(log_dir, "server_*.log")):
        try:
            date_str = os.path.basename(log_file)[len("server_"):-len(".log")]
            if datetime.strptime(date_str, "%Y%m%d") < cutoff_date:
                os.remove(log_file)
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count


def setup_logging() -> None:
    """콘솔 + 날짜별 파일 로그 핸들러를 설정합니다."""
    os.makedirs(LOG_DIR, exist_ok=True)
    log_filename = os.path.join(LOG_DIR, f"server_{datetime.now().strftime('%Y%m%d')}.log")
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(),  # 콘솔 출력
            logging.FileHandler(log_filename, encoding="utf-8"),  # 파일 저장
        ],
    )


setup_logging()
logger = logging.getLogger(__name__)
logger.info(f"로깅 초기화 완료: level={LOG_LEVEL}, env={ENV}")


# 글로벌 채널 레지스트리
channel_registry = ChannelRegistry(max_subscribers=signaling_config.MAX_CHANNEL_SUBSCRIBERS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI 앱의 생명주기를 관리하는 컨텍스트 매니저.

    Note:
        - 시작: 오래된 로그 정리
        - 종료: 모든 채널 구독자 연결 종료
    """
    logger.info("시그널링 릴레이 서버 시작 중...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({LOG_RETENTION_DAYS}일 이상)")

    yield

    logger.info("서버 종료 중...")
    await channel_registry.close_all()


app = FastAPI(title="Video Call Signaling Relay", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(health_router)
app.include_router(signaling_router)

# WebSocket 시그널링 라우터에 레지스트리 전달
init_registry(channel_registry)


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트 (로드 밸런서용)."""
    return {"status": "ok", "service": "Video Call Signaling Relay"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")), log_level="info")
