"""FastAPI 라우터 모듈.

app.py에서 분리된 시그널링 릴레이 및 API 엔드포인트들을 제공합니다.
"""

from .health import router as health_router
from .signaling import router as signaling_router, init_registry, get_registry
from .deps import verify_auth_header, verify_ws_token

__all__ = [
    "health_router",
    "signaling_router",
    "init_registry",
    "get_registry",
    "verify_auth_header",
    "verify_ws_token",
]
