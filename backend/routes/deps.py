"""공유 의존성 모듈.

시그널링 릴레이와 API 라우터가 공통으로 사용하는 접근 토큰 검증을 정의합니다.
ACCESS_PASSWORD가 비어 있으면 검증을 생략합니다 (로컬 개발용).
"""

import os
import secrets
from typing import Optional

from fastapi import Header, HTTPException


def get_access_password() -> str:
    """접근 비밀번호 (요청 시점의 환경 변수 값)."""
    return os.getenv("ACCESS_PASSWORD", "")


async def verify_auth_header(authorization: Optional[str] = Header(None)) -> bool:
    """Authorization: Bearer 헤더를 검증합니다.

    Raises:
        HTTPException: 401 - 헤더 누락, 형식 오류, 비밀번호 불일치
    """
    password = get_access_password()
    if not password:
        return True
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")
    scheme, _, credential = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credential:
        raise HTTPException(status_code=401, detail="Invalid authorization format")
    if not secrets.compare_digest(credential, password):
        raise HTTPException(status_code=401, detail="Invalid password")
    return True


def verify_ws_token(token: Optional[str]) -> bool:
    """시그널링 WebSocket 연결의 token 쿼리 파라미터를 검증합니다."""
    password = get_access_password()
    if not password:
        return True
    return token is not None and secrets.compare_digest(token, password)
