"""통화 세션 모듈."""

from .session import CallSession, CallState, make_channel_name

__all__ = ["CallSession", "CallState", "make_channel_name"]
