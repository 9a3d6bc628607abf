"""영상 통화 예외 정의.

호스트 UI에는 예외당 하나의 사용자 메시지(user_message)만 노출됩니다.

Hierarchy:
    CallError
    ├── MediaAcquisitionError
    │   ├── PermissionDenied      (치명적, 협상 전)
    │   └── DeviceUnavailable     (치명적, 협상 전)
    ├── TransportOpenError        (치명적, 시그널링 채널 연결 실패)
    ├── NegotiationError          (역할/상태 오용 - 통합 코드 버그)
    ├── ConnectivityFailed        (협상 후 복구 불가)
    └── TransientDisconnect       (자동 복구, 사용자 조치 불필요)
"""


class CallError(Exception):
    """영상 통화 관련 예외의 기본 클래스."""

    user_message = "Call error"

    def __init__(self, message: str = "", user_message: str = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class MediaAcquisitionError(CallError):
    """카메라/마이크 획득 실패."""

    user_message = "Failed to start call. Please check camera/microphone permissions."


class PermissionDenied(MediaAcquisitionError):
    """플랫폼이 카메라/마이크 접근을 거부함."""


class DeviceUnavailable(MediaAcquisitionError):
    """카메라/마이크 장치가 없거나 열 수 없음."""


class TransportOpenError(CallError):
    """시그널링 채널 참가 실패."""

    user_message = "Failed to start call. Could not reach the call server."


class NegotiationError(CallError):
    """잘못된 역할/상태에서 offer/answer 연산 호출."""

    user_message = "Call negotiation failed"


class ConnectivityFailed(CallError):
    """직접 경로와 릴레이 경로 모두 실패."""

    user_message = "Connection failed"


class TransientDisconnect(CallError):
    """일시적 연결 끊김 (ICE 재연결로 자동 복구)."""

    user_message = "Reconnecting..."
