"""시그널링 메시지 정의.

릴레이 채널을 통해 주고받는 JSON 메시지와 SDP/ICE 페이로드 변환 함수.

Wire Format:
    {
        "type": "offer" | "answer" | "ice-candidate" | "hangup",
        "payload": {...},      # session description 또는 ICE candidate
        "from": "<userId>",
        "to": "<userId>",
        "seq": 3               # 송신자-종류별 순번 (FIFO 검증용)
    }
"""

import json
import logging
from enum import Enum
from typing import Any, Dict, Optional, Union

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class MessageKind(str, Enum):
    """시그널링 메시지 종류."""

    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "ice-candidate"
    HANGUP = "hangup"


class SignalingMessage(BaseModel):
    """릴레이 채널로 전달되는 시그널링 메시지.

    ``from`` 은 파이썬 예약어이므로 필드명은 sender, JSON 키는 "from" 입니다.
    """

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    type: MessageKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    sender: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    seq: int = 0

    def to_wire(self) -> Dict[str, Any]:
        """릴레이로 보낼 dict (JSON 직렬화 가능)."""
        return {
            "type": self.type.value,
            "payload": self.payload,
            "from": self.sender,
            "to": self.to,
            "seq": self.seq,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_wire())


def parse_message(raw: Union[str, bytes, Dict[str, Any]]) -> Optional[SignalingMessage]:
    """수신한 원시 데이터를 메시지로 변환합니다.

    형식이 잘못된 메시지는 None을 반환합니다 (공유 채널이므로 무관한 트래픽일 수 있음).
    """
    try:
        if isinstance(raw, (str, bytes)):
            raw = json.loads(raw)
        if not isinstance(raw, dict):
            logger.debug(f"[Signaling] 메시지 형식 오류 (dict 아님): {type(raw).__name__}")
            return None
        return SignalingMessage.model_validate(raw)
    except (ValueError, ValidationError) as e:
        logger.debug(f"[Signaling] 잘못된 메시지 무시: {e}")
        return None


# ============================================================
# 페이로드 변환
# ============================================================

def description_to_payload(description: RTCSessionDescription) -> Dict[str, str]:
    return {"sdp": description.sdp, "type": description.type}


def payload_to_description(payload: Dict[str, Any]) -> RTCSessionDescription:
    """{"sdp", "type"} dict를 RTCSessionDescription으로 변환합니다.

    Raises:
        ValueError: sdp/type 누락 또는 잘못된 type
    """
    try:
        return RTCSessionDescription(sdp=payload["sdp"], type=payload["type"])
    except (KeyError, TypeError) as e:
        raise ValueError(f"Invalid session description payload: {e}") from e


def candidate_to_payload(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """브라우저 RTCIceCandidateInit 형식으로 변환합니다."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def payload_to_candidate(payload: Dict[str, Any]) -> Optional[RTCIceCandidate]:
    """브라우저 RTCIceCandidateInit을 aiortc RTCIceCandidate로 변환합니다.

    Returns:
        Optional[RTCIceCandidate]: end-of-candidates (빈 candidate 문자열)이면 None

    Raises:
        ValueError: 파싱 불가능한 candidate
    """
    # {"candidate": {"candidate": ..., "sdpMid": ...}} 형태로 감싸서 오는 클라이언트도 있음
    inner = payload.get("candidate")
    if isinstance(inner, dict):
        payload = inner
        inner = payload.get("candidate")

    candidate_str = inner or ""
    if not candidate_str:
        return None
    if candidate_str.startswith("candidate:"):
        candidate_str = candidate_str[10:]

    # foundation component protocol priority ip port "typ" type
    if len(candidate_str.split()) < 8:
        raise ValueError(f"Invalid ICE candidate: {candidate_str!r}")
    try:
        ice_candidate = candidate_from_sdp(candidate_str)
    except (ValueError, IndexError) as e:
        raise ValueError(f"Invalid ICE candidate: {candidate_str!r}") from e

    ice_candidate.sdpMid = payload.get("sdpMid")
    ice_candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return ice_candidate
