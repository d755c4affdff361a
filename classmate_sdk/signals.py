"""
classmate_sdk/signals.py - Signal Message definitions for the peer handshake.

Messages are ephemeral: they live only on the pub/sub channel of one session
(`session:<sessionId>`), are never stored, and are not replayed to late
subscribers. The relay does no routing; consumers drop their own messages by
comparing `from` with their participant key.
"""
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

DEFAULT_CHANNEL_PREFIX = "session"


class SignalType(str, Enum):
    JOIN = "join"
    OFFER = "offer"
    ANSWER = "answer"
    ICE = "ice"
    LEAVE = "leave"


class SessionDescription(BaseModel):
    type: Literal["offer", "answer"]
    sdp: str


class IceCandidate(BaseModel):
    """One connectivity candidate, in browser RTCIceCandidateInit shape."""

    model_config = ConfigDict(frozen=True)

    candidate: str
    sdpMid: str | None = None
    sdpMLineIndex: int | None = None


class _Signal(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    sender: str = Field(..., alias="from", min_length=1)


class JoinSignal(_Signal):
    type: Literal["join"] = "join"


class OfferSignal(_Signal):
    type: Literal["offer"] = "offer"
    sdp: SessionDescription


class AnswerSignal(_Signal):
    type: Literal["answer"] = "answer"
    sdp: SessionDescription


class IceSignal(_Signal):
    type: Literal["ice"] = "ice"
    candidate: IceCandidate


class LeaveSignal(_Signal):
    type: Literal["leave"] = "leave"


Signal = Annotated[
    Union[JoinSignal, OfferSignal, AnswerSignal, IceSignal, LeaveSignal],
    Field(discriminator="type"),
]

_signal_adapter: TypeAdapter = TypeAdapter(Signal)


def channel_name(session_id: str, prefix: str = DEFAULT_CHANNEL_PREFIX) -> str:
    return f"{prefix}:{session_id}"


def parse_signal(raw: str | bytes | dict[str, Any]) -> Signal:
    """
    Decode one channel message.

    Raises:
        pydantic.ValidationError: Unknown type or missing fields.
    """
    if isinstance(raw, dict):
        return _signal_adapter.validate_python(raw)
    return _signal_adapter.validate_json(raw)


def encode_signal(signal: Signal) -> str:
    return signal.model_dump_json(by_alias=True, exclude_none=True)
