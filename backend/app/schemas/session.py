"""
session.py - Pydantic schemas for admission, status and leave.

Wire names are camelCase (`sessionId`, `participantKey`, `memberCount`)
except the timestamps, which keep `created_at` / `joined_at`. Request fields
are optional at this layer so the service can report which one is missing.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from app.core.clock import UTC
from app.models import SessionStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def iso_utc(value: datetime) -> str:
    return value.replace(tzinfo=UTC).isoformat()


# --- Requests ---


class JoinRequest(CamelModel):
    topic: str | None = Field(None, description="Admission matching tag")
    participant_key: str | None = Field(
        None, alias="participantKey", description="Stable device identity"
    )
    capacity: int | None = Field(None, description="Seats, used when a session is created")
    display_name: str | None = Field(None, alias="displayName")


class SessionJoinRequest(CamelModel):
    session_id: str | None = Field(None, alias="sessionId")
    participant_key: str | None = Field(None, alias="participantKey")
    display_name: str | None = Field(None, alias="displayName")


class LeaveRequest(CamelModel):
    session_id: str | None = Field(None, alias="sessionId")
    participant_key: str | None = Field(None, alias="participantKey")


class SessionCreateRequest(CamelModel):
    """Quick room: every field optional, an existing id is returned as-is."""

    session_id: str | None = Field(None, alias="sessionId")
    topic: str | None = None
    capacity: int | None = None


# --- Responses ---


class JoinResponse(CamelModel):
    session_id: str = Field(..., alias="sessionId")
    status: SessionStatus
    capacity: int
    member_count: int = Field(..., alias="memberCount")


class LeaveResponse(BaseModel):
    remaining: int
    closed: bool


class SessionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    topic: str
    status: SessionStatus
    capacity: int
    created_at: datetime

    @field_serializer("created_at")
    def serialize_created_at(self, value: datetime) -> str:
        return iso_utc(value)


class MemberRead(CamelModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    participant_key: str = Field(..., alias="participantKey")
    display_name: str | None = Field(None, alias="displayName")
    joined_at: datetime

    @field_serializer("joined_at")
    def serialize_joined_at(self, value: datetime) -> str:
        return iso_utc(value)


class StatusResponse(CamelModel):
    session: SessionRead
    members: list[MemberRead]
    member_count: int = Field(..., alias="memberCount")


class SignalAccepted(BaseModel):
    delivered: int = Field(..., description="Listeners subscribed at publish time")


class ErrorDetail(BaseModel):
    code: str = Field(..., description="invalid_input | try_again | not_found")
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """
    Error body for every failure.

    HTTP 400: invalid_input
    HTTP 404: not_found
    HTTP 409/503: try_again (room full, lost race)
    HTTP 500: try_again (datastore failure)
    """

    detail: ErrorDetail
