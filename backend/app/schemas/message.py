"""
message.py - Pydantic schemas for room text chat.
"""

from datetime import datetime

from pydantic import ConfigDict, Field, field_serializer

from app.schemas.session import CamelModel, iso_utc


class MessageCreate(CamelModel):
    id: str | None = Field(None, description="Optional client-chosen UUID")
    participant_key: str | None = Field(None, alias="participantKey")
    display_name: str | None = Field(None, alias="displayName")
    message: str | None = None


class MessageRead(CamelModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    session_id: str = Field(..., alias="sessionId")
    participant_key: str = Field(..., alias="participantKey")
    display_name: str | None = Field(None, alias="displayName")
    message: str
    created_at: datetime

    @field_serializer("created_at")
    def serialize_created_at(self, value: datetime) -> str:
        return iso_utc(value)


class MessagePosted(CamelModel):
    stored: bool
    message: MessageRead | None = None


class MessageList(CamelModel):
    messages: list[MessageRead]
