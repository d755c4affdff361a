from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class RoomMessage(Base):
    __tablename__ = "room_messages"

    id = Column(String(36), primary_key=True)
    session_id = Column(String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    participant_key = Column(String(128), nullable=False)
    display_name = Column(String(64), nullable=True)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    session = relationship("Session", back_populates="messages")

    __table_args__ = (
        Index("idx_room_messages_session_created", "session_id", "created_at"),
    )
