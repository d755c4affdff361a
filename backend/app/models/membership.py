from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class Membership(Base):
    """
    One row per (session, participant).

    The unique constraint makes a repeated join an upsert (joined_at refresh)
    instead of a duplicate row.
    """

    __tablename__ = "session_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    participant_key = Column(String(128), nullable=False)
    display_name = Column(String(64), nullable=True)
    joined_at = Column(DateTime, nullable=False, server_default=func.now())

    session = relationship("Session", back_populates="members")

    __table_args__ = (
        UniqueConstraint("session_id", "participant_key", name="uq_session_member"),
        Index("idx_session_members_joined", "session_id", "joined_at"),
        Index("idx_session_members_participant", "participant_key"),
    )
