"""
session.py - Matchmaking session record.

`status` only moves forward: forming -> active, forming -> closed, and
active -> closed through an explicit leave that empties the session.
All status writes are compare-and-swap updates (see app.services.store).

`member_count` mirrors the number of rows in session_members and is only
changed inside the same transaction as the membership insert/delete, through a
conditional UPDATE guarded by `member_count < capacity`.
"""

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class Session(Base):
    __tablename__ = "sessions"

    id = Column(String(36), primary_key=True)
    topic = Column(String(120), nullable=False, index=True)
    status = Column(String(16), nullable=False, default="forming", index=True)
    capacity = Column(Integer, nullable=False)
    member_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, index=True, server_default=func.now())

    # Relationships
    members = relationship(
        "Membership",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="Membership.joined_at",
    )
    messages = relationship("RoomMessage", back_populates="session", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("capacity > 0", name="session_capacity_positive"),
        CheckConstraint("member_count >= 0", name="session_member_count_non_negative"),
        CheckConstraint(
            "status IN ('forming', 'active', 'closed')", name="session_status_valid"
        ),
        # Packing search: oldest forming session for a topic
        Index("idx_sessions_topic_status_created", "topic", "status", "created_at"),
    )
