"""
store.py - Session Store repository.

Every write here is a single conditional statement (compare-and-swap on
status, guarded increment on member_count). There is no in-process lock:
concurrent request handlers coordinate only through these statements.
Transaction boundaries belong to the caller.
"""

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from app.models import Session, SessionStatus
from app.services.errors import SessionNotFoundError, SlotConflictError

logger = logging.getLogger(__name__)


class SessionStore:
    def __init__(self, db: DBSession):
        self.db = db

    def get(self, session_id: str) -> Session | None:
        # populate_existing: never trust an identity-map copy after a CAS
        return self.db.get(Session, session_id, populate_existing=True)

    def require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def create(
        self,
        topic: str,
        capacity: int,
        now: datetime,
        session_id: str | None = None,
    ) -> Session:
        """
        Insert a new forming session.

        Raises:
            SlotConflictError: If `session_id` is already taken. The transaction
                must be rolled back by the caller.
        """
        session = Session(
            id=session_id or str(uuid.uuid4()),
            topic=topic,
            status=SessionStatus.FORMING.value,
            capacity=capacity,
            member_count=0,
            created_at=now,
        )
        self.db.add(session)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise SlotConflictError(
                f"Session {session.id} already exists", details={"session_id": session.id}
            ) from e
        logger.info(
            "Created session %s (topic=%s, capacity=%d)", session.id, topic, capacity
        )
        return session

    def find_open_forming(self, topic: str, limit: int = 10) -> list[Session]:
        """Forming sessions for `topic` that still have room, oldest first."""
        stmt = (
            select(Session)
            .where(
                Session.topic == topic,
                Session.status == SessionStatus.FORMING.value,
                Session.member_count < Session.capacity,
            )
            .order_by(Session.created_at.asc(), Session.id.asc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt))

    def claim_slot(
        self, session_id: str, statuses: Iterable[SessionStatus] = (SessionStatus.FORMING,)
    ) -> bool:
        """
        Atomically take one seat: increments member_count only while the
        session is in one of `statuses` and below capacity.
        """
        stmt = (
            update(Session)
            .where(
                Session.id == session_id,
                Session.status.in_([s.value for s in statuses]),
                Session.member_count < Session.capacity,
            )
            .values(member_count=Session.member_count + 1)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def release_slot(self, session_id: str) -> bool:
        stmt = (
            update(Session)
            .where(Session.id == session_id, Session.member_count > 0)
            .values(member_count=Session.member_count - 1)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def transition(
        self, session_id: str, expected: SessionStatus, target: SessionStatus
    ) -> bool:
        """UPDATE status = target WHERE status = expected. True if this call won."""
        stmt = (
            update(Session)
            .where(Session.id == session_id, Session.status == expected.value)
            .values(status=target.value)
            .execution_options(synchronize_session=False)
        )
        won = self.db.execute(stmt).rowcount == 1
        if won:
            logger.info(
                "Session %s: %s -> %s", session_id, expected.value, target.value
            )
        return won

    def close(self, session_id: str) -> bool:
        """Mark closed from any non-closed status. True if this call closed it."""
        stmt = (
            update(Session)
            .where(
                Session.id == session_id,
                Session.status != SessionStatus.CLOSED.value,
            )
            .values(status=SessionStatus.CLOSED.value)
            .execution_options(synchronize_session=False)
        )
        won = self.db.execute(stmt).rowcount == 1
        if won:
            logger.info("Session %s closed", session_id)
        return won
