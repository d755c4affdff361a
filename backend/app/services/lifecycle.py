"""
lifecycle.py - Lazy session lifecycle evaluation.

There is no background timer. Every status read runs `evaluate` against the
current member count and wall clock, then persists the result with a
compare-and-swap (`status = target WHERE status = 'forming'`), so concurrent
pollers produce at most one effective transition.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session as DBSession

from app.config import settings
from app.core.clock import Clock, utc_now
from app.models import Session, SessionStatus
from app.services.errors import TransientStoreError
from app.services.ledger import MembershipLedger
from app.services.store import SessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LifecyclePolicy:
    wait_timeout: timedelta = timedelta(seconds=180)
    min_viable: int = 2

    @classmethod
    def from_settings(cls) -> "LifecyclePolicy":
        return cls(
            wait_timeout=timedelta(seconds=settings.WAIT_TIMEOUT_SECONDS),
            min_viable=settings.MIN_VIABLE_MEMBERS,
        )


class SessionLike(Protocol):
    status: str
    capacity: int
    created_at: datetime


def evaluate(
    session: SessionLike,
    member_count: int,
    now: datetime,
    policy: LifecyclePolicy = LifecyclePolicy(),
) -> SessionStatus:
    """
    Target status for `session` given its member count at `now`.

    Only a forming session can move; active and closed are returned as-is.
    Full room activates at once. After the wait timeout a viable room
    (>= min_viable members) activates with a partial fill, anything smaller
    is closed.
    """
    status = SessionStatus(session.status)
    if status is not SessionStatus.FORMING:
        return status

    if member_count >= session.capacity:
        return SessionStatus.ACTIVE

    if now - session.created_at >= policy.wait_timeout:
        if member_count >= policy.min_viable:
            return SessionStatus.ACTIVE
        return SessionStatus.CLOSED

    return SessionStatus.FORMING


@dataclass
class MemberSnapshot:
    participant_key: str
    display_name: str | None
    joined_at: datetime


@dataclass
class SessionSnapshot:
    """Status-endpoint view of one session after lifecycle evaluation."""

    id: str
    topic: str
    status: SessionStatus
    capacity: int
    created_at: datetime
    members: list[MemberSnapshot] = field(default_factory=list)

    @property
    def member_count(self) -> int:
        return len(self.members)


class LifecycleService:
    def __init__(
        self,
        db: DBSession,
        policy: LifecyclePolicy | None = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.policy = policy or LifecyclePolicy.from_settings()
        self.clock = clock
        self.store = SessionStore(db)
        self.ledger = MembershipLedger(db)

    def settle(self, session: Session, member_count: int, now: datetime) -> Session:
        """
        Apply `evaluate` and persist any forming -> X move with a CAS.

        Does not commit. Returns the session as stored after the attempt; if
        another caller transitioned it first, that caller's result wins.
        """
        target = evaluate(session, member_count, now, self.policy)
        if target.value == session.status:
            return session

        if not self.store.transition(session.id, SessionStatus.FORMING, target):
            logger.debug(
                "Session %s transition to %s lost to a concurrent writer",
                session.id,
                target.value,
            )
        return self.store.require(session.id)

    def refresh(self, session_id: str) -> SessionSnapshot:
        """
        Read a session, evaluate its lifecycle and return the settled view.

        Raises:
            SessionNotFoundError: Unknown session id.
            TransientStoreError: Datastore failure (safe to retry).
        """
        try:
            session = self.store.require(session_id)
            members = self.ledger.list_members(session_id)
            session = self.settle(session, len(members), self.clock())
            view = snapshot(session, members)
            self.db.commit()
        except DBAPIError as e:
            self.db.rollback()
            logger.exception("Status refresh failed for session %s", session_id)
            raise TransientStoreError("Datastore unavailable, try again") from e

        return view


def snapshot(session: Session, members) -> SessionSnapshot:
    return SessionSnapshot(
        id=session.id,
        topic=session.topic,
        status=SessionStatus(session.status),
        capacity=session.capacity,
        created_at=session.created_at,
        members=[
            MemberSnapshot(
                participant_key=m.participant_key,
                display_name=m.display_name,
                joined_at=m.joined_at,
            )
            for m in members
        ],
    )
