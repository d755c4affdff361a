"""
admission.py - Admission Engine (join-or-create) and the membership write path.

INVARIANTS:
1. At most `capacity` live memberships per session. The seat is taken with a
   conditional UPDATE (store.claim_slot) in the same transaction as the
   membership insert; never read-then-write.
2. Repeated join by the same participant refreshes joined_at, never adds a row.
3. Packing: the oldest forming session of the topic with room is joined first.
4. Race losses (seat taken, duplicate insert) are retried internally; only
   exhausting every attempt surfaces as `try_again`.

All mutation of session_members goes through this module.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from functools import partial

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session as DBSession

from app.config import settings
from app.core.clock import Clock, utc_now
from app.models import Session, SessionStatus
from app.services.errors import (
    InvalidInputError,
    SessionClosedError,
    SessionFullError,
    SlotConflictError,
    TransientStoreError,
)
from app.services.ledger import MembershipLedger
from app.services.lifecycle import LifecyclePolicy, LifecycleService, SessionSnapshot, snapshot
from app.services.store import SessionStore

logger = logging.getLogger(__name__)

MAX_TOPIC_LENGTH = 120
MAX_PARTICIPANT_KEY_LENGTH = 128
MAX_DISPLAY_NAME_LENGTH = 64

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


@dataclass
class AdmissionResult:
    session_id: str
    status: SessionStatus
    capacity: int
    member_count: int


@dataclass
class LeaveResult:
    remaining: int
    closed: bool


# --- Validation (runs before any datastore call) ---


def validate_topic(topic: str | None) -> str:
    value = (topic or "").strip()
    if not value:
        raise InvalidInputError("topic", "topic is required")
    if len(value) > MAX_TOPIC_LENGTH:
        raise InvalidInputError(
            "topic", f"topic must be at most {MAX_TOPIC_LENGTH} characters"
        )
    return value


def validate_participant_key(participant_key: str | None) -> str:
    value = (participant_key or "").strip()
    if not value:
        raise InvalidInputError("participantKey", "participantKey is required")
    if len(value) > MAX_PARTICIPANT_KEY_LENGTH:
        raise InvalidInputError(
            "participantKey",
            f"participantKey must be at most {MAX_PARTICIPANT_KEY_LENGTH} characters",
        )
    return value


def validate_display_name(display_name: str | None) -> str | None:
    if display_name is None:
        return None
    value = display_name.strip()
    if len(value) > MAX_DISPLAY_NAME_LENGTH:
        raise InvalidInputError(
            "displayName",
            f"displayName must be at most {MAX_DISPLAY_NAME_LENGTH} characters",
        )
    return value or None


def validate_capacity(capacity, max_capacity: int) -> int:
    if isinstance(capacity, bool) or not isinstance(capacity, int):
        raise InvalidInputError("capacity", "capacity must be an integer")
    if capacity <= 0:
        raise InvalidInputError("capacity", "capacity must be greater than 0")
    if capacity > max_capacity:
        raise InvalidInputError(
            "capacity", f"capacity must be at most {max_capacity}"
        )
    return capacity


def validate_uuid(value: str | None, field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise InvalidInputError(field, f"{field} is required")
    if not _UUID_RE.match(value):
        raise InvalidInputError(field, f"{field} must be a UUID")
    return value.lower()


def validate_session_id(session_id: str | None) -> str:
    return validate_uuid(session_id, "sessionId")


class AdmissionService:
    """
    Join-or-create admission plus direct join and leave.

    Each public call is one short transaction (plus retries); nothing is held
    in process memory between calls.
    """

    def __init__(
        self,
        db: DBSession,
        policy: LifecyclePolicy | None = None,
        clock: Clock = utc_now,
        max_attempts: int | None = None,
        max_capacity: int | None = None,
    ):
        self.db = db
        self.clock = clock
        self.max_attempts = max_attempts or settings.ADMISSION_MAX_ATTEMPTS
        self.max_capacity = max_capacity or settings.MAX_CAPACITY
        self.store = SessionStore(db)
        self.ledger = MembershipLedger(db)
        self.lifecycle = LifecycleService(db, policy=policy, clock=clock)

    # --- Admission ---

    def join_or_create(
        self,
        topic: str,
        participant_key: str,
        capacity: int,
        display_name: str | None = None,
    ) -> AdmissionResult:
        """
        Make `participant_key` a member of a session for `topic`.

        Returns:
            AdmissionResult for the joined session, already re-evaluated by the
            lifecycle policy (a join that fills the room returns "active").

        Raises:
            InvalidInputError: Empty topic/key, non-positive capacity.
            SlotConflictError: Every attempt lost its race (retry later).
            TransientStoreError: Datastore failure (retry later).
        """
        topic = validate_topic(topic)
        participant_key = validate_participant_key(participant_key)
        capacity = validate_capacity(capacity, self.max_capacity)
        display_name = validate_display_name(display_name)

        return self._with_retries(
            "admission",
            partial(self._admit_once, topic, participant_key, capacity, display_name),
        )

    def _admit_once(
        self,
        topic: str,
        participant_key: str,
        capacity: int,
        display_name: str | None,
    ) -> AdmissionResult:
        now = self.clock()
        session = self._current_session(topic, participant_key, now)

        if session is not None:
            self.ledger.refresh(session.id, participant_key, now, display_name)
        else:
            session = self._pack(topic, participant_key, now, display_name)

        if session is None:
            session = self.store.create(topic, capacity, now)
            self.ledger.join(
                session.id,
                participant_key,
                now,
                display_name,
                admit=partial(self.store.claim_slot, session.id),
            )
            logger.info(
                "Admitted %s to new session %s (topic=%s)",
                participant_key,
                session.id,
                topic,
            )

        member_count = self.ledger.count(session.id)
        session = self.lifecycle.settle(self.store.require(session.id), member_count, now)
        return AdmissionResult(
            session_id=session.id,
            status=SessionStatus(session.status),
            capacity=session.capacity,
            member_count=member_count,
        )

    def _current_session(
        self, topic: str, participant_key: str, now
    ) -> Session | None:
        membership = self.ledger.find_in_topic(
            topic, participant_key, SessionStatus.FORMING.value
        )
        if membership is None:
            return None
        session = self.store.get(membership.session_id)
        if session is None or not self._still_forming(session, now):
            return None
        return session

    def _still_forming(self, session: Session, now) -> bool:
        """Settle an unpolled session at `now`; False once its wait has run out."""
        session = self.lifecycle.settle(session, self.ledger.count(session.id), now)
        if session.status == SessionStatus.FORMING.value:
            return True
        logger.info(
            "Session %s settled to %s before admission, skipping",
            session.id,
            session.status,
        )
        return False

    def _pack(
        self,
        topic: str,
        participant_key: str,
        now,
        display_name: str | None,
    ) -> Session | None:
        """Join the oldest forming session with room; None if every seat is gone."""
        for candidate in self.store.find_open_forming(topic):
            if not self._still_forming(candidate, now):
                continue
            try:
                self.ledger.join(
                    candidate.id,
                    participant_key,
                    now,
                    display_name,
                    admit=partial(self.store.claim_slot, candidate.id),
                )
            except SlotConflictError:
                logger.debug(
                    "Seat in session %s taken concurrently, trying next", candidate.id
                )
                continue
            logger.info(
                "Admitted %s to session %s (topic=%s)",
                participant_key,
                candidate.id,
                topic,
            )
            return candidate
        return None

    # --- Direct membership ---

    def join_session(
        self,
        session_id: str,
        participant_key: str,
        display_name: str | None = None,
    ) -> AdmissionResult:
        """
        Record membership in a known session (room/call pages).

        Takes a seat in a forming or active session; refreshes joined_at if
        the participant is already a member.

        Raises:
            SessionNotFoundError / SessionClosedError: Unknown or closed session.
            SessionFullError: No seat left.
        """
        session_id = validate_session_id(session_id)
        participant_key = validate_participant_key(participant_key)
        display_name = validate_display_name(display_name)

        return self._with_retries(
            "session join",
            partial(self._join_session_once, session_id, participant_key, display_name),
            retry_on_conflict=False,
        )

    def _join_session_once(
        self, session_id: str, participant_key: str, display_name: str | None
    ) -> AdmissionResult:
        now = self.clock()
        session = self.store.require(session_id)
        if session.status == SessionStatus.CLOSED.value:
            raise SessionClosedError(session_id)

        try:
            self.ledger.join(
                session_id,
                participant_key,
                now,
                display_name,
                admit=partial(
                    self.store.claim_slot,
                    session_id,
                    (SessionStatus.FORMING, SessionStatus.ACTIVE),
                ),
            )
        except SlotConflictError as e:
            session = self.store.require(session_id)
            if session.status == SessionStatus.CLOSED.value:
                raise SessionClosedError(session_id) from e
            raise SessionFullError(
                f"Session {session_id} is full",
                details={"session_id": session_id, "capacity": session.capacity},
            ) from e

        member_count = self.ledger.count(session_id)
        session = self.lifecycle.settle(self.store.require(session_id), member_count, now)
        return AdmissionResult(
            session_id=session.id,
            status=SessionStatus(session.status),
            capacity=session.capacity,
            member_count=member_count,
        )

    def leave(self, session_id: str, participant_key: str) -> LeaveResult:
        """
        Remove the membership; close the session once nobody is left.

        Leaving a session the participant is not in is a no-op that still
        reports the remaining count.
        """
        session_id = validate_session_id(session_id)
        participant_key = validate_participant_key(participant_key)

        try:
            self.store.require(session_id)
            if self.ledger.leave(session_id, participant_key):
                self.store.release_slot(session_id)
            remaining = self.ledger.count(session_id)
            closed = False
            if remaining == 0:
                self.store.close(session_id)
                closed = True
            self.db.commit()
        except DBAPIError as e:
            self.db.rollback()
            logger.exception("Leave failed for session %s", session_id)
            raise TransientStoreError("Datastore unavailable, try again") from e

        logger.info(
            "%s left session %s (remaining=%d, closed=%s)",
            participant_key,
            session_id,
            remaining,
            closed,
        )
        return LeaveResult(remaining=remaining, closed=closed)

    # --- Session creation ---

    def open_session(
        self,
        topic: str | None = None,
        capacity: int | None = None,
        session_id: str | None = None,
    ) -> SessionSnapshot:
        """
        Create a forming session, optionally with a caller-chosen UUID.

        Creating an id that already exists returns the existing session
        unchanged, so every client of a shared room link may call this.
        """
        topic = validate_topic(topic if topic is not None else "free")
        capacity = validate_capacity(
            capacity if capacity is not None else settings.DEFAULT_CAPACITY,
            self.max_capacity,
        )
        session_id = validate_session_id(session_id) if session_id else str(uuid.uuid4())

        def create_once() -> SessionSnapshot:
            session = self.store.get(session_id)
            if session is None:
                session = self.store.create(topic, capacity, self.clock(), session_id)
            return snapshot(session, self.ledger.list_members(session.id))

        return self._with_retries("session create", create_once)

    # --- Retry loop ---

    def _with_retries(self, label: str, attempt, retry_on_conflict: bool = True):
        for attempt_no in range(1, self.max_attempts + 1):
            try:
                result = attempt()
                self.db.commit()
                return result
            except SessionFullError:
                self.db.rollback()
                raise
            except SlotConflictError:
                self.db.rollback()
                if not retry_on_conflict:
                    raise
                logger.info("%s attempt %d lost a race, retrying", label, attempt_no)
            except IntegrityError:
                self.db.rollback()
                logger.info(
                    "%s attempt %d hit a concurrent insert, retrying", label, attempt_no
                )
            except DBAPIError as e:
                self.db.rollback()
                logger.exception("%s failed on datastore error", label)
                raise TransientStoreError("Datastore unavailable, try again") from e
            except Exception:
                self.db.rollback()
                raise

        raise SlotConflictError(
            f"{label} did not settle after {self.max_attempts} attempts",
            details={"attempts": self.max_attempts},
        )
