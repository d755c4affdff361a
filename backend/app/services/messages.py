"""
messages.py - Room text chat for a session (post + latest-N retrieval only).
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session as DBSession

from app.config import settings
from app.core.clock import Clock, utc_now
from app.models import RoomMessage
from app.services.admission import (
    validate_display_name,
    validate_participant_key,
    validate_session_id,
    validate_uuid,
)
from app.services.errors import InvalidInputError, TransientStoreError
from app.services.store import SessionStore

logger = logging.getLogger(__name__)


class RoomMessageService:
    def __init__(
        self,
        db: DBSession,
        clock: Clock = utc_now,
        max_length: int | None = None,
        limit: int | None = None,
    ):
        self.db = db
        self.clock = clock
        self.max_length = max_length or settings.ROOM_MESSAGE_MAX_LENGTH
        self.limit = limit or settings.ROOM_MESSAGE_LIMIT
        self.store = SessionStore(db)

    def post(
        self,
        session_id: str,
        participant_key: str,
        message: str,
        display_name: str | None = None,
        message_id: str | None = None,
    ) -> RoomMessage | None:
        """
        Store one message. Whitespace-only text is accepted and ignored (None).

        `message_id` lets a client pick the id it already rendered
        optimistically; posting the same id twice keeps the first copy.
        """
        session_id = validate_session_id(session_id)
        participant_key = validate_participant_key(participant_key)
        display_name = validate_display_name(display_name)
        text = (message or "").strip()
        if len(text) > self.max_length:
            raise InvalidInputError(
                "message", f"message must be at most {self.max_length} characters"
            )
        if not text:
            return None
        if message_id is not None:
            message_id = validate_uuid(message_id, "id")

        self.store.require(session_id)
        if message_id is not None:
            existing = self.db.get(RoomMessage, message_id)
            if existing is not None:
                return self._same_room(existing, session_id)

        row = RoomMessage(
            id=message_id or str(uuid.uuid4()),
            session_id=session_id,
            participant_key=participant_key,
            display_name=display_name,
            message=text,
            created_at=self.clock(),
        )
        try:
            self.db.add(row)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.db.get(RoomMessage, row.id)
            if existing is None:
                raise
            return self._same_room(existing, session_id)
        except DBAPIError as e:
            self.db.rollback()
            logger.exception("Posting message to session %s failed", session_id)
            raise TransientStoreError("Datastore unavailable, try again") from e

        self.db.refresh(row)
        return row

    @staticmethod
    def _same_room(existing: RoomMessage, session_id: str) -> RoomMessage:
        if existing.session_id != session_id:
            raise InvalidInputError("id", "id is already used by another session")
        return existing

    def latest(self, session_id: str, limit: int | None = None) -> list[RoomMessage]:
        """The newest `limit` messages in chronological order."""
        session_id = validate_session_id(session_id)
        limit = min(limit or self.limit, self.limit)
        if limit <= 0:
            raise InvalidInputError("limit", "limit must be greater than 0")

        self.store.require(session_id)
        stmt = (
            select(RoomMessage)
            .where(RoomMessage.session_id == session_id)
            .order_by(RoomMessage.created_at.desc(), RoomMessage.id.desc())
            .limit(limit)
        )
        rows = list(self.db.scalars(stmt))
        rows.reverse()
        return rows
