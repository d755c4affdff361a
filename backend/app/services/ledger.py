"""
ledger.py - Membership Ledger.

Rows are keyed by (session_id, participant_key). A repeated join refreshes
joined_at instead of adding a row. The ledger enforces no capacity and has no
authority over session status: callers pass an `admit` guard (the Session
Store's slot claim) so the seat check runs in the same transaction as the
insert.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session as DBSession

from app.models import Membership, Session
from app.services.errors import SlotConflictError

logger = logging.getLogger(__name__)


class MembershipLedger:
    def __init__(self, db: DBSession):
        self.db = db

    def refresh(
        self,
        session_id: str,
        participant_key: str,
        now: datetime,
        display_name: str | None = None,
    ) -> bool:
        """Touch an existing row's joined_at. False if the pair has no row."""
        values: dict = {"joined_at": now}
        if display_name is not None:
            values["display_name"] = display_name
        stmt = (
            update(Membership)
            .where(
                Membership.session_id == session_id,
                Membership.participant_key == participant_key,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def join(
        self,
        session_id: str,
        participant_key: str,
        now: datetime,
        display_name: str | None = None,
        admit: Callable[[], bool] | None = None,
    ) -> bool:
        """
        Upsert the (session, participant) row.

        Returns True if a new row was inserted, False if an existing one was
        refreshed. `admit` is only consulted for new rows.

        Raises:
            SlotConflictError: If `admit` refuses the new row.
            IntegrityError: If a concurrent join inserted the same pair first.
        """
        if self.refresh(session_id, participant_key, now, display_name):
            return False

        if admit is not None and not admit():
            raise SlotConflictError(
                f"No seat left in session {session_id}",
                details={"session_id": session_id},
            )

        self.db.add(
            Membership(
                session_id=session_id,
                participant_key=participant_key,
                display_name=display_name,
                joined_at=now,
            )
        )
        self.db.flush()
        logger.debug("Member %s joined session %s", participant_key, session_id)
        return True

    def leave(self, session_id: str, participant_key: str) -> bool:
        """Delete the row. True if a row was removed."""
        stmt = (
            delete(Membership)
            .where(
                Membership.session_id == session_id,
                Membership.participant_key == participant_key,
            )
            .execution_options(synchronize_session=False)
        )
        removed = self.db.execute(stmt).rowcount == 1
        if removed:
            logger.debug("Member %s left session %s", participant_key, session_id)
        return removed

    def list_members(self, session_id: str) -> list[Membership]:
        """Members ordered by joined_at ascending; slot order depends on this."""
        stmt = (
            select(Membership)
            .where(Membership.session_id == session_id)
            .order_by(Membership.joined_at.asc(), Membership.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(self.db.scalars(stmt))

    def count(self, session_id: str) -> int:
        stmt = select(func.count()).select_from(Membership).where(
            Membership.session_id == session_id
        )
        return int(self.db.scalar(stmt) or 0)

    def find_in_topic(
        self, topic: str, participant_key: str, status: str
    ) -> Membership | None:
        """The participant's membership in a `status` session of `topic`, if any."""
        stmt = (
            select(Membership)
            .join(Session, Session.id == Membership.session_id)
            .where(
                Session.topic == topic,
                Session.status == status,
                Membership.participant_key == participant_key,
            )
            .order_by(Session.created_at.asc())
            .limit(1)
        )
        return self.db.scalars(stmt).first()
