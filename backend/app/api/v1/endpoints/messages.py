"""
messages.py - Room text chat endpoints (post + latest-N retrieval).
"""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session as DBSession

from app.api.v1.deps import get_clock
from app.api.v1.errors import ERROR_RESPONSES, http_error
from app.core.clock import Clock
from app.database import get_db
from app.models import RoomMessage
from app.schemas.message import MessageCreate, MessageList, MessagePosted, MessageRead
from app.services.errors import MatchmakingError
from app.services.messages import RoomMessageService

logger = logging.getLogger(__name__)

router = APIRouter()


def _message_read(row: RoomMessage) -> MessageRead:
    return MessageRead(
        id=row.id,
        session_id=row.session_id,
        participant_key=row.participant_key,
        display_name=row.display_name,
        message=row.message,
        created_at=row.created_at,
    )


@router.post(
    "/sessions/{session_id}/messages",
    response_model=MessagePosted,
    responses=ERROR_RESPONSES,
    summary="Post a chat message to a session",
)
def post_message(
    session_id: str,
    request: MessageCreate,
    db: DBSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> MessagePosted:
    """Whitespace-only messages are accepted and dropped (`stored: false`)."""
    service = RoomMessageService(db, clock=clock)
    try:
        row = service.post(
            session_id,
            request.participant_key,
            request.message,
            display_name=request.display_name,
            message_id=request.id,
        )
    except MatchmakingError as e:
        raise http_error(e)
    if row is None:
        return MessagePosted(stored=False)
    return MessagePosted(stored=True, message=_message_read(row))


@router.get(
    "/sessions/{session_id}/messages",
    response_model=MessageList,
    responses=ERROR_RESPONSES,
    summary="Latest chat messages, oldest first",
)
def list_messages(
    session_id: str,
    limit: int | None = Query(None, ge=1),
    db: DBSession = Depends(get_db),
) -> MessageList:
    service = RoomMessageService(db)
    try:
        rows = service.latest(session_id, limit=limit)
    except MatchmakingError as e:
        raise http_error(e)
    return MessageList(messages=[_message_read(row) for row in rows])
