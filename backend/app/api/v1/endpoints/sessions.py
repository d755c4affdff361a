"""
sessions.py - Admission, status polling and membership endpoints.

ENDPOINTS (all under /api/v1):
- POST /join                     join-or-create for a topic
- GET  /status?sessionId=        lifecycle-evaluated status (404 if unknown)
- POST /session-join             join a known session id
- POST /leave                    leave; closes the session once empty
- POST /sessions                 create a forming session (quick room)
- POST /sessions/{id}/signal     publish one handshake message to the relay

Every handler is a short, independent transaction; no state is kept between
requests.
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.orm import Session as DBSession

from app.api.v1.deps import get_clock, get_policy, get_relay
from app.api.v1.errors import ERROR_RESPONSES, http_error
from app.core.clock import Clock
from app.database import get_db
from app.schemas.session import (
    JoinRequest,
    JoinResponse,
    LeaveRequest,
    LeaveResponse,
    MemberRead,
    SessionCreateRequest,
    SessionJoinRequest,
    SessionRead,
    SignalAccepted,
    StatusResponse,
)
from app.services.admission import AdmissionResult, AdmissionService, validate_session_id
from app.services.errors import MatchmakingError
from app.services.lifecycle import LifecyclePolicy, LifecycleService, SessionSnapshot
from app.services.relay import SignalingRelay

logger = logging.getLogger(__name__)

router = APIRouter()


def _join_response(result: AdmissionResult) -> JoinResponse:
    return JoinResponse(
        session_id=result.session_id,
        status=result.status,
        capacity=result.capacity,
        member_count=result.member_count,
    )


def _status_response(view: SessionSnapshot) -> StatusResponse:
    return StatusResponse(
        session=SessionRead(
            id=view.id,
            topic=view.topic,
            status=view.status,
            capacity=view.capacity,
            created_at=view.created_at,
        ),
        members=[
            MemberRead(
                participant_key=m.participant_key,
                display_name=m.display_name,
                joined_at=m.joined_at,
            )
            for m in view.members
        ],
        member_count=view.member_count,
    )


@router.post(
    "/join",
    response_model=JoinResponse,
    responses=ERROR_RESPONSES,
    summary="Join or create a session for a topic",
)
def join(
    request: JoinRequest,
    db: DBSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    policy: LifecyclePolicy = Depends(get_policy),
) -> JoinResponse:
    """
    Pack the caller into the oldest forming session of `topic` with room, or
    create one with `capacity` seats. Repeating the call while that session is
    still forming returns the same session.
    """
    service = AdmissionService(db, policy=policy, clock=clock)
    try:
        result = service.join_or_create(
            request.topic,
            request.participant_key,
            request.capacity,
            display_name=request.display_name,
        )
    except MatchmakingError as e:
        raise http_error(e)
    return _join_response(result)


@router.get(
    "/status",
    response_model=StatusResponse,
    responses=ERROR_RESPONSES,
    summary="Session status after lifecycle evaluation",
)
def get_status(
    session_id: str | None = Query(None, alias="sessionId"),
    db: DBSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    policy: LifecyclePolicy = Depends(get_policy),
) -> StatusResponse:
    try:
        session_id = validate_session_id(session_id)
        view = LifecycleService(db, policy=policy, clock=clock).refresh(session_id)
    except MatchmakingError as e:
        raise http_error(e)
    return _status_response(view)


@router.post(
    "/session-join",
    response_model=JoinResponse,
    responses=ERROR_RESPONSES,
    summary="Join a known session",
)
def session_join(
    request: SessionJoinRequest,
    db: DBSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    policy: LifecyclePolicy = Depends(get_policy),
) -> JoinResponse:
    service = AdmissionService(db, policy=policy, clock=clock)
    try:
        result = service.join_session(
            request.session_id,
            request.participant_key,
            display_name=request.display_name,
        )
    except MatchmakingError as e:
        raise http_error(e)
    return _join_response(result)


@router.post(
    "/leave",
    response_model=LeaveResponse,
    responses=ERROR_RESPONSES,
    summary="Leave a session",
)
def leave(
    request: LeaveRequest,
    db: DBSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    relay: SignalingRelay = Depends(get_relay),
) -> LeaveResponse:
    """
    Remove the caller's membership. The session is closed when nobody is
    left. Peers on the relay are told with a best-effort `leave` signal.
    """
    service = AdmissionService(db, clock=clock)
    try:
        result = service.leave(request.session_id, request.participant_key)
    except MatchmakingError as e:
        raise http_error(e)

    relay.announce_leave(request.session_id.strip().lower(), request.participant_key.strip())
    return LeaveResponse(remaining=result.remaining, closed=result.closed)


@router.post(
    "/sessions",
    response_model=StatusResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Create a forming session",
)
def create_session(
    request: SessionCreateRequest | None = None,
    db: DBSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> StatusResponse:
    """
    Quick room: create a session, optionally under a caller-chosen UUID.
    Creating an id that already exists returns that session unchanged.
    """
    request = request or SessionCreateRequest()
    service = AdmissionService(db, clock=clock)
    try:
        view = service.open_session(
            topic=request.topic,
            capacity=request.capacity,
            session_id=request.session_id,
        )
    except MatchmakingError as e:
        raise http_error(e)
    return _status_response(view)


@router.post(
    "/sessions/{session_id}/signal",
    response_model=SignalAccepted,
    responses=ERROR_RESPONSES,
    summary="Publish one signal to the session's relay channel",
)
def relay_signal(
    session_id: str,
    payload: Any = Body(...),
    relay: SignalingRelay = Depends(get_relay),
) -> SignalAccepted:
    """
    The envelope (`type`, `from`) is checked; the payload is forwarded as-is.
    Listeners that subscribe later never see this message.
    """
    try:
        session_id = validate_session_id(session_id)
        delivered = relay.publish(session_id, payload)
    except MatchmakingError as e:
        raise http_error(e)
    return SignalAccepted(delivered=delivered)
