"""
errors.py - Map service failures to HTTP responses.

    invalid_input -> 400
    not_found     -> 404
    try_again     -> 409 (room full), 503 (lost every race), 500 (datastore)
"""

import logging

from fastapi import HTTPException, status

from app.schemas.session import ErrorResponse
from app.services.errors import (
    InvalidInputError,
    MatchmakingError,
    SessionFullError,
    SessionNotFoundError,
    SlotConflictError,
    TransientStoreError,
)

logger = logging.getLogger(__name__)


def status_for(error: MatchmakingError) -> int:
    if isinstance(error, InvalidInputError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, SessionNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, SessionFullError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, SlotConflictError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(error, TransientStoreError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def http_error(error: MatchmakingError) -> HTTPException:
    status_code = status_for(error)
    if status_code >= 500:
        logger.warning("Request failed (%d): %s", status_code, error.message)
    return HTTPException(status_code=status_code, detail=error.to_dict())


ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "invalid_input"},
    404: {"model": ErrorResponse, "description": "not_found"},
    409: {"model": ErrorResponse, "description": "try_again (room full)"},
    500: {"model": ErrorResponse, "description": "try_again (datastore failure)"},
    503: {"model": ErrorResponse, "description": "try_again (lost every race)"},
}
