"""
errors.py - Typed failures for the matchmaking core.

Lower layers (store, ledger) raise these so the Admission Engine and the
Lifecycle Evaluator can choose retry-vs-abort. The API layer collapses them to
three user-visible codes: invalid_input, try_again, not_found.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    INVALID_INPUT = "invalid_input"
    TRY_AGAIN = "try_again"
    NOT_FOUND = "not_found"


class MatchmakingError(Exception):
    """Base exception for matchmaking failures."""

    code: ErrorCode = ErrorCode.TRY_AGAIN
    retryable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class InvalidInputError(MatchmakingError):
    """400 - missing or malformed input, rejected before any datastore call."""

    code = ErrorCode.INVALID_INPUT

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message, details={"field": field})


class SessionNotFoundError(MatchmakingError):
    """404 - unknown session id."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, session_id: str, message: str | None = None):
        self.session_id = session_id
        super().__init__(
            message or f"Session {session_id} not found",
            details={"session_id": session_id},
        )


class SessionClosedError(SessionNotFoundError):
    """The session exists but no longer admits members."""

    def __init__(self, session_id: str):
        super().__init__(session_id, f"Session {session_id} is closed")


class SlotConflictError(MatchmakingError):
    """
    A conditional write lost a race (slot taken, status already moved,
    duplicate insert). Absorbed by the Admission Engine; only surfaces once
    every attempt has been spent.
    """

    code = ErrorCode.TRY_AGAIN
    retryable = True


class TransientStoreError(MatchmakingError):
    """Datastore failure. Safe to retry the whole call."""

    code = ErrorCode.TRY_AGAIN
    retryable = True


class SessionFullError(SlotConflictError):
    """Direct join into a session whose seats are all taken."""

    retryable = False
