"""
classmate_sdk/errors.py - Client-side failure taxonomy.

- ApiError: the service answered with an error body ({code, message, details}).
- RetryExhausted: transient failures outlasted every retry.
- MediaAcquisitionError: microphone denied or unavailable. Terminal for the
  attempt; the user has to retry explicitly.
- SignalingError: relay subscribe/publish failed. Retryable (re-subscribe).
- PeerConnectionError: ICE/peer failure. Degrades to waiting for a peer.
"""
from typing import Any


class ClassmateError(Exception):
    """Base class for SDK errors."""

    retryable: bool = False


class ApiError(ClassmateError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        # 409 try_again is a full room: retrying the same request cannot help
        if self.status_code == 409:
            return False
        return self.code == "try_again" or self.status_code >= 500


class RetryExhausted(ClassmateError):
    """Raised when all retry attempts are exhausted."""

    retryable = True

    def __init__(self, message=None, *, error_class=None, attempts=None, last_error=None):
        super().__init__(message or "Retry attempts exhausted")
        self.error_class = error_class
        self.attempts = attempts
        self.last_error = last_error


class MediaAcquisitionError(ClassmateError):
    retryable = False


class SignalingError(ClassmateError):
    retryable = True


class PeerConnectionError(ClassmateError):
    retryable = True
