"""
relay.py - Server-side publisher for the Signaling Relay.

Channel `<prefix>:<sessionId>`, one per session. The server checks the
envelope (`type` and `from`) and forwards the payload untouched.
"""

import json
import logging
from typing import Any, Callable

import redis

from app.config import settings
from app.services.errors import InvalidInputError, TransientStoreError

logger = logging.getLogger(__name__)

SIGNAL_TYPES = frozenset({"join", "offer", "answer", "ice", "leave"})


def channel_name(session_id: str, prefix: str | None = None) -> str:
    return f"{prefix or settings.SIGNAL_CHANNEL_PREFIX}:{session_id}"


def validate_envelope(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise InvalidInputError("signal", "signal must be a JSON object")
    if payload.get("type") not in SIGNAL_TYPES:
        raise InvalidInputError(
            "type", f"type must be one of {', '.join(sorted(SIGNAL_TYPES))}"
        )
    sender = payload.get("from")
    if not isinstance(sender, str) or not sender.strip():
        raise InvalidInputError("from", "from is required")
    return payload


class SignalingRelay:
    def __init__(self, client_factory: Callable[[], redis.Redis], prefix: str | None = None):
        self._client_factory = client_factory
        self.prefix = prefix or settings.SIGNAL_CHANNEL_PREFIX

    def publish(self, session_id: str, payload: dict[str, Any]) -> int:
        """
        Publish one signal; returns the number of listeners that received it.

        Raises:
            InvalidInputError: Envelope is not a signal.
            TransientStoreError: Redis unreachable.
        """
        payload = validate_envelope(payload)
        channel = channel_name(session_id, self.prefix)
        try:
            delivered = self._client_factory().publish(channel, json.dumps(payload))
        except (redis.RedisError, OSError) as e:
            logger.exception("Publishing %s signal to %s failed", payload["type"], channel)
            raise TransientStoreError("Signaling relay unavailable, try again") from e

        logger.debug(
            "Relayed %s from %s to %s (%d listeners)",
            payload["type"],
            payload["from"],
            channel,
            delivered,
        )
        return delivered

    def announce_leave(self, session_id: str, participant_key: str) -> None:
        """Best-effort `leave` on a participant's behalf; failures are only logged."""
        try:
            self.publish(session_id, {"type": "leave", "from": participant_key})
        except TransientStoreError:
            logger.warning(
                "Could not announce leave of %s in session %s", participant_key, session_id
            )
