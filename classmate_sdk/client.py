"""
classmate_sdk/client.py - HTTP client for admission, status polling and leave.
"""

import logging
import os
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from .signals import Signal, encode_signal
from .transport import request_with_retry

logger = logging.getLogger(__name__)

FORMING = "forming"
ACTIVE = "active"
CLOSED = "closed"


@dataclass
class JoinResult:
    session_id: str
    status: str
    capacity: int
    member_count: int

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "JoinResult":
        return cls(
            session_id=data["sessionId"],
            status=data["status"],
            capacity=int(data["capacity"]),
            member_count=int(data["memberCount"]),
        )


@dataclass
class Member:
    participant_key: str
    display_name: str | None
    joined_at: str


@dataclass
class StatusSnapshot:
    session_id: str
    topic: str
    status: str
    capacity: int
    created_at: str
    members: list[Member] = field(default_factory=list)
    member_count: int = 0

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "StatusSnapshot":
        session = data["session"]
        members = [
            Member(
                participant_key=m["participantKey"],
                display_name=m.get("displayName"),
                joined_at=m["joined_at"],
            )
            for m in data.get("members", [])
        ]
        return cls(
            session_id=session["id"],
            topic=session["topic"],
            status=session["status"],
            capacity=int(session["capacity"]),
            created_at=session["created_at"],
            members=members,
            member_count=int(data.get("memberCount", len(members))),
        )

    def slot_of(self, participant_key: str) -> int | None:
        """0-based seat by join order, or None if not a member."""
        for index, member in enumerate(self.members):
            if member.participant_key == participant_key:
                return index
        return None


@dataclass
class LeaveResult:
    remaining: int
    closed: bool


class SessionClosed(Exception):
    """The session was closed before it became active."""

    def __init__(self, snapshot: StatusSnapshot):
        super().__init__(f"Session {snapshot.session_id} closed")
        self.snapshot = snapshot


class ClassmateClient:
    """
    One participant's view of the matchmaking service.

    `participant_key` should be a stable device identity; `display_name` is
    shown to other members but never used as a key.
    """

    def __init__(
        self,
        participant_key: str,
        display_name: str | None = None,
        server_url: str | None = None,
        max_retries: int = 5,
        retry_min_wait: float = 1.0,
        retry_max_wait: float = 10.0,
        poll_interval: float = 5.0,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.participant_key = participant_key
        self.display_name = display_name
        self.server_url = server_url or os.getenv(
            "CLASSMATE_SERVER_URL", "http://localhost:8000"
        )
        self.max_retries = max_retries
        self.retry_min_wait = retry_min_wait
        self.retry_max_wait = retry_max_wait
        self.poll_interval = poll_interval
        self.sleep = sleep

        self.http_client = http_client or httpx.Client(
            base_url=self.server_url,
            timeout=30.0,
            headers={"Content-Type": "application/json"},
        )

    def __enter__(self) -> "ClassmateClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.http_client.close()

    def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        return request_with_retry(
            self.http_client,
            method,
            f"/api/v1{path}",
            max_retries=self.max_retries,
            min_wait=self.retry_min_wait,
            max_wait=self.retry_max_wait,
            sleep=self.sleep,
            **kwargs,
        )

    # --- Admission & membership ---

    def join(self, topic: str, capacity: int) -> JoinResult:
        """Join the oldest forming session for `topic` with room, or start one."""
        body = {
            "topic": topic,
            "participantKey": self.participant_key,
            "capacity": capacity,
        }
        if self.display_name:
            body["displayName"] = self.display_name
        result = JoinResult.from_json(self._call("POST", "/join", json=body))
        logger.info(
            "Joined session %s (%s, %d/%d)",
            result.session_id,
            result.status,
            result.member_count,
            result.capacity,
        )
        return result

    def join_session(self, session_id: str) -> JoinResult:
        body = {"sessionId": session_id, "participantKey": self.participant_key}
        if self.display_name:
            body["displayName"] = self.display_name
        return JoinResult.from_json(self._call("POST", "/session-join", json=body))

    def open_session(
        self,
        topic: str | None = None,
        capacity: int | None = None,
        session_id: str | None = None,
    ) -> StatusSnapshot:
        body = {
            k: v
            for k, v in {"sessionId": session_id, "topic": topic, "capacity": capacity}.items()
            if v is not None
        }
        return StatusSnapshot.from_json(self._call("POST", "/sessions", json=body))

    def leave(self, session_id: str) -> LeaveResult:
        data = self._call(
            "POST",
            "/leave",
            json={"sessionId": session_id, "participantKey": self.participant_key},
        )
        return LeaveResult(remaining=int(data["remaining"]), closed=bool(data["closed"]))

    # --- Status ---

    def status(self, session_id: str) -> StatusSnapshot:
        return StatusSnapshot.from_json(
            self._call("GET", "/status", params={"sessionId": session_id})
        )

    def poll_status(self, session_id: str) -> Iterator[StatusSnapshot]:
        """
        Yield a status snapshot every `poll_interval` seconds.

        Polling continues for as long as the session is forming or active
        (there is no push channel for status); the generator ends after
        yielding a closed snapshot.
        """
        while True:
            snapshot = self.status(session_id)
            yield snapshot
            if snapshot.status == CLOSED:
                return
            self.sleep(self.poll_interval)

    def wait_until_active(self, session_id: str, min_members: int = 2) -> StatusSnapshot:
        """
        Block until the session is active with at least `min_members`.

        Raises:
            SessionClosed: The session was abandoned instead.
        """
        for snapshot in self.poll_status(session_id):
            if snapshot.status == CLOSED:
                raise SessionClosed(snapshot)
            if snapshot.status == ACTIVE and snapshot.member_count >= min_members:
                return snapshot
        raise SessionClosed(snapshot)

    # --- Room messages ---

    def post_message(self, session_id: str, message: str, message_id: str | None = None) -> dict[str, Any]:
        body = {"participantKey": self.participant_key, "message": message}
        if self.display_name:
            body["displayName"] = self.display_name
        if message_id:
            body["id"] = message_id
        return self._call("POST", f"/sessions/{session_id}/messages", json=body)

    def messages(self, session_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        params = {"limit": limit} if limit else None
        return self._call("GET", f"/sessions/{session_id}/messages", params=params)["messages"]

    # --- Signaling over HTTP ---

    def relay_signal(self, session_id: str, signal: Signal) -> int:
        """Publish through the service when the relay is not directly reachable."""
        data = self._call(
            "POST",
            f"/sessions/{session_id}/signal",
            content=encode_signal(signal),
            headers={"Content-Type": "application/json"},
        )
        return int(data.get("delivered", 0))
