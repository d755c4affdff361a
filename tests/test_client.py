"""HTTP client against a mocked transport: payloads, parsing, retry and polling."""

import json

import httpx
import pytest

from classmate_sdk.client import ClassmateClient, SessionClosed
from classmate_sdk.errors import ApiError, RetryExhausted
from classmate_sdk.signals import JoinSignal

SESSION_ID = "6f1c1c5e-8d7b-4a43-9b1e-0d6d7b2f8a11"


def _status_body(status, keys=("alice",)):
    return {
        "session": {
            "id": SESSION_ID,
            "topic": "math",
            "status": status,
            "capacity": 2,
            "created_at": "2026-03-02T09:00:00+00:00",
        },
        "members": [
            {"participantKey": k, "displayName": None, "joined_at": "2026-03-02T09:00:00+00:00"}
            for k in keys
        ],
        "memberCount": len(keys),
    }


def _client(handler, **kwargs):
    sleeps = []
    http_client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://test")
    client = ClassmateClient(
        "alice",
        display_name="Alice",
        http_client=http_client,
        sleep=sleeps.append,
        **kwargs,
    )
    return client, sleeps


def test_join_sends_camel_case_body():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(
            200,
            json={"sessionId": SESSION_ID, "status": "forming", "capacity": 2, "memberCount": 1},
        )

    client, _ = _client(handler)
    result = client.join("math", 2)

    assert seen[0].url.path == "/api/v1/join"
    assert json.loads(seen[0].content) == {
        "topic": "math",
        "participantKey": "alice",
        "capacity": 2,
        "displayName": "Alice",
    }
    assert result.session_id == SESSION_ID
    assert result.member_count == 1


def test_status_parses_members_and_slots():
    def handler(request):
        assert request.url.params["sessionId"] == SESSION_ID
        return httpx.Response(200, json=_status_body("active", keys=("bob", "alice")))

    client, _ = _client(handler)
    snapshot = client.status(SESSION_ID)

    assert snapshot.status == "active"
    assert snapshot.member_count == 2
    assert snapshot.slot_of("bob") == 0
    assert snapshot.slot_of("alice") == 1
    assert snapshot.slot_of("carol") is None


def test_invalid_input_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(
            400,
            json={
                "detail": {
                    "code": "invalid_input",
                    "message": "topic is required",
                    "details": {"field": "topic"},
                }
            },
        )

    client, sleeps = _client(handler)
    with pytest.raises(ApiError) as exc:
        client.join("", 2)

    assert len(calls) == 1
    assert sleeps == []
    assert exc.value.code == "invalid_input"
    assert exc.value.details == {"field": "topic"}
    assert exc.value.retryable is False


def test_try_again_is_retried_with_backoff():
    responses = [
        httpx.Response(503, json={"detail": {"code": "try_again", "message": "busy"}}),
        httpx.Response(500, json={"detail": {"code": "try_again", "message": "db"}}),
        httpx.Response(
            200,
            json={"sessionId": SESSION_ID, "status": "forming", "capacity": 2, "memberCount": 1},
        ),
    ]

    client, sleeps = _client(lambda request: responses.pop(0))
    result = client.join("math", 2)

    assert result.session_id == SESSION_ID
    assert sleeps == [2.0, 4.0]


def test_full_room_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(409, json={"detail": {"code": "try_again", "message": "full"}})

    client, _ = _client(handler)
    with pytest.raises(ApiError) as exc:
        client.join_session(SESSION_ID)
    assert exc.value.status_code == 409
    assert len(calls) == 1


def test_network_errors_exhaust_retries():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client, sleeps = _client(handler, max_retries=3, retry_max_wait=1.5)
    with pytest.raises(RetryExhausted):
        client.status(SESSION_ID)
    assert sleeps == [1.5, 1.5]


def test_poll_status_stops_after_closed():
    statuses = ["forming", "forming", "closed"]

    client, sleeps = _client(
        lambda request: httpx.Response(200, json=_status_body(statuses.pop(0))),
        poll_interval=5.0,
    )
    seen = [s.status for s in client.poll_status(SESSION_ID)]

    assert seen == ["forming", "forming", "closed"]
    assert sleeps == [5.0, 5.0]


def test_wait_until_active():
    bodies = [_status_body("forming"), _status_body("active", keys=("alice", "bob"))]
    client, _ = _client(lambda request: httpx.Response(200, json=bodies.pop(0)))

    snapshot = client.wait_until_active(SESSION_ID)
    assert snapshot.status == "active"
    assert snapshot.member_count == 2


def test_wait_until_active_raises_when_closed():
    client, _ = _client(lambda request: httpx.Response(200, json=_status_body("closed")))
    with pytest.raises(SessionClosed):
        client.wait_until_active(SESSION_ID)


def test_leave():
    def handler(request):
        assert request.url.path == "/api/v1/leave"
        assert json.loads(request.content) == {"sessionId": SESSION_ID, "participantKey": "alice"}
        return httpx.Response(200, json={"remaining": 0, "closed": True})

    client, _ = _client(handler)
    result = client.leave(SESSION_ID)
    assert result.remaining == 0
    assert result.closed is True


def test_open_session_omits_unset_fields():
    def handler(request):
        assert json.loads(request.content) == {"capacity": 3}
        return httpx.Response(201, json=_status_body("forming", keys=()))

    client, _ = _client(handler)
    snapshot = client.open_session(capacity=3)
    assert snapshot.member_count == 0


def test_messages():
    def handler(request):
        if request.method == "POST":
            body = json.loads(request.content)
            assert body["message"] == "hi"
            assert body["displayName"] == "Alice"
            return httpx.Response(200, json={"stored": True, "message": {"id": "m1"}})
        assert request.url.params["limit"] == "10"
        return httpx.Response(200, json={"messages": [{"id": "m1", "message": "hi"}]})

    client, _ = _client(handler)
    assert client.post_message(SESSION_ID, "hi")["stored"] is True
    assert client.messages(SESSION_ID, limit=10) == [{"id": "m1", "message": "hi"}]


def test_relay_signal_posts_wire_format():
    def handler(request):
        assert request.url.path == f"/api/v1/sessions/{SESSION_ID}/signal"
        assert json.loads(request.content) == {"type": "join", "from": "alice"}
        return httpx.Response(200, json={"delivered": 2})

    client, _ = _client(handler)
    assert client.relay_signal(SESSION_ID, JoinSignal(sender="alice")) == 2
