"""
Call Negotiation State Machine with fake media, relay and peer connection.
"""

import asyncio

import pytest

from classmate_sdk.call import CallSession, CallState, is_offerer
from classmate_sdk.errors import MediaAcquisitionError, PeerConnectionError, SignalingError
from classmate_sdk.signals import (
    AnswerSignal,
    IceCandidate,
    IceSignal,
    JoinSignal,
    LeaveSignal,
    OfferSignal,
    SessionDescription,
)

OFFER = SessionDescription(type="offer", sdp="v=0 offer")
ANSWER = SessionDescription(type="answer", sdp="v=0 answer")


class FakeMedia:
    def __init__(self, error=None):
        self.error = error
        self.acquired = 0
        self.released = 0
        self.muted = []

    async def acquire(self):
        self.acquired += 1
        if self.error is not None:
            raise self.error
        return "mic-track"

    async def release(self):
        self.released += 1

    def set_muted(self, muted):
        self.muted.append(muted)


class FakeChannel:
    def __init__(self, subscribe_errors=0):
        self.subscribe_errors = subscribe_errors
        self.subscribes = 0
        self.published = []
        self.closed = False
        self.publish_error = None
        self.queue: asyncio.Queue = asyncio.Queue()

    async def subscribe(self):
        self.subscribes += 1
        if self.subscribe_errors:
            self.subscribe_errors -= 1
            raise SignalingError("relay unreachable")

    async def publish(self, signal):
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append(signal)
        return 1

    async def listen(self):
        while True:
            signal = await self.queue.get()
            if signal is None:
                return
            yield signal

    async def close(self):
        self.closed = True

    def types(self):
        return [s.type for s in self.published]


class FakePeer:
    def __init__(self, track, on_ice, on_state):
        self.track = track
        self.on_ice = on_ice
        self.on_state = on_state
        self.remote = []
        self.candidates = []
        self.closed = False
        self.close_error = None

    async def create_offer(self):
        return OFFER

    async def create_answer(self):
        return ANSWER

    async def set_remote_description(self, description):
        self.remote.append(description)

    async def add_ice_candidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


class Harness:
    def __init__(self, key, media=None, channel=None):
        self.media = media or FakeMedia()
        self.channel = channel or FakeChannel()
        self.peers: list[FakePeer] = []
        self.states: list[CallState] = []
        self.errors: list[Exception] = []
        self.call = CallSession(
            key,
            self.media,
            self.channel,
            self.factory,
            on_state_change=self.states.append,
            on_error=self.errors.append,
        )

    def factory(self, track, on_ice, on_state):
        peer = FakePeer(track, on_ice, on_state)
        self.peers.append(peer)
        return peer

    @property
    def peer(self) -> FakePeer:
        return self.peers[-1]


def cand(n):
    return IceCandidate(candidate=f"candidate:{n} 1 udp 2122260223 10.0.0.{n} 5000 typ host", sdpMid="0", sdpMLineIndex=0)


@pytest.mark.asyncio
async def test_start_walks_to_waiting_and_announces():
    h = Harness("alice")
    await h.call.start()

    assert h.states == [
        CallState.AWAITING_LOCAL_MEDIA,
        CallState.CHANNEL_SUBSCRIBING,
        CallState.WAITING_FOR_PEER,
    ]
    assert h.channel.published == [JoinSignal(sender="alice")]


@pytest.mark.asyncio
async def test_media_denied_is_terminal_for_the_attempt():
    h = Harness("alice", media=FakeMedia(error=PermissionError("denied")))

    with pytest.raises(MediaAcquisitionError):
        await h.call.start()

    assert h.call.state is CallState.FAILED
    assert h.channel.subscribes == 0
    assert isinstance(h.errors[0], MediaAcquisitionError)


@pytest.mark.asyncio
async def test_subscribe_failure_is_retryable_and_keeps_media():
    h = Harness("alice", channel=FakeChannel(subscribe_errors=1))

    with pytest.raises(SignalingError):
        await h.call.start()
    assert h.call.state is CallState.FAILED

    await h.call.start()
    assert h.call.state is CallState.WAITING_FOR_PEER
    assert h.media.acquired == 1
    assert h.channel.subscribes == 2


@pytest.mark.asyncio
async def test_smaller_key_offers():
    h = Harness("alice")
    await h.call.start()

    await h.call.handle_signal(JoinSignal(sender="bob"))

    assert h.call.state is CallState.NEGOTIATING
    assert h.call.peer_key == "bob"
    assert h.channel.types() == ["join", "join", "offer"]
    assert h.channel.published[-1].sdp == OFFER

    await h.call.handle_signal(AnswerSignal(sender="bob", sdp=ANSWER))
    assert h.peer.remote == [ANSWER]

    await h.peer.on_state("connected")
    assert h.call.state is CallState.CONNECTED


@pytest.mark.asyncio
async def test_larger_key_answers():
    h = Harness("bob")
    await h.call.start()

    await h.call.handle_signal(JoinSignal(sender="alice"))
    # Re-announces so a peer that subscribed late learns about us; no offer
    assert h.channel.types() == ["join", "join"]

    await h.call.handle_signal(OfferSignal(sender="alice", sdp=OFFER))
    assert h.peer.remote == [OFFER]
    assert h.channel.published[-1] == AnswerSignal(sender="bob", sdp=ANSWER)


def test_tie_break_is_symmetric():
    assert is_offerer("alice", "bob") is True
    assert is_offerer("bob", "alice") is False


@pytest.mark.asyncio
async def test_own_messages_are_ignored():
    h = Harness("alice")
    await h.call.start()
    await h.call.handle_signal(JoinSignal(sender="alice"))

    assert h.call.state is CallState.WAITING_FOR_PEER
    assert h.peers == []


@pytest.mark.asyncio
async def test_join_echo_does_not_restart_negotiation():
    h = Harness("alice")
    await h.call.start()
    await h.call.handle_signal(JoinSignal(sender="bob"))
    await h.call.handle_signal(JoinSignal(sender="bob"))

    assert len(h.peers) == 1
    assert h.channel.types().count("offer") == 1


@pytest.mark.asyncio
async def test_third_participant_is_ignored_while_paired():
    h = Harness("alice")
    await h.call.start()
    await h.call.handle_signal(JoinSignal(sender="bob"))
    await h.call.handle_signal(JoinSignal(sender="carol"))

    assert h.call.peer_key == "bob"
    assert len(h.peers) == 1


@pytest.mark.asyncio
async def test_early_ice_is_buffered_and_deduplicated():
    h = Harness("bob")
    await h.call.start()
    await h.call.handle_signal(JoinSignal(sender="alice"))

    await h.call.handle_signal(IceSignal(sender="alice", candidate=cand(1)))
    await h.call.handle_signal(IceSignal(sender="alice", candidate=cand(2)))
    await h.call.handle_signal(IceSignal(sender="alice", candidate=cand(1)))
    assert h.peer.candidates == []

    await h.call.handle_signal(OfferSignal(sender="alice", sdp=OFFER))
    assert h.peer.candidates == [cand(1), cand(2)]

    await h.call.handle_signal(IceSignal(sender="alice", candidate=cand(3)))
    await h.call.handle_signal(IceSignal(sender="alice", candidate=cand(2)))
    assert h.peer.candidates == [cand(1), cand(2), cand(3)]


@pytest.mark.asyncio
async def test_ice_from_strangers_is_dropped():
    h = Harness("alice")
    await h.call.start()
    await h.call.handle_signal(JoinSignal(sender="bob"))
    await h.call.handle_signal(AnswerSignal(sender="bob", sdp=ANSWER))
    await h.call.handle_signal(IceSignal(sender="mallory", candidate=cand(9)))

    assert h.peer.candidates == []


@pytest.mark.asyncio
async def test_local_candidates_are_published():
    h = Harness("alice")
    await h.call.start()
    await h.call.handle_signal(JoinSignal(sender="bob"))

    await h.peer.on_ice(cand(4))
    assert h.channel.published[-1] == IceSignal(sender="alice", candidate=cand(4))


@pytest.mark.asyncio
async def test_peer_leave_returns_to_waiting():
    h = Harness("alice")
    await h.call.start()
    await h.call.handle_signal(JoinSignal(sender="bob"))
    await h.call.handle_signal(AnswerSignal(sender="bob", sdp=ANSWER))
    await h.peer.on_state("connected")

    await h.call.handle_signal(LeaveSignal(sender="bob"))

    assert h.call.state is CallState.WAITING_FOR_PEER
    assert h.call.peer_key is None
    assert h.peers[0].closed is True

    # A new peer can pair with a fresh connection
    await h.call.handle_signal(JoinSignal(sender="carol"))
    assert h.call.peer_key == "carol"
    assert len(h.peers) == 2


@pytest.mark.asyncio
async def test_connection_failure_degrades_to_waiting():
    h = Harness("alice")
    await h.call.start()
    await h.call.handle_signal(JoinSignal(sender="bob"))

    await h.peer.on_state("failed")

    assert h.call.state is CallState.WAITING_FOR_PEER
    assert isinstance(h.errors[-1], PeerConnectionError)
    assert h.peers[0].closed is True
    assert h.channel.published[-1] == JoinSignal(sender="alice")


@pytest.mark.asyncio
async def test_failure_reannounce_is_best_effort():
    h = Harness("alice")
    await h.call.start()
    await h.call.handle_signal(JoinSignal(sender="bob"))
    h.channel.publish_error = SignalingError("relay down")

    await h.peer.on_state("failed")

    assert h.call.state is CallState.WAITING_FOR_PEER
    assert h.call.peer_key is None


async def _deliver(sender: Harness, receiver: Harness, start: int) -> int:
    """Hand `sender`'s publications from index `start` to `receiver`."""
    published = sender.channel.published
    while start < len(published):
        signal = published[start]
        start += 1
        await receiver.call.handle_signal(signal)
    return start


@pytest.mark.asyncio
async def test_both_sides_failing_pair_again():
    a, b = Harness("alice"), Harness("bob")
    await a.call.start()
    await b.call.start()
    await a.call.handle_signal(JoinSignal(sender="bob"))
    await b.call.handle_signal(JoinSignal(sender="alice"))
    await b.call.handle_signal(OfferSignal(sender="alice", sdp=OFFER))
    await a.call.handle_signal(AnswerSignal(sender="bob", sdp=ANSWER))

    a_mark, b_mark = len(a.channel.published), len(b.channel.published)
    await a.peer.on_state("failed")
    await b.peer.on_state("failed")
    assert a.call.state is CallState.WAITING_FOR_PEER
    assert b.call.state is CallState.WAITING_FOR_PEER

    # Cross-deliver until neither side has anything new to say
    for _ in range(5):
        new_a = await _deliver(a, b, a_mark)
        new_b = await _deliver(b, a, b_mark)
        if (new_a, new_b) == (a_mark, b_mark):
            break
        a_mark, b_mark = new_a, new_b

    assert a.call.peer_key == "bob"
    assert b.call.peer_key == "alice"
    assert a.call.state is CallState.NEGOTIATING
    assert len(a.peers) == 2 and len(b.peers) == 2
    assert b.peer.remote == [OFFER]
    assert a.peer.remote == [ANSWER]

    await a.peer.on_state("connected")
    await b.peer.on_state("connected")
    assert a.call.state is CallState.CONNECTED
    assert b.call.state is CallState.CONNECTED


@pytest.mark.asyncio
async def test_peer_rejoin_renegotiates():
    h = Harness("alice")
    await h.call.start()
    await h.call.handle_signal(JoinSignal(sender="bob"))
    await h.call.handle_signal(AnswerSignal(sender="bob", sdp=ANSWER))
    await h.peer.on_state("connected")

    # bob reloaded and announced again
    await h.call.handle_signal(JoinSignal(sender="bob"))

    assert len(h.peers) == 2
    assert h.peers[0].closed is True
    assert h.channel.types().count("offer") == 2


@pytest.mark.asyncio
async def test_leave_tears_everything_down():
    h = Harness("alice")
    await h.call.start()
    await h.call.handle_signal(JoinSignal(sender="bob"))

    await h.call.leave()

    assert h.call.state is CallState.ENDED
    assert h.channel.published[-1] == LeaveSignal(sender="alice")
    assert h.peer.closed is True
    assert h.channel.closed is True
    assert h.media.released == 1

    # Idempotent
    await h.call.leave()
    assert h.media.released == 1


@pytest.mark.asyncio
async def test_teardown_continues_after_a_failing_step():
    h = Harness("alice")
    await h.call.start()
    await h.call.handle_signal(JoinSignal(sender="bob"))
    h.peer.close_error = RuntimeError("close blew up")

    with pytest.raises(RuntimeError):
        await h.call.leave()

    assert h.call.state is CallState.ENDED
    assert h.channel.closed is True
    assert h.media.released == 1


@pytest.mark.asyncio
async def test_leave_broadcast_is_best_effort():
    h = Harness("alice")
    await h.call.start()
    h.channel.publish_error = SignalingError("relay down")

    await h.call.leave()

    assert h.call.state is CallState.ENDED
    assert h.channel.closed is True
    assert h.media.released == 1


@pytest.mark.asyncio
async def test_leave_after_media_failure_releases_nothing_twice():
    h = Harness("alice", media=FakeMedia(error=PermissionError("denied")))
    with pytest.raises(MediaAcquisitionError):
        await h.call.start()

    await h.call.leave()
    assert h.media.released == 0
    assert h.channel.published == []


@pytest.mark.asyncio
async def test_mute_toggles_track():
    h = Harness("alice")
    h.call.set_muted(True)
    await h.call.start()
    h.call.set_muted(False)

    assert h.media.muted == [True, False]
    assert h.call.muted is False


@pytest.mark.asyncio
async def test_run_consumes_relay_until_left():
    h = Harness("bob")
    task = asyncio.create_task(h.call.run())
    await h.channel.queue.put(JoinSignal(sender="alice"))
    await h.channel.queue.put(OfferSignal(sender="alice", sdp=OFFER))
    await h.channel.queue.put(None)
    await asyncio.wait_for(task, timeout=5)

    assert h.call.peer_key == "alice"
    assert h.channel.types() == ["join", "join", "answer"]


@pytest.mark.asyncio
async def test_context_manager_leaves_on_exit():
    h = Harness("alice")
    async with h.call as call:
        await call.start()
    assert h.call.state is CallState.ENDED
    assert h.media.released == 1


@pytest.mark.asyncio
async def test_offer_without_prior_join_is_answered():
    h = Harness("bob")
    await h.call.start()

    await h.call.handle_signal(OfferSignal(sender="alice", sdp=OFFER))

    assert h.call.peer_key == "alice"
    assert h.call.state is CallState.NEGOTIATING
    assert h.channel.published[-1] == AnswerSignal(sender="bob", sdp=ANSWER)
