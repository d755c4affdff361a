"""
classmate_sdk/call.py - Call Negotiation State Machine (one participant, one session).

    idle -> awaiting_local_media -> channel_subscribing -> waiting_for_peer
         -> negotiating -> connected -> ended

- The offerer is chosen by a symmetric tie-break: the lexicographically
  smaller participant key offers, the other answers. Presence (`join`) is the
  only coordination message needed.
- A subscriber that learns of a new peer re-announces itself once, so a late
  subscriber (which never saw the earlier `join`) still discovers it.
- Peer `leave` and peer-connection failure return to waiting_for_peer; only a
  local leave() ends the call.
- Teardown runs every cleanup step even if an earlier one raises.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack
from enum import Enum
from typing import Any, Protocol

from .errors import MediaAcquisitionError, PeerConnectionError, SignalingError
from .signals import (
    AnswerSignal,
    IceCandidate,
    IceSignal,
    JoinSignal,
    LeaveSignal,
    OfferSignal,
    SessionDescription,
    Signal,
)

logger = logging.getLogger(__name__)


class CallState(str, Enum):
    IDLE = "idle"
    AWAITING_LOCAL_MEDIA = "awaiting_local_media"
    CHANNEL_SUBSCRIBING = "channel_subscribing"
    WAITING_FOR_PEER = "waiting_for_peer"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    ENDED = "ended"
    FAILED = "failed"


class MediaSource(Protocol):
    async def acquire(self) -> Any: ...

    async def release(self) -> None: ...

    def set_muted(self, muted: bool) -> None: ...


class SignalingChannel(Protocol):
    async def subscribe(self) -> None: ...

    async def publish(self, signal: Signal) -> int: ...

    def listen(self) -> Any: ...

    async def close(self) -> None: ...


class PeerConnection(Protocol):
    async def create_offer(self) -> SessionDescription: ...

    async def create_answer(self) -> SessionDescription: ...

    async def set_remote_description(self, description: SessionDescription) -> None: ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    async def close(self) -> None: ...


IceCallback = Callable[[IceCandidate], Awaitable[None]]
StateCallback = Callable[[str], Awaitable[None]]
PeerFactory = Callable[[Any, IceCallback, StateCallback], PeerConnection]


def is_offerer(own_key: str, peer_key: str) -> bool:
    """Deterministic, symmetric role choice: the smaller key offers."""
    return own_key < peer_key


class CallSession:
    """
    Drives one participant's peer connection for one session.

    Collaborators are injected: `media` (microphone), `channel` (Signaling
    Relay for the session) and `peer_factory(track, on_ice, on_state)` which
    builds a peer connection for the local track.
    """

    def __init__(
        self,
        participant_key: str,
        media: MediaSource,
        channel: SignalingChannel,
        peer_factory: PeerFactory,
        on_state_change: Callable[[CallState], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ):
        self.participant_key = participant_key
        self.media = media
        self.channel = channel
        self.peer_factory = peer_factory
        self.on_state_change = on_state_change
        self.on_error = on_error

        self.state = CallState.IDLE
        self.last_error: Exception | None = None
        self.peer_key: str | None = None
        self.muted = False

        self._track: Any = None
        self._subscribed = False
        self._pc: PeerConnection | None = None
        self._remote_description_set = False
        self._pending_ice: list[IceCandidate] = []
        self._seen_ice: set[IceCandidate] = set()
        self._cleanup = AsyncExitStack()

    # --- State ---

    def _set_state(self, state: CallState) -> None:
        if state is self.state:
            return
        logger.info(
            "[%s] call state %s -> %s", self.participant_key, self.state.value, state.value
        )
        self.state = state
        if self.on_state_change is not None:
            self.on_state_change(state)

    def _report(self, error: Exception) -> None:
        self.last_error = error
        if self.on_error is not None:
            self.on_error(error)

    @property
    def is_offerer(self) -> bool:
        return self.peer_key is not None and is_offerer(self.participant_key, self.peer_key)

    # --- Start / retry ---

    async def start(self) -> None:
        """
        Acquire the microphone, subscribe to the relay and announce presence.

        Callable again after a failure: a subscribe failure keeps the already
        granted microphone, a media failure asks again.

        Raises:
            MediaAcquisitionError: Microphone denied/unavailable (state FAILED).
            SignalingError: Relay subscribe/announce failed (state FAILED).
        """
        if self.state not in (CallState.IDLE, CallState.FAILED):
            raise RuntimeError(f"Cannot start call in state {self.state.value}")
        self.last_error = None

        if self._track is None:
            self._set_state(CallState.AWAITING_LOCAL_MEDIA)
            try:
                self._track = await self.media.acquire()
            except Exception as e:
                error = e if isinstance(e, MediaAcquisitionError) else MediaAcquisitionError(str(e))
                self._report(error)
                self._set_state(CallState.FAILED)
                raise error from e
            self.media.set_muted(self.muted)
            self._cleanup.push_async_callback(self._release_media)

        self._set_state(CallState.CHANNEL_SUBSCRIBING)
        try:
            if not self._subscribed:
                await self.channel.subscribe()
                self._subscribed = True
                self._cleanup.push_async_callback(self._close_channel)
            await self.channel.publish(JoinSignal(sender=self.participant_key))
        except SignalingError as e:
            self._report(e)
            self._set_state(CallState.FAILED)
            raise

        self._set_state(CallState.WAITING_FOR_PEER)

    async def run(self) -> None:
        """Start, then consume relay messages until the call ends."""
        if self.state in (CallState.IDLE, CallState.FAILED):
            await self.start()
        try:
            async for signal in self.channel.listen():
                if self.state is CallState.ENDED:
                    break
                await self.handle_signal(signal)
        except SignalingError as e:
            if self.state is CallState.ENDED:
                return
            self._report(e)
            raise

    # --- Incoming signals ---

    async def handle_signal(self, signal: Signal) -> None:
        if signal.sender == self.participant_key:
            return
        if self.state in (CallState.ENDED, CallState.IDLE, CallState.FAILED):
            return

        if isinstance(signal, JoinSignal):
            await self._on_join(signal.sender)
        elif isinstance(signal, OfferSignal):
            await self._on_offer(signal.sender, signal.sdp)
        elif isinstance(signal, AnswerSignal):
            await self._on_answer(signal.sender, signal.sdp)
        elif isinstance(signal, IceSignal):
            await self._on_ice(signal.sender, signal.candidate)
        elif isinstance(signal, LeaveSignal):
            await self._on_leave(signal.sender)

    async def _on_join(self, sender: str) -> None:
        if self.peer_key == sender:
            if self.state is CallState.NEGOTIATING and not self._remote_description_set:
                # Echo of a join we already reacted to
                return
            # Peer came back (reload); start over with a fresh connection
            logger.info("[%s] peer %s re-joined, renegotiating", self.participant_key, sender)
            await self._drop_peer()
        elif self.peer_key is not None:
            logger.info(
                "[%s] ignoring join from %s while paired with %s",
                self.participant_key,
                sender,
                self.peer_key,
            )
            return

        await self._pair_with(sender)
        await self.channel.publish(JoinSignal(sender=self.participant_key))
        if self.is_offerer:
            await self._send_offer()

    async def _on_offer(self, sender: str, sdp: SessionDescription) -> None:
        if self.peer_key is None:
            if is_offerer(self.participant_key, sender):
                # Missed their join; pair and offer ourselves
                await self._on_join(sender)
                return
            await self._pair_with(sender)
        elif self.peer_key != sender:
            return
        if self.is_offerer:
            logger.warning(
                "[%s] unexpected offer from %s (we offer), ignoring", self.participant_key, sender
            )
            return

        pc = await self._ensure_peer_connection()
        try:
            await pc.set_remote_description(sdp)
            self._remote_description_set = True
            await self._flush_pending_ice()
            answer = await pc.create_answer()
        except Exception as e:
            await self._peer_failed(e)
            return
        await self.channel.publish(AnswerSignal(sender=self.participant_key, sdp=answer))

    async def _on_answer(self, sender: str, sdp: SessionDescription) -> None:
        if sender != self.peer_key or not self.is_offerer or self._pc is None:
            return
        if self._remote_description_set:
            return
        try:
            await self._pc.set_remote_description(sdp)
            self._remote_description_set = True
            await self._flush_pending_ice()
        except Exception as e:
            await self._peer_failed(e)

    async def _on_ice(self, sender: str, candidate: IceCandidate) -> None:
        if sender != self.peer_key:
            return
        if candidate in self._seen_ice:
            return
        self._seen_ice.add(candidate)
        if self._pc is None or not self._remote_description_set:
            self._pending_ice.append(candidate)
            return
        await self._add_candidate(candidate)

    async def _on_leave(self, sender: str) -> None:
        if sender != self.peer_key:
            return
        logger.info("[%s] peer %s left", self.participant_key, sender)
        await self._drop_peer()
        self._set_state(CallState.WAITING_FOR_PEER)

    # --- Peer connection ---

    async def _pair_with(self, peer_key: str) -> None:
        self.peer_key = peer_key
        self._set_state(CallState.NEGOTIATING)
        await self._ensure_peer_connection()

    async def _ensure_peer_connection(self) -> PeerConnection:
        if self._pc is None:
            self._pc = self.peer_factory(
                self._track, self._send_local_candidate, self._on_connection_state
            )
        return self._pc

    async def _send_offer(self) -> None:
        pc = await self._ensure_peer_connection()
        try:
            offer = await pc.create_offer()
        except Exception as e:
            await self._peer_failed(e)
            return
        await self.channel.publish(OfferSignal(sender=self.participant_key, sdp=offer))

    async def _send_local_candidate(self, candidate: IceCandidate) -> None:
        if self.state is CallState.ENDED:
            return
        await self.channel.publish(IceSignal(sender=self.participant_key, candidate=candidate))

    async def _add_candidate(self, candidate: IceCandidate) -> None:
        try:
            await self._pc.add_ice_candidate(candidate)
        except Exception:
            # A candidate the transport cannot use is not fatal to the call
            logger.warning("[%s] rejected ICE candidate %s", self.participant_key, candidate.candidate)

    async def _flush_pending_ice(self) -> None:
        pending, self._pending_ice = self._pending_ice, []
        for candidate in pending:
            await self._add_candidate(candidate)

    async def _on_connection_state(self, state: str) -> None:
        if self.state is CallState.ENDED:
            return
        if state == "connected":
            self._set_state(CallState.CONNECTED)
        elif state == "failed":
            await self._peer_failed(PeerConnectionError("Peer connection failed"))

    async def _peer_failed(self, error: Exception) -> None:
        if not isinstance(error, PeerConnectionError):
            error = PeerConnectionError(str(error))
        logger.warning("[%s] %s; waiting for peer again", self.participant_key, error)
        self._report(error)
        await self._drop_peer()
        self._set_state(CallState.WAITING_FOR_PEER)
        # Both sides usually fail together; announce again so they re-pair
        try:
            await self.channel.publish(JoinSignal(sender=self.participant_key))
        except SignalingError as e:
            logger.warning("[%s] could not re-announce join: %s", self.participant_key, e)

    async def _drop_peer(self) -> None:
        pc, self._pc = self._pc, None
        self.peer_key = None
        self._remote_description_set = False
        self._pending_ice = []
        self._seen_ice = set()
        if pc is not None:
            await pc.close()

    # --- Local controls ---

    def set_muted(self, muted: bool) -> None:
        self.muted = muted
        if self._track is not None:
            self.media.set_muted(muted)

    async def leave(self) -> None:
        """
        End the call: announce `leave` (best effort), then close the peer
        connection, unsubscribe and release the microphone. Every step runs
        even if an earlier one raises; the first failure is re-raised after.
        """
        if self.state is CallState.ENDED:
            return
        previous = self.state
        self._set_state(CallState.ENDED)
        try:
            async with self._cleanup:
                self._cleanup.push_async_callback(self._drop_peer)
                if self._subscribed and previous is not CallState.CHANNEL_SUBSCRIBING:
                    try:
                        await self.channel.publish(LeaveSignal(sender=self.participant_key))
                    except SignalingError as e:
                        logger.warning("[%s] could not announce leave: %s", self.participant_key, e)
        finally:
            self._cleanup = AsyncExitStack()

    async def _release_media(self) -> None:
        track, self._track = self._track, None
        if track is not None:
            await self.media.release()

    async def _close_channel(self) -> None:
        self._subscribed = False
        await self.channel.close()

    async def __aenter__(self) -> "CallSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await asyncio.shield(self.leave())
