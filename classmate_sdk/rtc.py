"""
classmate_sdk/rtc.py - aiortc adapters for CallSession.

Install with the `rtc` extra. aiortc gathers ICE candidates during
setLocalDescription and embeds them in the SDP, so the on_ice callback only
fires for candidates learned later; remote trickled candidates are still
accepted via add_ice_candidate.
"""
import asyncio
import logging
import sys
from typing import Any

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp

from .errors import MediaAcquisitionError
from .signals import IceCandidate, SessionDescription

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = ("stun:stun.l.google.com:19302",)


class AiortcPeerConnection:
    """PeerConnection adapter: one local audio track, one remote peer."""

    def __init__(
        self,
        track: Any,
        on_ice,
        on_state,
        ice_servers: tuple[str, ...] = DEFAULT_ICE_SERVERS,
    ):
        servers = [RTCIceServer(urls=list(ice_servers))] if ice_servers else []
        config = RTCConfiguration(iceServers=servers)
        self.pc = RTCPeerConnection(config)
        self.remote_tracks: list[MediaStreamTrack] = []
        self._on_ice = on_ice
        if track is not None:
            self.pc.addTrack(track)

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.info("Peer connection state: %s", self.pc.connectionState)
            await on_state(self.pc.connectionState)

        @self.pc.on("track")
        def on_track(remote_track):
            logger.info("Remote %s track received", remote_track.kind)
            self.remote_tracks.append(remote_track)

    async def create_offer(self) -> SessionDescription:
        await self.pc.setLocalDescription(await self.pc.createOffer())
        return self._local_description()

    async def create_answer(self) -> SessionDescription:
        await self.pc.setLocalDescription(await self.pc.createAnswer())
        return self._local_description()

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        sdp = candidate.candidate
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        if not sdp:
            # End-of-candidates marker
            return
        rtc_candidate = candidate_from_sdp(sdp)
        rtc_candidate.sdpMid = candidate.sdpMid
        rtc_candidate.sdpMLineIndex = candidate.sdpMLineIndex
        await self.pc.addIceCandidate(rtc_candidate)

    async def close(self) -> None:
        await self.pc.close()

    def _local_description(self) -> SessionDescription:
        local = self.pc.localDescription
        return SessionDescription(type=local.type, sdp=local.sdp)


class MutableAudioTrack(MediaStreamTrack):
    """Relays a source track, replacing samples with silence while muted."""

    kind = "audio"

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.source = source
        self.muted = False

    async def recv(self):
        frame = await self.source.recv()
        if self.muted:
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
        return frame

    def stop(self) -> None:
        super().stop()
        self.source.stop()


def default_microphone() -> tuple[str, str]:
    """(device, ffmpeg input format) for the platform's default microphone."""
    if sys.platform == "darwin":
        return ":default", "avfoundation"
    if sys.platform.startswith("win"):
        return "audio=default", "dshow"
    return "default", "pulse"


class MicrophoneSource:
    """MediaSource backed by an ffmpeg capture device."""

    def __init__(self, device: str | None = None, format: str | None = None, options: dict | None = None):
        default_device, default_format = default_microphone()
        self.device = device or default_device
        self.format = format or default_format
        self.options = options or {}
        self._player: MediaPlayer | None = None
        self._track: MutableAudioTrack | None = None

    async def acquire(self) -> MutableAudioTrack:
        try:
            # Opening the device blocks while ffmpeg probes it
            player = await asyncio.to_thread(
                MediaPlayer, self.device, format=self.format, options=self.options
            )
        except Exception as e:
            raise MediaAcquisitionError(f"Microphone unavailable ({self.device}): {e}") from e
        if player.audio is None:
            raise MediaAcquisitionError(f"No audio stream on {self.device}")
        self._player = player
        self._track = MutableAudioTrack(player.audio)
        return self._track

    async def release(self) -> None:
        track, self._track = self._track, None
        self._player = None
        if track is not None:
            track.stop()

    def set_muted(self, muted: bool) -> None:
        if self._track is not None:
            self._track.muted = muted


def peer_factory(ice_servers: tuple[str, ...] = DEFAULT_ICE_SERVERS):
    """Build a CallSession peer factory bound to the given ICE servers."""

    def factory(track, on_ice, on_state) -> AiortcPeerConnection:
        return AiortcPeerConnection(track, on_ice, on_state, ice_servers=ice_servers)

    return factory
