"""One WebRTC connection to the remote role of a call."""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCIceCandidate,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.rtcconfiguration import RTCConfiguration
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..errors import NegotiationError, SignalingError


logger = logging.getLogger(__name__)


AsyncPeerCallback = Callable[..., Awaitable[None]]


def _candidate_to_json(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }


def _candidate_from_json(obj: Dict[str, Any]) -> RTCIceCandidate:
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp[len("candidate:"):]
    cand = candidate_from_sdp(cand_sdp)
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


@dataclass
class TransportStats:
    bytes_sent: int = 0
    bytes_received: int = 0
    packets_lost: int = 0
    timestamp: float = field(default_factory=time.monotonic)


@dataclass
class PeerCallbacks:
    on_log: Optional[AsyncPeerCallback] = None  # (msg: str)
    on_connection_state: Optional[AsyncPeerCallback] = None  # (state: str)
    on_local_ice: Optional[AsyncPeerCallback] = None  # (candidate: dict)
    on_track: Optional[AsyncPeerCallback] = None  # (track: MediaStreamTrack)


class WebRTCPeer:
    """Thin wrapper around `RTCPeerConnection`.

    aiortc has no in-place ICE restart, so `restart_ice()` rebuilds the
    underlying connection and re-adds the local tracks in their original
    order. Events from a replaced connection are dropped.
    """

    def __init__(
        self,
        call_id: str,
        callbacks: Optional[PeerCallbacks] = None,
        rtc_config: Optional[RTCConfiguration] = None,
    ):
        self.call_id = call_id
        self._callbacks = callbacks or PeerCallbacks()
        self._rtc_config = rtc_config
        self._local_tracks: List[MediaStreamTrack] = []
        self._remote_tracks: List[MediaStreamTrack] = []
        self._closed = False
        self._pc = self._create_pc()

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    @property
    def remote_tracks(self) -> List[MediaStreamTrack]:
        return list(self._remote_tracks)

    @property
    def closed(self) -> bool:
        return self._closed

    def _create_pc(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=self._rtc_config)

        @pc.on("icecandidate")
        async def on_icecandidate(event) -> None:
            candidate = getattr(event, "candidate", event)
            if candidate is None or pc is not self._pc:
                return
            if self._callbacks.on_local_ice:
                await self._callbacks.on_local_ice(_candidate_to_json(candidate))

        @pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            if pc is not self._pc:
                return
            state = pc.connectionState
            await self._log(f"pc[{self.call_id}] connectionState={state}")
            if self._callbacks.on_connection_state:
                await self._callbacks.on_connection_state(state)

        @pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange() -> None:
            if pc is not self._pc:
                return
            logger.debug("rtc ice state call_id=%s state=%s", self.call_id, pc.iceConnectionState)

        @pc.on("track")
        async def on_track(track: MediaStreamTrack) -> None:
            if pc is not self._pc:
                return
            await self._log(f"pc[{self.call_id}] remote track kind={track.kind}")
            self._remote_tracks.append(track)
            if self._callbacks.on_track:
                await self._callbacks.on_track(track)

        return pc

    def attach_tracks(self, tracks: List[MediaStreamTrack]) -> None:
        for track in tracks:
            self._pc.addTrack(track)
            self._local_tracks.append(track)
            logger.debug("rtc track attached call_id=%s kind=%s", self.call_id, track.kind)

    def transceiver_kinds(self) -> List[str]:
        return [t.kind for t in self._pc.getTransceivers()]

    def sender_track(self, kind: str) -> Optional[MediaStreamTrack]:
        for sender in self._pc.getSenders():
            if sender.kind == kind:
                return sender.track
        return None

    async def replace_track(self, kind: str, track: Optional[MediaStreamTrack]) -> bool:
        """Swap the outgoing track of the first `kind` sender; never adds one."""
        for sender in self._pc.getSenders():
            if sender.kind != kind:
                continue
            result = sender.replaceTrack(track)
            if inspect.isawaitable(result):
                await result
            self._local_tracks = [t for t in self._local_tracks if t.kind != kind]
            if track is not None:
                self._local_tracks.append(track)
            logger.debug("rtc track replaced call_id=%s kind=%s", self.call_id, kind)
            return True
        return False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            for track in self._remote_tracks:
                track.stop()
        finally:
            self._remote_tracks.clear()
            await self._pc.close()

    async def create_offer(self) -> str:
        try:
            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)
        except Exception as e:
            raise NegotiationError(f"offer failed: {e}") from e
        assert self._pc.localDescription is not None
        return self._pc.localDescription.sdp

    async def apply_answer(self, sdp: str) -> None:
        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
        except Exception as e:
            raise NegotiationError(f"answer rejected: {e}") from e

    async def apply_offer_and_create_answer(self, sdp: str) -> str:
        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
        except Exception as e:
            raise NegotiationError(f"offer rejected: {e}") from e
        assert self._pc.localDescription is not None
        return self._pc.localDescription.sdp

    async def add_ice_candidate(self, candidate_obj: Any) -> None:
        if not isinstance(candidate_obj, dict):
            raise SignalingError("ice candidate is not an object")
        if not candidate_obj.get("candidate"):
            # End-of-candidates marker.
            return
        try:
            cand = _candidate_from_json(candidate_obj)
        except Exception as e:
            raise SignalingError(f"malformed ice candidate: {e}") from e
        await self._pc.addIceCandidate(cand)

    async def restart_ice(self) -> None:
        old = self._pc
        for track in self._remote_tracks:
            track.stop()
        self._remote_tracks.clear()
        tracks = list(self._local_tracks)
        self._local_tracks = []
        self._pc = self._create_pc()
        self.attach_tracks(tracks)
        logger.info("rtc transport rebuilt call_id=%s tracks=%s", self.call_id, len(tracks))
        await old.close()

    async def get_stats(self) -> TransportStats:
        stats = TransportStats()
        report = await self._pc.getStats()
        for entry in report.values():
            etype = getattr(entry, "type", None)
            if etype == "outbound-rtp":
                stats.bytes_sent += int(getattr(entry, "bytesSent", 0) or 0)
            elif etype == "inbound-rtp":
                stats.bytes_received += int(getattr(entry, "bytesReceived", 0) or 0)
                stats.packets_lost += int(getattr(entry, "packetsLost", 0) or 0)
            elif etype == "remote-inbound-rtp":
                stats.packets_lost += int(getattr(entry, "packetsLost", 0) or 0)
        return stats

    async def _log(self, msg: str) -> None:
        if self._callbacks.on_log:
            await self._callbacks.on_log(msg)
