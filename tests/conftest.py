from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

import pytest
from aiortc import AudioStreamTrack, VideoStreamTrack

from fieldcall.config import RecordingConfig, RetryPolicy, SessionConfig
from fieldcall.errors import MediaAcquisitionError, NegotiationError, SignalingError, UploadError
from fieldcall.rtc.media import LocalStream, MediaBackend, MediaCapabilities, MediaConstraints
from fieldcall.rtc.recording import MediaCapture
from fieldcall.rtc.webrtc_peer import PeerCallbacks, TransportStats
from fieldcall.session.controller import CallSessionController, SessionCallbacks
from fieldcall.session.models import CallSession, ClaimContext, Notice, RecordingState, Role


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class SentMessages(list):
    """Stands in for the signaling channel's `send`."""

    async def __call__(self, msg: Dict[str, Any]) -> None:
        self.append(msg)

    def types(self) -> List[str]:
        return [m["type"] for m in self]

    def of(self, mtype: str) -> List[Dict[str, Any]]:
        return [m for m in self if m["type"] == mtype]


class FakePeer:
    """Same surface as `WebRTCPeer`, no network."""

    def __init__(self, call_id: str, callbacks: PeerCallbacks):
        self.call_id = call_id
        self.callbacks = callbacks
        self.kinds: List[str] = []
        self.senders: Dict[str, Any] = {}
        self.offers = 0
        self.answers_applied: List[str] = []
        self.offers_applied: List[str] = []
        self.ice: List[Dict[str, Any]] = []
        self.has_remote_description = False
        self.restarts = 0
        self.closed = False
        self.fail_offer = False
        self.stats = TransportStats()

    def attach_tracks(self, tracks: List[Any]) -> None:
        for track in tracks:
            self.kinds.append(track.kind)
            self.senders[track.kind] = track

    def transceiver_kinds(self) -> List[str]:
        return list(self.kinds)

    def sender_track(self, kind: str) -> Optional[Any]:
        return self.senders.get(kind)

    async def replace_track(self, kind: str, track: Any) -> bool:
        if kind not in self.senders:
            return False
        self.senders[kind] = track
        return True

    async def create_offer(self) -> str:
        if self.fail_offer:
            raise NegotiationError("offer failed: test")
        self.offers += 1
        return f"v=0 offer-{self.offers}"

    async def apply_answer(self, sdp: str) -> None:
        self.answers_applied.append(sdp)
        self.has_remote_description = True

    async def apply_offer_and_create_answer(self, sdp: str) -> str:
        self.offers_applied.append(sdp)
        self.has_remote_description = True
        return f"v=0 answer-{len(self.offers_applied)}"

    async def add_ice_candidate(self, candidate: Any) -> None:
        if not self.has_remote_description:
            raise AssertionError("candidate applied before the remote description")
        if not isinstance(candidate, dict):
            raise SignalingError("ice candidate is not an object")
        self.ice.append(candidate)

    async def restart_ice(self) -> None:
        self.restarts += 1
        self.has_remote_description = False

    async def close(self) -> None:
        self.closed = True

    async def get_stats(self) -> TransportStats:
        return self.stats

    async def emit_state(self, state: str) -> None:
        await self.callbacks.on_connection_state(state)


class FakeBackend(MediaBackend):
    """One camera device shared by both facing modes, like a phone."""

    def __init__(
        self,
        *,
        torch: bool = False,
        display: bool = True,
        facing: tuple[str, ...] = ("environment", "user"),
        broken_facing: tuple[str, ...] = (),
    ):
        self._caps = MediaCapabilities(torch=torch, display_capture=display, facing_modes=frozenset(facing))
        self.broken_facing = set(broken_facing)
        self.held: set[str] = set()
        self.opened: List[str] = []
        self.torch_writes: List[bool] = []

    @property
    def capabilities(self) -> MediaCapabilities:
        return self._caps

    def _claim(self, device: str) -> None:
        if device in self.held:
            raise MediaAcquisitionError(f"device busy: {device}", code="device-busy")
        self.held.add(device)

    async def open_camera(self, constraints: MediaConstraints, *, audio: bool = True, video: bool = True) -> LocalStream:
        if constraints.facing_mode in self.broken_facing:
            raise MediaAcquisitionError(f"no {constraints.facing_mode} camera", code="no-device")
        stream = LocalStream()
        devices: List[str] = []
        if video:
            self._claim("camera")
            devices.append("camera")
            stream.video = VideoStreamTrack()
            self.opened.append(f"camera:{constraints.facing_mode}")
        if audio:
            self._claim("mic")
            devices.append("mic")
            stream.audio = AudioStreamTrack()
        stream.devices = tuple(devices)
        return stream

    async def open_display(self) -> LocalStream:
        self._claim("display")
        self.opened.append("display")
        return LocalStream(video=VideoStreamTrack(), devices=("display",))

    async def set_torch(self, on: bool) -> None:
        self.torch_writes.append(on)

    def release(self, stream: LocalStream, kind: Optional[str] = None) -> None:
        for track in stream.tracks():
            if kind is None or track.kind == kind:
                track.stop()
        if kind is None or kind == "video":
            stream.video = None
        if kind is None or kind == "audio":
            stream.audio = None
        if stream.audio is None and stream.video is None:
            for device in stream.devices:
                self.held.discard(device)
        elif kind == "video" and stream.devices:
            self.held.discard(stream.devices[0])


class FakeCapture(MediaCapture):
    def __init__(self, chunks: tuple[bytes, ...] = (b"chunk-1", b"chunk-2")):
        self.chunks = list(chunks)
        self.started_with: Optional[List[Any]] = None
        self.retargets: List[List[Any]] = []
        self.stopped = False
        self.aborted = False
        self._on_chunk: Any = None

    def start(self, tracks: List[Any], on_chunk: Any) -> None:
        self.started_with = list(tracks)
        self._on_chunk = on_chunk

    def retarget(self, tracks: List[Any]) -> None:
        self.retargets.append(list(tracks))

    async def stop(self) -> None:
        self.stopped = True
        for chunk in self.chunks:
            self._on_chunk(chunk)

    def abort(self) -> None:
        self.aborted = True


class FakeSink:
    def __init__(self, *, fail_times: int = 0):
        self.fail_times = fail_times
        self.uploads: List[Dict[str, Any]] = []

    async def upload(self, data: bytes, content_type: str, metadata: Dict[str, str], on_progress: Any = None) -> str:
        if self.fail_times:
            self.fail_times -= 1
            raise UploadError("store unavailable")
        self.uploads.append({"data": data, "content_type": content_type, "metadata": metadata})
        if on_progress:
            on_progress(50)
            on_progress(100)
        return f"memory://{metadata['callId']}/{len(self.uploads)}"


class InstantSleep:
    """Records backoff delays. Queued `during` hooks run inside the next windows."""

    def __init__(self) -> None:
        self.delays: List[float] = []
        self.during: List[Callable[[], Awaitable[None]]] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.during:
            await self.during.pop(0)()


class Harness:
    """A controller wired to fakes, plus handles on each fake."""

    def __init__(
        self,
        role: Role,
        *,
        backend: Optional[FakeBackend] = None,
        sink: Optional[FakeSink] = None,
        capture: Optional[MediaCapture] = None,
        config: Optional[SessionConfig] = None,
    ):
        self.sent = SentMessages()
        self.backend = backend or FakeBackend()
        self.sink = sink or FakeSink()
        self.capture = capture or FakeCapture()
        self.sleep = InstantSleep()
        self.notices: List[Notice] = []
        self.progress: List[int] = []
        self.recording_states: List[RecordingState] = []
        self.peers: List[FakePeer] = []
        self.session = CallSession(call_id="call-1", role=role, claim=ClaimContext("claim-9", "CLM-0009"))

        async def on_notice(notice: Notice) -> None:
            self.notices.append(notice)

        def peer_factory(call_id: str, callbacks: PeerCallbacks) -> FakePeer:
            peer = FakePeer(call_id, callbacks)
            self.peers.append(peer)
            return peer

        self.controller = CallSessionController(
            self.session,
            self.sent,
            media_backend=self.backend,
            upload_sink=self.sink,
            config=config or SessionConfig(quality_interval=60.0, duration_tick=60.0),
            callbacks=SessionCallbacks(
                on_notice=on_notice,
                on_recording_state=self.recording_states.append,
                on_upload_progress=self.progress.append,
            ),
            peer_factory=peer_factory,
            capture_factory=lambda: self.capture,
            reconnect_sleep=self.sleep,
        )

    @property
    def peer(self) -> FakePeer:
        return self.peers[-1]

    def notice_codes(self) -> List[Optional[str]]:
        return [n.code for n in self.notices]

    async def negotiate(self) -> None:
        """Drive the call from Idle to Negotiating with the remote present."""
        await self.controller.start()
        if self.session.role is Role.INVESTIGATOR:
            await self.controller.handle_message({"type": "call_accepted", "callId": "call-1"})
            await self.controller.handle_message({"type": "video_answer", "callId": "call-1", "sdp": "v=0 remote"})
        else:
            await self.controller.handle_message({"type": "video_offer", "callId": "call-1", "sdp": "v=0 remote"})

    async def connect(self) -> None:
        await self.negotiate()
        await self.peer.emit_state("connected")


@pytest.fixture
def investigator() -> Harness:
    return Harness(Role.INVESTIGATOR)


@pytest.fixture
def supervisor() -> Harness:
    return Harness(Role.SUPERVISOR)


@pytest.fixture
def retrying_config() -> SessionConfig:
    return SessionConfig(
        quality_interval=60.0,
        duration_tick=60.0,
        reconnect_policy=RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=30.0),
        recording=RecordingConfig(upload_policy=RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)),
    )
