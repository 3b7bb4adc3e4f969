"""Local media acquisition and track control.

The core never inspects devices itself: a `MediaBackend` reports a
`MediaCapabilities` set and the manager only branches on capability
presence. `AiortcMediaBackend` is the ffmpeg/`MediaPlayer` implementation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from ..config import MediaConfig
from ..errors import MediaAcquisitionError
from ..session.models import CallSession


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
FrameSink = Callable[[Any], None]

FACING_USER = "user"
FACING_ENVIRONMENT = "environment"

CAP_TORCH = "torch"
CAP_DISPLAY_CAPTURE = "display_capture"


@dataclass(frozen=True)
class MediaConstraints:
    facing_mode: str = FACING_ENVIRONMENT
    width: int = 1280
    height: int = 720
    frame_rate: int = 30

    @classmethod
    def from_config(cls, cfg: MediaConfig) -> "MediaConstraints":
        return cls(facing_mode=cfg.facing_mode, width=cfg.width, height=cfg.height, frame_rate=cfg.frame_rate)

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    def flipped(self) -> "MediaConstraints":
        facing = FACING_USER if self.facing_mode == FACING_ENVIRONMENT else FACING_ENVIRONMENT
        return replace(self, facing_mode=facing)


@dataclass(frozen=True)
class MediaCapabilities:
    torch: bool = False
    display_capture: bool = False
    facing_modes: frozenset[str] = frozenset({FACING_USER, FACING_ENVIRONMENT})

    def supports(self, name: str) -> bool:
        if name == CAP_TORCH:
            return self.torch
        if name == CAP_DISPLAY_CAPTURE:
            return self.display_capture
        return name in self.facing_modes


@dataclass
class LocalStream:
    """Tracks produced by one acquisition, plus whatever keeps them alive."""

    audio: Optional[MediaStreamTrack] = None
    video: Optional[MediaStreamTrack] = None
    devices: Tuple[str, ...] = ()
    handles: List[Any] = field(default_factory=list)

    def tracks(self) -> List[MediaStreamTrack]:
        return [t for t in (self.audio, self.video) if t is not None]


class MediaBackend(ABC):
    @property
    @abstractmethod
    def capabilities(self) -> MediaCapabilities: ...

    @abstractmethod
    async def open_camera(self, constraints: MediaConstraints, *, audio: bool = True, video: bool = True) -> LocalStream: ...

    @abstractmethod
    async def open_display(self) -> LocalStream: ...

    @abstractmethod
    async def set_torch(self, on: bool) -> None: ...

    @abstractmethod
    def release(self, stream: LocalStream, kind: Optional[str] = None) -> None:
        """Stop the tracks of `stream` (or only `kind`) and free their devices."""


def _silent_audio(frame: av.AudioFrame) -> av.AudioFrame:
    out = av.AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in out.planes:
        plane.update(bytes(plane.buffer_size))
    out.sample_rate = frame.sample_rate
    out.pts = frame.pts
    out.time_base = frame.time_base
    return out


def _black_video(frame: av.VideoFrame) -> av.VideoFrame:
    out = av.VideoFrame.from_ndarray(np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24")
    out.pts = frame.pts
    out.time_base = frame.time_base
    return out


class ToggleableTrack(MediaStreamTrack):
    """Pass-through capture track with an `enabled` switch.

    Disabled audio yields silence and disabled video yields black frames,
    so muting never tears down the stream. Frame sinks see every frame that
    is sent (used by the recording pipeline).
    """

    def __init__(self, source: MediaStreamTrack, *, label: str = ""):
        super().__init__()
        self.kind = source.kind
        self._source = source
        self._label = label or source.kind
        self.enabled = True
        self.frame_size: Optional[Tuple[int, int]] = None
        self._sinks: List[FrameSink] = []

    @property
    def source(self) -> MediaStreamTrack:
        return self._source

    def add_sink(self, sink: FrameSink) -> None:
        self._sinks.append(sink)

    def remove_sink(self, sink: FrameSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    async def recv(self):  # type: ignore[override]
        frame = await self._source.recv()
        if isinstance(frame, av.VideoFrame):
            self.frame_size = (frame.width, frame.height)
        if not self.enabled:
            if isinstance(frame, av.AudioFrame):
                frame = _silent_audio(frame)
            elif isinstance(frame, av.VideoFrame):
                frame = _black_video(frame)
        for sink in list(self._sinks):
            try:
                sink(frame)
            except Exception:
                # A misbehaving sink must not break the outgoing media.
                logger.exception("frame sink failed track=%s", self._label)
                self.remove_sink(sink)
        return frame

    def stop(self) -> None:  # type: ignore[override]
        try:
            self._source.stop()
        finally:
            self._sinks.clear()
            super().stop()


def _classify_open_error(exc: BaseException) -> str:
    text = str(exc).lower()
    if "permission" in text or "not permitted" in text:
        return "permission-denied"
    if "busy" in text:
        return "device-busy"
    return "no-device"


class AiortcMediaBackend(MediaBackend):
    """Camera/microphone/display capture through ffmpeg input devices."""

    def __init__(self, cfg: MediaConfig):
        self._cfg = cfg
        self._held: set[str] = set()
        self._system = platform.system()

    @property
    def capabilities(self) -> MediaCapabilities:
        torch = bool(self._cfg.torch_control_path and os.path.exists(self._cfg.torch_control_path))
        facing = frozenset(self._cfg.camera_devices) or frozenset({FACING_ENVIRONMENT, FACING_USER})
        return MediaCapabilities(torch=torch, display_capture=self._cfg.display_capture, facing_modes=facing)

    def _camera_device(self, facing: str) -> str:
        if facing in self._cfg.camera_devices:
            return self._cfg.camera_devices[facing]
        if self._system == "Darwin":
            return "0" if facing == FACING_USER else "1"
        if self._system == "Windows":
            return "video=Integrated Camera"
        return "/dev/video0" if facing == FACING_ENVIRONMENT else "/dev/video1"

    def _video_format(self) -> str:
        return {"Darwin": "avfoundation", "Windows": "dshow"}.get(self._system, "v4l2")

    def _audio_format(self) -> str:
        return {"Darwin": "avfoundation", "Windows": "dshow"}.get(self._system, "pulse")

    def _claim(self, device: str) -> None:
        if device in self._held:
            raise MediaAcquisitionError(f"device busy: {device}", code="device-busy")
        self._held.add(device)

    async def _open_player(self, file: str, fmt: str, options: Dict[str, str]) -> MediaPlayer:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, lambda: MediaPlayer(file, format=fmt, options=options))
        except Exception as e:
            raise MediaAcquisitionError(f"cannot open {fmt}:{file}: {e}", code=_classify_open_error(e)) from e

    async def open_camera(self, constraints: MediaConstraints, *, audio: bool = True, video: bool = True) -> LocalStream:
        stream = LocalStream()
        devices: List[str] = []
        try:
            if video:
                device = self._camera_device(constraints.facing_mode)
                self._claim(device)
                devices.append(device)
                player = await self._open_player(
                    device,
                    self._video_format(),
                    {
                        "video_size": constraints.resolution,
                        "framerate": str(constraints.frame_rate),
                    },
                )
                stream.handles.append(player)
                stream.video = player.video
                if stream.video is None:
                    raise MediaAcquisitionError(f"no video on {device}", code="no-device")
            if audio:
                mic = self._cfg.microphone_device
                if self._system == "Darwin":
                    mic = f"none:{mic if mic != 'default' else '0'}"
                elif self._system == "Windows" and not mic.startswith("audio="):
                    mic = f"audio={mic}"
                self._claim(mic)
                devices.append(mic)
                player = await self._open_player(mic, self._audio_format(), {})
                stream.handles.append(player)
                stream.audio = player.audio
        except MediaAcquisitionError:
            stream.devices = tuple(devices)
            self.release(stream)
            raise
        stream.devices = tuple(devices)
        logger.info(
            "media camera opened facing=%s devices=%s audio=%s video=%s",
            constraints.facing_mode,
            devices,
            stream.audio is not None,
            stream.video is not None,
        )
        return stream

    async def open_display(self) -> LocalStream:
        if self._system == "Windows":
            file, fmt = "desktop", "gdigrab"
        elif self._system == "Darwin":
            file, fmt = f"{self._cfg.display_device or '1'}:none", "avfoundation"
        else:
            file, fmt = self._cfg.display_device or os.environ.get("DISPLAY", ":0.0"), "x11grab"
        device = f"display:{file}"
        self._claim(device)
        try:
            player = await self._open_player(file, fmt, {"framerate": "15"})
        except MediaAcquisitionError:
            self._held.discard(device)
            raise
        logger.info("media display opened source=%s", file)
        return LocalStream(video=player.video, devices=(device,), handles=[player])

    async def set_torch(self, on: bool) -> None:
        path = self._cfg.torch_control_path
        if not path:
            raise MediaAcquisitionError("torch not available", code="no-torch")
        loop = asyncio.get_running_loop()

        def _write() -> None:
            with open(path, "w", encoding="ascii") as fh:
                fh.write("1" if on else "0")

        await loop.run_in_executor(None, _write)

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
                self._held.discard(device)
            stream.handles.clear()
        elif kind == "video" and stream.devices:
            # Camera is always the first device of a camera stream.
            self._held.discard(stream.devices[0])


@dataclass
class MediaCallbacks:
    on_notice: Optional[AsyncCallback] = None  # (level: str, message: str, code: str)
    on_negotiation_needed: Optional[AsyncCallback] = None  # ()


class MediaTrackManager:
    def __init__(
        self,
        session: CallSession,
        backend: MediaBackend,
        constraints: Optional[MediaConstraints] = None,
        callbacks: Optional[MediaCallbacks] = None,
    ):
        self._session = session
        self._backend = backend
        self._constraints = constraints or MediaConstraints()
        self._callbacks = callbacks or MediaCallbacks()
        self._peer: Any = None
        self._stream: Optional[LocalStream] = None
        self._audio: Optional[ToggleableTrack] = None
        self._video: Optional[ToggleableTrack] = None
        self._muted = False
        self._video_enabled = True
        self._torch = False
        self._lock = asyncio.Lock()

    @property
    def capabilities(self) -> MediaCapabilities:
        return self._backend.capabilities

    @property
    def backend(self) -> MediaBackend:
        return self._backend

    @property
    def constraints(self) -> MediaConstraints:
        return self._constraints

    @property
    def audio_track(self) -> Optional[ToggleableTrack]:
        return self._audio

    @property
    def video_track(self) -> Optional[ToggleableTrack]:
        return self._video

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def video_enabled(self) -> bool:
        return self._video_enabled

    @property
    def torch_on(self) -> bool:
        return self._torch

    @property
    def resolution(self) -> str:
        """Size of the last frame on the video sender, else the requested size."""
        track = self._peer.sender_track("video") if self._peer is not None else None
        size = getattr(track, "frame_size", None)
        if size:
            return f"{size[0]}x{size[1]}"
        return self._constraints.resolution

    @property
    def is_mirrored(self) -> bool:
        """Local preview of a front camera is mirrored; capture never is."""
        return self._constraints.facing_mode == FACING_USER

    def bind_peer(self, peer: Any) -> None:
        self._peer = peer

    def _wrap(self, track: Optional[MediaStreamTrack]) -> Optional[ToggleableTrack]:
        if track is None:
            return None
        wrapped = ToggleableTrack(track, label=f"{track.kind}:{self._constraints.facing_mode}")
        wrapped.enabled = not self._muted if track.kind == "audio" else self._video_enabled
        return wrapped

    def _sync_session(self, *extra: MediaStreamTrack) -> None:
        self._session.local_tracks = [t for t in (self._audio, self._video, *extra) if t is not None]

    async def acquire(self) -> List[ToggleableTrack]:
        """Open camera+microphone; returns tracks in attach order (audio, video)."""
        async with self._lock:
            if self._stream is not None:
                self._release_stream()
            self._stream = await self._backend.open_camera(self._constraints, audio=True)
            self._audio = self._wrap(self._stream.audio)
            self._video = self._wrap(self._stream.video)
            self._sync_session()
            return [t for t in (self._audio, self._video) if t is not None]

    def _release_stream(self) -> None:
        for track in (self._audio, self._video):
            if track is not None:
                track.stop()
        if self._stream is not None:
            self._backend.release(self._stream)
        self._stream = None
        self._audio = None
        self._video = None

    def set_muted(self, muted: bool) -> None:
        self._muted = bool(muted)
        if self._audio is not None:
            self._audio.enabled = not self._muted
        logger.info("media mute call_id=%s muted=%s", self._session.call_id, self._muted)

    def set_video_enabled(self, enabled: bool) -> None:
        self._video_enabled = bool(enabled)
        if self._video is not None:
            self._video.enabled = self._video_enabled
        logger.info("media video call_id=%s enabled=%s", self._session.call_id, self._video_enabled)

    async def set_torch(self, on: bool) -> bool:
        if not self.capabilities.supports(CAP_TORCH):
            logger.warning("media torch unsupported call_id=%s", self._session.call_id)
            await self._notice("warning", "Torch is not supported on this device", "no-torch")
            return False
        await self._backend.set_torch(on)
        self._torch = bool(on)
        return True

    async def switch_camera(self) -> None:
        """Flip facing mode, keeping transceiver count and order unchanged."""
        async with self._lock:
            if self._peer is None:
                raise MediaAcquisitionError("no peer connection to switch on", code="no-peer")
            previous = self._constraints
            target = previous.flipped()
            if not self.capabilities.supports(target.facing_mode):
                await self._notice("warning", f"No {target.facing_mode} camera available", "no-device")
                return
            layout_before = self._peer.transceiver_kinds()

            # The device is exclusive: stop before reacquiring.
            self._release_stream()
            self._constraints = target
            try:
                stream = await self._backend.open_camera(target, audio=True)
            except MediaAcquisitionError as e:
                logger.warning("media switch failed call_id=%s error=%s", self._session.call_id, e)
                self._constraints = previous
                stream = await self._backend.open_camera(previous, audio=True)
                await self._install(stream)
                raise

            await self._install(stream)
            layout_after = self._peer.transceiver_kinds()
            if layout_after != layout_before:
                logger.error(
                    "media transceiver layout changed call_id=%s before=%s after=%s",
                    self._session.call_id,
                    layout_before,
                    layout_after,
                )
            logger.info("media camera switched call_id=%s facing=%s", self._session.call_id, target.facing_mode)
        if self._callbacks.on_negotiation_needed:
            await self._callbacks.on_negotiation_needed()

    async def _install(self, stream: LocalStream) -> None:
        self._stream = stream
        self._audio = self._wrap(stream.audio)
        self._video = self._wrap(stream.video)
        for kind, track in (("audio", self._audio), ("video", self._video)):
            if track is not None:
                await self._peer.replace_track(kind, track)
        self._sync_session()

    async def release_video(self) -> Optional[ToggleableTrack]:
        """Stop the camera video track, keeping audio; returns the audio track."""
        async with self._lock:
            if self._video is not None:
                self._video.stop()
                self._video = None
            if self._stream is not None:
                self._backend.release(self._stream, "video")
            self._sync_session()
            return self._audio

    async def acquire_video(self) -> ToggleableTrack:
        """Open the camera video-only for the current facing mode."""
        async with self._lock:
            stream = await self._backend.open_camera(self._constraints, audio=False)
            video = self._wrap(stream.video)
            if video is None:
                raise MediaAcquisitionError("camera produced no video", code="no-device")
            if self._stream is None:
                self._stream = stream
            else:
                self._stream.video = stream.video
                self._stream.devices = stream.devices + tuple(d for d in self._stream.devices if d not in stream.devices)
                self._stream.handles.extend(stream.handles)
            self._video = video
            self._sync_session()
            return video

    def track_display(self, track: Optional[MediaStreamTrack]) -> None:
        """Register (or clear) an extra owned track such as a display capture."""
        if track is None:
            self._sync_session()
        else:
            self._sync_session(track)

    def stop(self) -> None:
        """Stop every owned local track and free the devices. Never blocks."""
        for track in list(self._session.local_tracks):
            track.stop()
        self._release_stream()
        self._session.local_tracks = []

    async def close(self) -> None:
        self.stop()
        if self._torch:
            try:
                await self._backend.set_torch(False)
            except Exception:
                logger.debug("media torch off failed", exc_info=True)
            self._torch = False

    async def _notice(self, level: str, message: str, code: str) -> None:
        if self._callbacks.on_notice:
            await self._callbacks.on_notice(level, message, code)
