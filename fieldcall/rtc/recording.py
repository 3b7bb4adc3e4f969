"""Call recording: local capture, chunk assembly and upload.

Only the investigator device captures. The supervisor drives it remotely
with `recording_status` messages and learns the outcome through
`recording_completed` / `recording_error`.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import av

from ..config import RecordingConfig
from ..errors import CallError, RecordingError, UploadError
from ..net import protocol
from ..session.models import CallSession, RecordingJob, RecordingState, Role
from ..storage import UploadSink


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
ChunkCallback = Callable[[bytes], None]
Sleep = Callable[[float], Awaitable[None]]


class MediaCapture(ABC):
    """Turns live tracks into an ordered series of binary chunks."""

    @abstractmethod
    def start(self, tracks: List[Any], on_chunk: ChunkCallback) -> None: ...

    @abstractmethod
    def retarget(self, tracks: List[Any]) -> None:
        """Follow replaced tracks (camera switch, screen share)."""

    @abstractmethod
    async def stop(self) -> None:
        """Finish the container and deliver the final chunk."""

    @abstractmethod
    def abort(self) -> None: ...


_MAX_HELD_AUDIO = 250
_FALLBACK_SIZE = (640, 480)


class _ChunkBuffer:
    """Non-seekable write target for the muxer.

    Written from the encoder thread, drained from the event loop.
    """

    def __init__(self) -> None:
        self._parts: List[bytes] = []
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        with self._lock:
            self._parts.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        with self._lock:
            data = b"".join(self._parts)
            self._parts.clear()
        return data


class _StreamClock:
    """Maps source timestamps of one output stream onto a single increasing clock.

    Each source generation (a new set of tracks after `retarget`) is rebased
    to continue where the previous one stopped; sources restart their pts at
    zero, the muxer does not accept that.
    """

    def __init__(self, time_base: Fraction):
        self.time_base = time_base
        self._generation: Optional[int] = None
        self._offset = 0
        self._next = 0
        self._tolerance = round(1 / time_base)

    def stamp(self, frame: Any, generation: int, duration: int, *, drop_late: bool) -> Optional[int]:
        if frame.pts is not None and frame.time_base is not None:
            src = round(frame.pts * frame.time_base / self.time_base)
        else:
            src = self._next - self._offset
        if generation != self._generation or src + self._offset < self._next - self._tolerance:
            self._generation = generation
            self._offset = self._next - src
        pts = src + self._offset
        if pts < self._next:
            if drop_late:
                return None
            pts = self._next
        self._next = pts + max(duration, 1)
        return pts


class WebmTrackCapture(MediaCapture):
    """Mux outgoing local frames into a live WebM stream sliced every `interval`.

    Frames are copied off the shared tracks and encoded on a single worker
    thread so VP8/Opus never run on the event loop.
    """

    def __init__(self, *, interval: float = 1.0, frame_rate: int = 30):
        self._interval = interval
        self._frame_rate = frame_rate
        self._buffer = _ChunkBuffer()
        self._container: Any = None
        self._streams: Dict[str, Any] = {}
        self._clocks: Dict[str, _StreamClock] = {}
        self._video_size: Optional[Tuple[int, int]] = None
        self._audio_shape: Optional[Tuple[str, str, int]] = None
        self._resampler: Any = None
        self._held_audio: List[Tuple[int, Any]] = []
        self._tracks: List[Any] = []
        self._generation = 0
        self._queue: "asyncio.Queue[Tuple[int, Any]]" = asyncio.Queue(maxsize=300)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._encode_task: Optional[asyncio.Task[None]] = None
        self._slice_task: Optional[asyncio.Task[None]] = None
        self._on_chunk: Optional[ChunkCallback] = None
        self._dropped = 0
        self._late = 0

    def _sink(self, frame: Any) -> None:
        try:
            self._queue.put_nowait((self._generation, frame))
        except asyncio.QueueFull:
            self._dropped += 1

    def _attach(self, tracks: List[Any]) -> None:
        for track in tracks:
            add_sink = getattr(track, "add_sink", None)
            if callable(add_sink):
                add_sink(self._sink)
                self._tracks.append(track)

    def _detach(self) -> None:
        for track in self._tracks:
            track.remove_sink(self._sink)
        self._tracks = []

    def start(self, tracks: List[Any], on_chunk: ChunkCallback) -> None:
        self._on_chunk = on_chunk
        self._container = av.open(self._buffer, mode="w", format="webm")
        kinds = {getattr(t, "kind", None) for t in tracks}
        if "video" in kinds:
            vstream = self._container.add_stream("libvpx", rate=self._frame_rate)
            vstream.pix_fmt = "yuv420p"
            self._streams["video"] = vstream
            self._clocks["video"] = _StreamClock(Fraction(1, self._frame_rate))
        if "audio" in kinds:
            self._streams["audio"] = self._container.add_stream("libopus", rate=48000)
        if not self._streams:
            raise RecordingError("nothing to record", code="no-tracks")
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="recording-encode")
        self._attach(tracks)
        self._encode_task = asyncio.create_task(self._encode_loop(), name="recording-encode")
        self._slice_task = asyncio.create_task(self._slice_loop(), name="recording-slice")

    def retarget(self, tracks: List[Any]) -> None:
        self._detach()
        self._generation += 1
        logger.debug("recording retarget generation=%s tracks=%s", self._generation, len(tracks))
        self._attach(tracks)

    # ----------------------
    # Encoder thread
    # ----------------------
    def _video_frames(self, frame: av.VideoFrame, generation: int) -> List[av.VideoFrame]:
        stream = self._streams["video"]
        if self._video_size is None:
            # yuv420p wants even dimensions.
            self._video_size = (frame.width - frame.width % 2, frame.height - frame.height % 2)
            stream.width, stream.height = self._video_size
        clock = self._clocks["video"]
        pts = clock.stamp(frame, generation, 1, drop_late=True)
        if pts is None:
            self._late += 1
            return []
        width, height = self._video_size
        out = av.VideoFrame.from_ndarray(
            frame.to_ndarray(format="yuv420p", width=width, height=height), format="yuv420p"
        )
        out.pts = pts
        out.time_base = clock.time_base
        return [out]

    def _audio_frames(self, frame: av.AudioFrame, generation: int) -> List[av.AudioFrame]:
        shape = (frame.format.name, frame.layout.name, frame.sample_rate)
        if self._audio_shape is None:
            self._audio_shape = shape
            self._clocks["audio"] = _StreamClock(Fraction(1, frame.sample_rate))
        copy = av.AudioFrame.from_ndarray(frame.to_ndarray(), format=shape[0], layout=shape[1])
        copy.sample_rate = shape[2]
        copy.pts = frame.pts
        copy.time_base = frame.time_base
        if shape == self._audio_shape:
            frames = [copy]
        else:
            # The Opus encoder is set up from the first frame; keep later sources in that shape.
            if self._resampler is None:
                fmt, layout, rate = self._audio_shape
                self._resampler = av.AudioResampler(format=fmt, layout=layout, rate=rate)
            frames = list(self._resampler.resample(copy))
        clock = self._clocks["audio"]
        for out in frames:
            out.pts = clock.stamp(out, generation, out.samples, drop_late=False)
            out.time_base = clock.time_base
        return frames

    def _encode(self, generation: int, frame: Any) -> None:
        if self._container is None:
            return
        if isinstance(frame, av.VideoFrame) and "video" in self._streams:
            stream = self._streams["video"]
            frames: List[Any] = self._video_frames(frame, generation)
        elif isinstance(frame, av.AudioFrame) and "audio" in self._streams:
            if "video" in self._streams and self._video_size is None:
                # The muxer opens every stream on the first packet; VP8 needs its size by then.
                if len(self._held_audio) < _MAX_HELD_AUDIO:
                    self._held_audio.append((generation, frame))
                else:
                    self._dropped += 1
                return
            stream = self._streams["audio"]
            frames = self._audio_frames(frame, generation)
        else:
            return
        for out in frames:
            for packet in stream.encode(out):
                self._container.mux(packet)
        if self._held_audio and self._video_size is not None:
            held, self._held_audio = self._held_audio, []
            for item in held:
                self._encode(*item)

    def _finish(self, pending: List[Tuple[int, Any]]) -> None:
        for generation, frame in pending:
            try:
                self._encode(generation, frame)
            except (av.FFmpegError, ValueError):
                logger.warning("recording encode failed", exc_info=True)
        if self._container is None:
            return
        if self._held_audio:
            # No video frame ever arrived.
            self._video_size = _FALLBACK_SIZE
            self._streams["video"].width, self._streams["video"].height = _FALLBACK_SIZE
            held, self._held_audio = self._held_audio, []
            for item in held:
                try:
                    self._encode(*item)
                except (av.FFmpegError, ValueError):
                    logger.warning("recording encode failed", exc_info=True)
        for stream in self._streams.values():
            if stream.codec_context.is_open:
                for packet in stream.encode(None):
                    self._container.mux(packet)
        self._container.close()
        self._container = None

    def _close_quietly(self) -> None:
        if self._container is None:
            return
        try:
            self._container.close()
        except av.FFmpegError:
            logger.debug("recording container close failed", exc_info=True)
        self._container = None

    # ----------------------
    # Event loop side
    # ----------------------
    async def _encode_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            generation, frame = await self._queue.get()
            try:
                await loop.run_in_executor(self._executor, self._encode, generation, frame)
            except (av.FFmpegError, ValueError):
                logger.warning("recording encode failed", exc_info=True)

    async def _slice_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self._emit()

    def _emit(self) -> None:
        data = self._buffer.drain()
        if data and self._on_chunk:
            self._on_chunk(data)

    def _cancel_tasks(self) -> None:
        for task in (self._encode_task, self._slice_task):
            if task is not None and not task.done():
                task.cancel()
        self._encode_task = None
        self._slice_task = None

    def _take_pending(self) -> List[Tuple[int, Any]]:
        pending = []
        while not self._queue.empty():
            pending.append(self._queue.get_nowait())
        return pending

    async def stop(self) -> None:
        self._detach()
        self._cancel_tasks()
        pending = self._take_pending()
        executor = self._executor
        self._executor = None
        if executor is not None:
            # Queued behind any in-flight encode on the single worker.
            try:
                await asyncio.get_running_loop().run_in_executor(executor, self._finish, pending)
            finally:
                executor.shutdown(wait=False)
        self._emit()
        if self._dropped or self._late:
            logger.warning("recording dropped frames=%s late=%s", self._dropped, self._late)

    def abort(self) -> None:
        self._detach()
        self._cancel_tasks()
        self._take_pending()
        self._on_chunk = None
        self._held_audio = []
        executor = self._executor
        self._executor = None
        if executor is not None:
            executor.submit(self._close_quietly)
            executor.shutdown(wait=False)
        else:
            self._close_quietly()
        self._buffer.drain()


@dataclass
class RecordingCallbacks:
    send: AsyncCallback  # (msg: dict)
    on_notice: Optional[AsyncCallback] = None  # (level: str, message: str, code: str)
    on_state: Optional[Callable[[RecordingState], None]] = None
    on_progress: Optional[Callable[[int], None]] = None


class RecordingPipeline:
    """Idle → Recording → Stopping → Uploading → Completed | Failed (→ Idle)."""

    def __init__(
        self,
        session: CallSession,
        sink: UploadSink,
        callbacks: RecordingCallbacks,
        *,
        config: Optional[RecordingConfig] = None,
        capture_factory: Optional[Callable[[], MediaCapture]] = None,
        tracks: Optional[Callable[[], List[Any]]] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._session = session
        self._sink = sink
        self._callbacks = callbacks
        self._config = config or RecordingConfig()
        self._capture_factory = capture_factory or (lambda: WebmTrackCapture(interval=self._config.chunk_interval))
        self._tracks = tracks or (lambda: list(session.local_tracks))
        self._sleep = sleep
        self._capture: Optional[MediaCapture] = None
        self._upload_task: Optional[asyncio.Task[None]] = None
        self.last_job: Optional[RecordingJob] = None
        self.remote_recording = False

    @property
    def state(self) -> RecordingState:
        job = self._session.recording_job
        return job.state if job is not None else RecordingState.IDLE

    @property
    def is_active(self) -> bool:
        return self._session.recording_job is not None

    def _transition(self, job: RecordingJob, state: RecordingState) -> None:
        job.state = state
        logger.info("recording state call_id=%s state=%s", self._session.call_id, state.value)
        if self._callbacks.on_state:
            self._callbacks.on_state(state)

    def _finish(self, job: RecordingJob) -> None:
        self.last_job = job
        if self._session.recording_job is job:
            self._session.recording_job = None

    # ----------------------
    # Control (either role)
    # ----------------------
    async def request_start(self, actor: str) -> None:
        if self._session.role is Role.SUPERVISOR:
            await self._callbacks.send(protocol.make_recording_status(self._session.call_id, True, actor))
            return
        await self.start(actor, broadcast=True)

    async def request_stop(self, actor: str) -> None:
        if self._session.role is Role.SUPERVISOR:
            await self._callbacks.send(protocol.make_recording_status(self._session.call_id, False, actor))
            return
        await self.stop(actor, broadcast=True)

    async def handle_status(self, msg: Dict[str, Any]) -> None:
        is_recording = bool(msg.get("isRecording"))
        if self._session.role is Role.SUPERVISOR:
            self.remote_recording = is_recording
            actor = msg.get("startedBy" if is_recording else "stoppedBy") or "investigator"
            await self._notice("info", f"Recording {'started' if is_recording else 'stopped'} by {actor}", "recording-status")
            return
        if is_recording:
            await self.start(str(msg.get("startedBy") or Role.SUPERVISOR.value), broadcast=False)
        else:
            await self.stop(str(msg.get("stoppedBy") or Role.SUPERVISOR.value), broadcast=False)

    # ----------------------
    # Capture (investigator only)
    # ----------------------
    async def start(self, actor: str, *, broadcast: bool = False) -> None:
        if self._session.role is not Role.INVESTIGATOR:
            raise RecordingError("only the investigator device records", code="wrong-role")
        if self._session.recording_job is not None:
            logger.warning("recording already active call_id=%s", self._session.call_id)
            return

        job = RecordingJob(started_by=actor, started_at=protocol.now_ms())
        self._session.recording_job = job
        capture = self._capture_factory()
        try:
            capture.start(self._tracks(), job.chunks.append)
        except (CallError, av.FFmpegError, ValueError) as e:
            capture.abort()
            err = e if isinstance(e, RecordingError) else RecordingError(f"cannot start capture: {e}", code="unsupported-format")
            await self._fail(job, err)
            raise err from e
        self._capture = capture
        self._transition(job, RecordingState.RECORDING)
        if broadcast:
            await self._callbacks.send(protocol.make_recording_status(self._session.call_id, True, actor, job.started_at))

    def retarget(self, tracks: List[Any]) -> None:
        if self._capture is not None:
            self._capture.retarget(tracks)

    async def stop(self, actor: str, *, broadcast: bool = False) -> None:
        job = self._session.recording_job
        if job is None or job.state is not RecordingState.RECORDING:
            logger.info("recording stop ignored call_id=%s state=%s", self._session.call_id, self.state.value)
            return
        job.stopped_by = actor
        job.stopped_at = protocol.now_ms()
        self._transition(job, RecordingState.STOPPING)
        if broadcast:
            await self._callbacks.send(protocol.make_recording_status(self._session.call_id, False, actor, job.stopped_at))

        capture = self._capture
        self._capture = None
        if capture is not None:
            try:
                await capture.stop()
            except (av.FFmpegError, ValueError) as e:
                logger.warning("recording finalize failed call_id=%s error=%s", self._session.call_id, e)

        if not job.chunks:
            err = RecordingError("no media was captured", code="no-data")
            await self._fail(job, err)
            raise err

        data = b"".join(job.chunks)
        self._transition(job, RecordingState.UPLOADING)
        self._upload_task = asyncio.create_task(self._upload(job, data), name=f"recording-upload-{self._session.call_id}")

    def _metadata(self, job: RecordingJob) -> Dict[str, str]:
        meta = {
            "callId": self._session.call_id,
            "startedBy": job.started_by,
            "startedAt": str(job.started_at),
            "stoppedAt": str(job.stopped_at or ""),
            "chunkCount": str(len(job.chunks)),
            "contentType": self._config.content_type,
        }
        if self._session.claim is not None:
            meta.update(self._session.claim.as_metadata())
        return meta

    def _progress(self, job: RecordingJob) -> Callable[[int], None]:
        def _on_progress(pct: int) -> None:
            job.progress = max(0, min(100, int(pct)))
            if self._callbacks.on_progress:
                self._callbacks.on_progress(job.progress)

        return _on_progress

    async def _upload(self, job: RecordingJob, data: bytes) -> None:
        policy = self._config.upload_policy
        attempt = 0
        while True:
            try:
                url = await self._sink.upload(data, self._config.content_type, self._metadata(job), self._progress(job))
                break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                err = e if isinstance(e, UploadError) else UploadError(f"upload failed: {e}")
                attempt += 1
                if not policy.allows(attempt):
                    logger.warning("recording upload failed call_id=%s error=%s", self._session.call_id, err)
                    await self._fail(job, err)
                    return
                delay = policy.delay_for(attempt - 1)
                logger.info("recording upload retry call_id=%s attempt=%s delay=%.1fs", self._session.call_id, attempt, delay)
                await self._sleep(delay)

        job.url = url
        job.progress = 100
        self._transition(job, RecordingState.COMPLETED)
        self._finish(job)
        await self._callbacks.send(protocol.make_recording_completed(self._session.call_id, url))
        await self._notice("info", "Recording saved", "recording-completed")

    async def _fail(self, job: RecordingJob, err: CallError) -> None:
        job.error = err.message
        self._transition(job, RecordingState.FAILED)
        self._finish(job)
        await self._notice("error", f"Recording failed: {err.message}", err.code)
        try:
            await self._callbacks.send(protocol.make_recording_error(self._session.call_id, err.message, err.code))
        except Exception:
            logger.exception("recording error send failed call_id=%s", self._session.call_id)

    async def join(self) -> None:
        """Wait for an in-flight upload to settle."""
        task = self._upload_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    def abandon(self) -> None:
        """Teardown path: drop capture and upload without waiting."""
        if self._capture is not None:
            self._capture.abort()
            self._capture = None
        task = self._upload_task
        self._upload_task = None
        if task is not None and not task.done():
            task.cancel()
        job = self._session.recording_job
        if job is not None:
            job.error = "call ended before the recording was saved"
            self._transition(job, RecordingState.FAILED)
            self._finish(job)

    async def _notice(self, level: str, message: str, code: str) -> None:
        if self._callbacks.on_notice:
            await self._callbacks.on_notice(level, message, code)
