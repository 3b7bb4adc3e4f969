"""Call session state machine.

One controller per `CallSession`. Signaling messages, transport state
changes and user actions are all handled here, sequentially, against the
session state. Offers only ever come from the investigator role; the
supervisor answers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ..config import SessionConfig
from ..errors import CallError, MediaAcquisitionError, NegotiationError, RecordingError, SignalingError
from ..errors import ConnectionError as TransportError
from ..net import protocol
from ..rtc.media import FACING_USER, MediaBackend, MediaCallbacks, MediaConstraints, MediaTrackManager
from ..rtc.quality import ConnectionQualityMonitor, QualityCallbacks
from ..rtc.recording import MediaCapture, RecordingCallbacks, RecordingPipeline
from ..rtc.screen_share import ScreenShareCallbacks, ScreenShareController
from ..rtc.screenshot import RemoteMediaSink, encode_jpeg
from ..rtc.webrtc_peer import PeerCallbacks, WebRTCPeer
from ..storage import UploadSink
from .models import CallSession, CallState, Notice, RecordingState, Role, can_transition
from .reconnect import ReconnectCallbacks, ReconnectionManager


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
SendMessage = Callable[[Dict[str, Any]], Awaitable[None]]
PeerFactory = Callable[[str, PeerCallbacks], Any]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class SessionCallbacks:
    on_log: Optional[AsyncCallback] = None  # (msg: str)
    on_state: Optional[AsyncCallback] = None  # (state: CallState)
    on_notice: Optional[AsyncCallback] = None  # (notice: Notice)
    on_remote_track: Optional[AsyncCallback] = None  # (track)
    on_quality: Optional[AsyncCallback] = None  # (snapshot: QualitySnapshot)
    on_location: Optional[AsyncCallback] = None  # (location: dict)
    on_recording_state: Optional[Callable[[RecordingState], None]] = None
    on_upload_progress: Optional[Callable[[int], None]] = None
    on_ended: Optional[AsyncCallback] = None  # (session: CallSession)


class CallSessionController:
    def __init__(
        self,
        session: CallSession,
        send: SendMessage,
        *,
        media_backend: MediaBackend,
        upload_sink: UploadSink,
        config: Optional[SessionConfig] = None,
        callbacks: Optional[SessionCallbacks] = None,
        peer_factory: Optional[PeerFactory] = None,
        capture_factory: Optional[Callable[[], MediaCapture]] = None,
        reconnect_sleep: Sleep = asyncio.sleep,
    ):
        self.session = session
        self._send = send
        self._config = config or SessionConfig()
        self._callbacks = callbacks or SessionCallbacks()
        self._upload_sink = upload_sink
        rtc_config = self._config.rtc_configuration()
        self._peer_factory: PeerFactory = peer_factory or (
            lambda call_id, cb: WebRTCPeer(call_id, callbacks=cb, rtc_config=rtc_config)
        )
        self._peer: Any = None

        self._negotiation_lock = asyncio.Lock()
        self._ice_lock = asyncio.Lock()
        self._offer_outstanding = False
        self._renegotiate_pending = False
        self._initial_offer_sent = False
        self._ending = False
        self._duration_task: Optional[asyncio.Task[None]] = None

        self.remote_sink = RemoteMediaSink()
        self.media = MediaTrackManager(
            session,
            media_backend,
            MediaConstraints.from_config(self._config.media),
            MediaCallbacks(on_notice=self._component_notice, on_negotiation_needed=self.handle_negotiation_needed),
        )
        self.screen_share = ScreenShareController(
            session,
            self.media,
            ScreenShareCallbacks(
                send=self._send_safe,
                on_notice=self._component_notice,
                on_negotiation_needed=self.handle_negotiation_needed,
            ),
        )
        self.recording = RecordingPipeline(
            session,
            upload_sink,
            RecordingCallbacks(
                send=self._send_safe,
                on_notice=self._component_notice,
                on_state=self._callbacks.on_recording_state,
                on_progress=self._callbacks.on_upload_progress,
            ),
            config=self._config.recording,
            capture_factory=capture_factory,
        )
        self.quality = ConnectionQualityMonitor(
            session,
            None,
            QualityCallbacks(
                send=self._send_safe,
                resolution=lambda: self.media.resolution,
                on_notice=self._component_notice,
                on_snapshot=self._callbacks.on_quality,
            ),
            interval=self._config.quality_interval,
        )
        self.reconnect = ReconnectionManager(
            session,
            self._config.reconnect_policy,
            ReconnectCallbacks(
                restart=self._restart_transport,
                on_exhausted=self._on_reconnect_exhausted,
                on_notice=self._transient_notice,
            ),
            sleep=reconnect_sleep,
        )

        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            protocol.JOIN_CALL: self._on_join_call,
            protocol.CALL_ACCEPTED: self._on_call_accepted,
            protocol.CALL_REJECTED: self._on_call_rejected,
            protocol.VIDEO_OFFER: self._on_video_offer,
            protocol.VIDEO_ANSWER: self._on_video_answer,
            protocol.ICE_CANDIDATE: self._on_ice_candidate,
            protocol.RECORDING_STATUS: self._on_recording_status,
            protocol.RECORDING_COMPLETED: self._on_recording_completed,
            protocol.RECORDING_ERROR: self._on_recording_error,
            protocol.CONNECTION_STATS: self._on_connection_stats,
            protocol.SCREEN_SHARING_STATUS: self._on_screen_sharing_status,
            protocol.LOCATION_UPDATE: self._on_location_update,
            protocol.SCREENSHOT_SAVED: self._on_screenshot_saved,
            protocol.REQUEST_FRONT_CAMERA: self._on_request_front_camera,
            protocol.END_CALL: self._on_remote_end,
            protocol.CALL_ENDED: self._on_remote_end,
        }

    # ----------------------
    # Introspection
    # ----------------------
    @property
    def call_id(self) -> str:
        return self.session.call_id

    @property
    def role(self) -> Role:
        return self.session.role

    @property
    def state(self) -> CallState:
        return self.session.state

    @property
    def peer(self) -> Any:
        return self._peer

    @property
    def has_active_timers(self) -> bool:
        duration = self._duration_task is not None and not self._duration_task.done()
        return duration or self.quality.is_running or self.reconnect.is_active

    # ----------------------
    # Lifecycle
    # ----------------------
    async def start(self) -> None:
        """Create the connection, acquire media and announce ourselves."""
        if self.session.state is not CallState.IDLE:
            raise SignalingError(f"session already started state={self.session.state.value}")
        await self._transition(CallState.INITIALIZING)
        await self._log(f"Initializing call {self.call_id} as {self.role.value}")

        self._peer = self._peer_factory(
            self.call_id,
            PeerCallbacks(
                on_log=self._log,
                on_connection_state=self.handle_transport_state,
                on_local_ice=self._on_local_ice,
                on_track=self._on_remote_track,
            ),
        )
        self._bind_peer()
        try:
            tracks = await self.media.acquire()
        except MediaAcquisitionError as e:
            logger.warning("session media failed call_id=%s error=%s", self.call_id, e)
            await self.fail(f"Cannot access camera/microphone: {e.message}", code=e.code)
            return
        if self._ending or self.session.state.is_terminal:
            # Ended while the devices were opening; teardown saw no tracks.
            logger.info("session ended during media acquisition call_id=%s", self.call_id)
            self.media.stop()
            return
        self._peer.attach_tracks(tracks)
        logger.info("session initialized call_id=%s role=%s tracks=%s", self.call_id, self.role.value, len(tracks))

        await self._send_safe(protocol.make_join_call(self.call_id, self.role.value))
        await self._transition(CallState.NEGOTIATING)
        if self.role is Role.SUPERVISOR:
            await self._send_safe(protocol.make_call_accepted(self.call_id))

    async def end_call(self, *, notify_remote: bool = True, reason: str = "local") -> None:
        """Tear the call down. Reachable from every state."""
        if self.session.state.is_terminal or self._ending:
            return
        self._ending = True
        logger.info("session ending call_id=%s state=%s reason=%s", self.call_id, self.session.state.value, reason)
        if notify_remote:
            await self._send_safe(protocol.make_end_call(self.call_id))
        self.session.end_reason = reason
        await self._teardown()
        await self._transition(CallState.ENDED)
        await self._notify("info", "Call ended", code="call-ended")
        if self._callbacks.on_ended:
            await self._callbacks.on_ended(self.session)

    async def fail(self, reason: str, *, code: str = "call-failed") -> None:
        """Irrecoverable failure; a fresh session is needed to try again."""
        if self.session.state.is_terminal or self._ending:
            return
        self._ending = True
        logger.error("session failed call_id=%s state=%s reason=%s", self.call_id, self.session.state.value, reason)
        await self._send_safe(protocol.make_end_call(self.call_id))
        self.session.end_reason = reason
        await self._teardown()
        await self._transition(CallState.FAILED)
        await self._notify("error", reason, code=code, fatal=True)
        if self._callbacks.on_ended:
            await self._callbacks.on_ended(self.session)

    async def _teardown(self) -> None:
        # Timers first so nothing fires against a half-closed session.
        self.reconnect.cancel()
        self.quality.stop()
        if self._duration_task is not None and not self._duration_task.done():
            self._duration_task.cancel()
        self._duration_task = None

        self.recording.abandon()
        self.screen_share.teardown()
        self.media.stop()

        self.remote_sink.stop()
        for track in self.session.remote_tracks:
            track.stop()
        self.session.remote_tracks.clear()

        self.session.pending_ice_candidates.clear()
        self._offer_outstanding = False
        self._renegotiate_pending = False

        if self._peer is not None:
            try:
                await self._peer.close()
            except Exception:
                logger.exception("session peer close failed call_id=%s", self.call_id)
        try:
            await self.media.close()
        except Exception:
            logger.debug("session media close failed call_id=%s", self.call_id, exc_info=True)

    async def _transition(self, target: CallState) -> None:
        current = self.session.state
        if current is target:
            return
        if not can_transition(current, target):
            raise SignalingError(f"illegal transition {current.value} -> {target.value}", code="out-of-order")
        self.session.state = target
        self.session.history.append(target)
        logger.info("session state call_id=%s %s -> %s", self.call_id, current.value, target.value)
        if self._callbacks.on_state:
            await self._callbacks.on_state(target)

    def _bind_peer(self) -> None:
        self.media.bind_peer(self._peer)
        self.screen_share.bind_peer(self._peer)
        self.quality.bind_peer(self._peer)

    # ----------------------
    # Signaling dispatch
    # ----------------------
    async def handle_message(self, msg: Dict[str, Any]) -> None:
        mtype = msg.get("type")
        if msg.get("callId") != self.call_id:
            await self._report(SignalingError(f"message for call {msg.get('callId')!r} routed to {self.call_id}"))
            return
        handler = self._handlers.get(str(mtype))
        if handler is None:
            await self._report(SignalingError(f"unsupported message type {mtype!r}", code="unknown-type"))
            return
        if self.session.state.is_terminal:
            logger.debug("session ignoring type=%s call_id=%s (terminal)", mtype, self.call_id)
            return
        try:
            await handler(msg)
        except CallError as e:
            await self._report(e)

    async def _on_join_call(self, msg: Dict[str, Any]) -> None:
        remote_role = msg.get("role")
        if remote_role == self.role.value:
            raise SignalingError(f"second {remote_role} joined call", code="duplicate-role")
        if remote_role != self.role.opposite.value:
            raise SignalingError(f"unknown role {remote_role!r}")
        await self._log(f"{remote_role} joined call {self.call_id}")
        if self.role is Role.SUPERVISOR:
            await self._send_safe(protocol.make_call_accepted(self.call_id))
        else:
            await self._maybe_send_initial_offer()

    async def _on_call_accepted(self, msg: Dict[str, Any]) -> None:
        if self.role is Role.INVESTIGATOR:
            await self._maybe_send_initial_offer()

    async def _on_call_rejected(self, msg: Dict[str, Any]) -> None:
        reason = str(msg.get("reason") or "Call was rejected")
        await self.fail(reason, code="call-rejected")

    async def _maybe_send_initial_offer(self) -> None:
        if self.session.state is not CallState.NEGOTIATING or self._initial_offer_sent:
            return
        self._initial_offer_sent = True
        await self._send_offer()

    async def _send_offer(self, *, restart: bool = False) -> None:
        if self.role is not Role.INVESTIGATOR:
            logger.debug("session offer suppressed (supervisor) call_id=%s", self.call_id)
            return
        async with self._negotiation_lock:
            if self._offer_outstanding and not restart:
                self._renegotiate_pending = True
                logger.debug("session renegotiation queued call_id=%s", self.call_id)
                return
            try:
                sdp = await self._peer.create_offer()
            except NegotiationError:
                if self.session.state is CallState.NEGOTIATING:
                    await self.fail("Could not start video negotiation", code="negotiation")
                    return
                raise
            self._offer_outstanding = True
            self._renegotiate_pending = False
            logger.info("rtc offer sent call_id=%s restart=%s sdp_len=%s", self.call_id, restart, len(sdp))
            await self._send_safe(protocol.make_offer(self.call_id, sdp, restart=restart))

    async def _on_video_offer(self, msg: Dict[str, Any]) -> None:
        if self.role is Role.INVESTIGATOR:
            raise NegotiationError("offer received by the offering role (glare)", code="glare")
        sdp = str(msg["sdp"])
        async with self._negotiation_lock:
            if msg.get("restart") and self._peer.has_remote_description:
                await self._rebuild_transport()
            try:
                answer = await self._peer.apply_offer_and_create_answer(sdp)
            except NegotiationError:
                if self.session.state is CallState.NEGOTIATING:
                    await self.fail("Video offer could not be applied", code="negotiation")
                    return
                raise
            await self._remote_description_applied()
            logger.info("rtc answer sent call_id=%s sdp_len=%s", self.call_id, len(answer))
            await self._send_safe(protocol.make_answer(self.call_id, answer))

    async def _on_video_answer(self, msg: Dict[str, Any]) -> None:
        if self.role is Role.SUPERVISOR:
            raise NegotiationError("answer received by the answering role", code="glare")
        async with self._negotiation_lock:
            if not self._offer_outstanding:
                raise SignalingError("answer without an outstanding offer", code="out-of-order")
            try:
                await self._peer.apply_answer(str(msg["sdp"]))
            except NegotiationError:
                self._offer_outstanding = False
                if self.session.state is CallState.NEGOTIATING:
                    await self.fail("Video answer was rejected", code="negotiation")
                    return
                raise
            self._offer_outstanding = False
            await self._remote_description_applied()
            pending = self._renegotiate_pending
        if pending:
            await self._send_offer()

    async def _remote_description_applied(self) -> None:
        async with self._ice_lock:
            self.session.remote_description_set = True
            queued = self.session.pending_ice_candidates
            self.session.pending_ice_candidates = []
            if queued:
                logger.debug("rtc flushing ice call_id=%s count=%s", self.call_id, len(queued))
            for candidate in queued:
                try:
                    await self._peer.add_ice_candidate(candidate)
                except SignalingError as e:
                    logger.warning("rtc queued ice rejected call_id=%s error=%s", self.call_id, e)

    async def _on_ice_candidate(self, msg: Dict[str, Any]) -> None:
        candidate = msg["candidate"]
        if not self.session.remote_description_set:
            self.session.pending_ice_candidates.append(candidate)
            logger.debug("rtc ice queued call_id=%s queued=%s", self.call_id, len(self.session.pending_ice_candidates))
            return
        async with self._ice_lock:
            await self._peer.add_ice_candidate(candidate)

    async def _on_recording_status(self, msg: Dict[str, Any]) -> None:
        try:
            await self.recording.handle_status(msg)
        except RecordingError as e:
            # Already reported to both roles by the pipeline.
            logger.info("session recording control failed call_id=%s error=%s", self.call_id, e)

    async def _on_recording_completed(self, msg: Dict[str, Any]) -> None:
        self.recording.remote_recording = False
        await self._notify("info", f"Recording saved: {msg['recordingUrl']}", code="recording-completed")

    async def _on_recording_error(self, msg: Dict[str, Any]) -> None:
        self.recording.remote_recording = False
        await self._notify("error", f"Recording failed: {msg['error']}", code=str(msg.get("code") or "recording"))

    async def _on_connection_stats(self, msg: Dict[str, Any]) -> None:
        self.session.remote_quality = {"stats": msg["stats"], "quality": msg["quality"]}

    async def _on_screen_sharing_status(self, msg: Dict[str, Any]) -> None:
        self.session.remote_screen_sharing = bool(msg["isScreenSharing"])
        await self._log(f"Remote screen sharing: {self.session.remote_screen_sharing}")

    async def _on_location_update(self, msg: Dict[str, Any]) -> None:
        if self.role is not Role.SUPERVISOR:
            logger.debug("session location ignored (investigator) call_id=%s", self.call_id)
            return
        location = msg["location"]
        if not isinstance(location, dict):
            raise SignalingError("location must be an object")
        self.session.last_location = location  # type: ignore[assignment]
        if self._callbacks.on_location:
            await self._callbacks.on_location(location)

    async def _on_screenshot_saved(self, msg: Dict[str, Any]) -> None:
        await self._notify("info", "Supervisor captured a screenshot", code="screenshot-saved")

    async def _on_request_front_camera(self, msg: Dict[str, Any]) -> None:
        if self.role is not Role.INVESTIGATOR:
            logger.debug("session front camera request ignored (supervisor) call_id=%s", self.call_id)
            return
        await self._notify("info", "Supervisor requested front camera", code="front-camera-requested")
        if self.media.constraints.facing_mode == FACING_USER:
            return
        try:
            await self.switch_camera()
        except CallError as e:
            # Already reported by switch_camera.
            logger.info("session front camera switch failed call_id=%s error=%s", self.call_id, e)

    async def _on_remote_end(self, msg: Dict[str, Any]) -> None:
        await self.end_call(notify_remote=False, reason="remote")

    # ----------------------
    # Transport
    # ----------------------
    async def handle_transport_state(self, state: str) -> None:
        if self._ending or self.session.state.is_terminal:
            return
        current = self.session.state
        if state == "connected":
            if current in (CallState.NEGOTIATING, CallState.RECONNECTING):
                await self._transition(CallState.CONNECTED)
                self.reconnect.reset()
                if self.session.connected_at is None:
                    self.session.connected_at = time.monotonic()
                self.quality.start()
                self._start_duration_timer()
                await self._log(f"Call {self.call_id} connected")
        elif state in ("disconnected", "failed"):
            if current in (CallState.NEGOTIATING, CallState.CONNECTED):
                self.quality.stop()
                await self._transition(CallState.RECONNECTING)
            if self.session.state is CallState.RECONNECTING:
                await self.reconnect.on_transport_failure(state)
        else:
            logger.debug("session transport state=%s call_id=%s", state, self.call_id)

    async def _rebuild_transport(self) -> None:
        async with self._ice_lock:
            self.session.remote_description_set = False
            self.session.pending_ice_candidates.clear()
        for track in self.session.remote_tracks:
            track.stop()
        self.session.remote_tracks.clear()
        await self._peer.restart_ice()
        self._bind_peer()

    async def _restart_transport(self, kind: str) -> None:
        if self._ending or self.session.state is not CallState.RECONNECTING:
            return
        logger.info("session ice restart call_id=%s kind=%s", self.call_id, kind)
        async with self._negotiation_lock:
            self._offer_outstanding = False
            await self._rebuild_transport()
        if self.role is Role.INVESTIGATOR:
            await self._send_offer(restart=True)

    async def _on_reconnect_exhausted(self, attempts: int) -> None:
        err = TransportError(f"Connection lost after {attempts} attempts", transient=False, code="connection-failed")
        await self.fail(err.message, code=err.code)

    async def handle_negotiation_needed(self) -> None:
        self.recording.retarget(self.session.local_tracks)
        if self.role is not Role.INVESTIGATOR:
            logger.debug("session negotiation-needed ignored (supervisor) call_id=%s", self.call_id)
            return
        if not self._initial_offer_sent or self.session.state.is_terminal:
            return
        await self._send_offer()

    def _start_duration_timer(self) -> None:
        if self._duration_task is not None and not self._duration_task.done():
            return
        self._duration_task = asyncio.create_task(self._duration_loop(), name=f"duration-{self.call_id}")

    async def _duration_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.duration_tick)
            if self.session.connected_at is not None:
                self.session.duration_seconds = int(time.monotonic() - self.session.connected_at)

    async def _on_local_ice(self, candidate: Dict[str, Any]) -> None:
        await self._send_safe(protocol.make_ice(self.call_id, candidate))  # type: ignore[arg-type]

    async def _on_remote_track(self, track: Any) -> None:
        self.session.remote_tracks.append(track)
        await self.remote_sink.start(track)
        if self._callbacks.on_remote_track:
            await self._callbacks.on_remote_track(track)

    # ----------------------
    # User actions
    # ----------------------
    async def switch_camera(self) -> None:
        try:
            await self.media.switch_camera()
        except CallError as e:
            # Fallback reopened the previous camera with fresh tracks.
            self.recording.retarget(self.session.local_tracks)
            await self._report(e)
            raise

    def set_muted(self, muted: bool) -> None:
        self.media.set_muted(muted)

    def set_video_enabled(self, enabled: bool) -> None:
        self.media.set_video_enabled(enabled)

    async def set_torch(self, on: bool) -> bool:
        return await self.media.set_torch(on)

    async def start_screen_share(self) -> None:
        try:
            await self.screen_share.start()
        except CallError as e:
            await self._report(e)
            raise

    async def stop_screen_share(self) -> None:
        try:
            await self.screen_share.stop()
        except CallError as e:
            await self._report(e)
            raise

    async def request_front_camera(self) -> None:
        if self.role is not Role.SUPERVISOR:
            raise SignalingError("only the supervisor requests the front camera", code="wrong-role")
        await self._send_safe(protocol.make_request_front_camera(self.call_id))

    async def start_recording(self) -> None:
        await self.recording.request_start(self.role.value)

    async def stop_recording(self) -> None:
        await self.recording.request_stop(self.role.value)

    async def send_location(self, lat: float, lon: float, accuracy: Optional[float] = None, **extra: Any) -> None:
        if self.role is not Role.INVESTIGATOR:
            raise SignalingError("only the investigator shares location", code="wrong-role")
        location: Dict[str, Any] = {"lat": lat, "lon": lon, "accuracy": accuracy}
        location.update(extra)
        await self._send_safe(protocol.make_location_update(self.call_id, location))  # type: ignore[arg-type]

    async def take_screenshot(self) -> str:
        if self.role is not Role.SUPERVISOR:
            raise RecordingError("only the supervisor takes screenshots", code="wrong-role")
        frame = self.remote_sink.latest_video
        if frame is None:
            err = RecordingError("no remote video to capture", code="no-data")
            await self._report(err)
            raise err
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, encode_jpeg, frame)
        ts = protocol.now_ms()
        metadata = {"callId": self.call_id, "timestamp": str(ts), "kind": "screenshot"}
        if self.session.claim is not None:
            metadata.update(self.session.claim.as_metadata())
        url = await self._upload_sink.upload(data, "image/jpeg", metadata, None)
        await self._send_safe(protocol.make_screenshot_saved(self.call_id, url, ts))
        await self._notify("info", "Screenshot captured", code="screenshot-saved")
        return url

    # ----------------------
    # Notices / output
    # ----------------------
    async def _send_safe(self, msg: Dict[str, Any]) -> None:
        try:
            await self._send(msg)
        except Exception:
            logger.warning("signaling send failed call_id=%s type=%s", self.call_id, msg.get("type"), exc_info=True)

    async def _report(self, err: CallError) -> None:
        logger.warning("session error call_id=%s kind=%s error=%s", self.call_id, type(err).__name__, err)
        await self._notify("error", err.message, code=err.code)

    async def _notify(self, level: str, message: str, *, code: Optional[str] = None, fatal: bool = False) -> None:
        if self._callbacks.on_notice:
            await self._callbacks.on_notice(Notice(level=level, message=message, code=code, fatal=fatal))

    async def _component_notice(self, level: str, message: str, code: str) -> None:
        await self._notify(level, message, code=code)

    async def _transient_notice(self, message: str) -> None:
        err = TransportError(message, transient=True, code="reconnecting")
        await self._notify("info", err.message, code=err.code)

    async def _log(self, message: str) -> None:
        if self._callbacks.on_log:
            await self._callbacks.on_log(message)
