"""Session manager: routes signaling traffic to per-call controllers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ..config import SessionConfig
from ..errors import CallError, SignalingError
from ..net import protocol
from ..rtc.media import AiortcMediaBackend, MediaBackend
from ..rtc.recording import MediaCapture
from ..storage import UploadSink
from .controller import CallSessionController, PeerFactory, SendMessage, SessionCallbacks
from .models import CallSession, CallState, ClaimContext, Notice, Role


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class ManagerCallbacks:
    on_log: Optional[AsyncCallback] = None
    on_session_state: Optional[AsyncCallback] = None  # (call_id: str, state: CallState)
    on_notice: Optional[AsyncCallback] = None  # (call_id: Optional[str], notice: Notice)
    on_incoming_call: Optional[AsyncCallback] = None  # (call_id: str, msg: dict)
    on_session_ended: Optional[AsyncCallback] = None  # (session: CallSession)


class CallSessionManager:
    """Keeps one controller per callId; many calls can be active at once.

    An incoming `join_call` for an unknown call rings for
    `config.ring_timeout` seconds; unless the call is started or rejected
    first it is rejected with "Call timed out".
    """

    def __init__(
        self,
        send: SendMessage,
        upload_sink: UploadSink,
        *,
        config: Optional[SessionConfig] = None,
        callbacks: Optional[ManagerCallbacks] = None,
        backend_factory: Optional[Callable[[], MediaBackend]] = None,
        peer_factory: Optional[PeerFactory] = None,
        capture_factory: Optional[Callable[[], MediaCapture]] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._send = send
        self._upload_sink = upload_sink
        self._config = config or SessionConfig()
        self._callbacks = callbacks or ManagerCallbacks()
        self._backend_factory = backend_factory or (lambda: AiortcMediaBackend(self._config.media))
        self._peer_factory = peer_factory
        self._capture_factory = capture_factory
        self._sleep = sleep
        self._controllers: Dict[str, CallSessionController] = {}
        self._ringing: Dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()

    @property
    def call_ids(self) -> list[str]:
        return list(self._controllers.keys())

    @property
    def ringing(self) -> list[str]:
        return list(self._ringing.keys())

    def get(self, call_id: str) -> Optional[CallSessionController]:
        return self._controllers.get(call_id)

    async def start_session(
        self,
        call_id: str,
        role: Role,
        claim: Optional[ClaimContext] = None,
        *,
        callbacks: Optional[SessionCallbacks] = None,
    ) -> CallSessionController:
        self._stop_ringing(call_id)
        async with self._lock:
            if call_id in self._controllers:
                raise SignalingError(f"session already active for call {call_id}", code="duplicate-call")
            session = CallSession(call_id=call_id, role=role, claim=claim)
            controller = CallSessionController(
                session,
                self._send,
                media_backend=self._backend_factory(),
                upload_sink=self._upload_sink,
                config=self._config,
                callbacks=self._session_callbacks(call_id, callbacks),
                peer_factory=self._peer_factory,
                capture_factory=self._capture_factory,
            )
            self._controllers[call_id] = controller
        logger.info("session created call_id=%s role=%s", call_id, role.value)
        await controller.start()
        return controller

    def _session_callbacks(self, call_id: str, extra: Optional[SessionCallbacks]) -> SessionCallbacks:
        cb = extra or SessionCallbacks()

        async def on_state(state: CallState) -> None:
            if extra and extra.on_state:
                await extra.on_state(state)
            if self._callbacks.on_session_state:
                await self._callbacks.on_session_state(call_id, state)

        async def on_notice(notice: Notice) -> None:
            if extra and extra.on_notice:
                await extra.on_notice(notice)
            if self._callbacks.on_notice:
                await self._callbacks.on_notice(call_id, notice)

        async def on_ended(session: CallSession) -> None:
            self._controllers.pop(call_id, None)
            logger.info("session removed call_id=%s state=%s", call_id, session.state.value)
            if extra and extra.on_ended:
                await extra.on_ended(session)
            if self._callbacks.on_session_ended:
                await self._callbacks.on_session_ended(session)

        return SessionCallbacks(
            on_log=cb.on_log or self._callbacks.on_log,
            on_state=on_state,
            on_notice=on_notice,
            on_remote_track=cb.on_remote_track,
            on_quality=cb.on_quality,
            on_location=cb.on_location,
            on_recording_state=cb.on_recording_state,
            on_upload_progress=cb.on_upload_progress,
            on_ended=on_ended,
        )

    async def handle_message(self, msg: Dict[str, Any]) -> None:
        call_id = str(msg.get("callId", ""))
        controller = self._controllers.get(call_id)
        if controller is not None:
            await controller.handle_message(msg)
            return

        if msg.get("type") == protocol.JOIN_CALL and self._callbacks.on_incoming_call:
            logger.info("session incoming call call_id=%s role=%s", call_id, msg.get("role"))
            self._start_ringing(call_id)
            await self._callbacks.on_incoming_call(call_id, msg)
            return
        if msg.get("type") in (protocol.END_CALL, protocol.CALL_ENDED):
            # The caller gave up before we answered.
            self._stop_ringing(call_id)
            logger.debug("session end for unknown call call_id=%s", call_id)
            return
        await self.handle_signaling_error(SignalingError(f"no session for call {call_id!r}", code="unknown-call"), msg)

    async def handle_signaling_error(self, error: CallError, payload: Any = None) -> None:
        call_id = payload.get("callId") if isinstance(payload, dict) else None
        logger.warning("signaling error call_id=%s code=%s error=%s", call_id, error.code, error)
        if self._callbacks.on_notice:
            await self._callbacks.on_notice(call_id, Notice(level="error", message=error.message, code=error.code))

    async def reject_call(self, call_id: str, reason: str = "Call declined") -> None:
        self._stop_ringing(call_id)
        await self._send(protocol.make_call_rejected(call_id, reason))

    def _start_ringing(self, call_id: str) -> None:
        if call_id in self._ringing or self._config.ring_timeout <= 0:
            return
        self._ringing[call_id] = asyncio.create_task(self._ring(call_id), name=f"ring-{call_id}")

    def _stop_ringing(self, call_id: str) -> None:
        task = self._ringing.pop(call_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _ring(self, call_id: str) -> None:
        await self._sleep(self._config.ring_timeout)
        if call_id not in self._ringing:
            return
        logger.info("session incoming call timed out call_id=%s after=%.0fs", call_id, self._config.ring_timeout)
        try:
            await self.reject_call(call_id, "Call timed out")
        except SignalingError as e:
            logger.warning("session ring timeout reject failed call_id=%s error=%s", call_id, e)
        if self._callbacks.on_notice:
            await self._callbacks.on_notice(call_id, Notice(level="info", message="Missed call", code="call-timed-out"))

    async def end_session(self, call_id: str) -> None:
        controller = self._controllers.get(call_id)
        if controller is not None:
            await controller.end_call()

    async def shutdown(self) -> None:
        for call_id in list(self._ringing.keys()):
            self._stop_ringing(call_id)
        for call_id in list(self._controllers.keys()):
            try:
                await self.end_session(call_id)
            except Exception:
                logger.exception("session shutdown failed call_id=%s", call_id)
        self._controllers.clear()
