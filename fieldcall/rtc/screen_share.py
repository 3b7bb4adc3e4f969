"""Screen sharing by sender track substitution."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..errors import MediaAcquisitionError
from ..net import protocol
from ..session.models import CallSession
from .media import CAP_DISPLAY_CAPTURE, LocalStream, MediaTrackManager, ToggleableTrack


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class ScreenShareCallbacks:
    send: AsyncCallback  # (msg: dict)
    on_notice: Optional[AsyncCallback] = None  # (level: str, message: str, code: str)
    on_negotiation_needed: Optional[AsyncCallback] = None  # ()


class ScreenShareController:
    def __init__(self, session: CallSession, media: MediaTrackManager, callbacks: ScreenShareCallbacks):
        self._session = session
        self._media = media
        self._callbacks = callbacks
        self._peer: Any = None
        self._display: Optional[LocalStream] = None
        self._shared: Optional[ToggleableTrack] = None
        self._prior_audio: Any = None
        self._revert_task: Optional[asyncio.Task[None]] = None
        self._lock = asyncio.Lock()

    @property
    def is_sharing(self) -> bool:
        return self._session.is_screen_sharing

    def bind_peer(self, peer: Any) -> None:
        self._peer = peer

    async def start(self) -> None:
        async with self._lock:
            if self._session.is_screen_sharing:
                return
            if self._peer is None:
                raise MediaAcquisitionError("no peer connection", code="no-peer")
            if not self._media.capabilities.supports(CAP_DISPLAY_CAPTURE):
                await self._notice("warning", "Screen sharing is not supported on this device", "no-display-capture")
                raise MediaAcquisitionError("display capture unsupported", code="no-display-capture")

            display = await self._media.backend.open_display()
            track = display.video
            if track is None:
                self._media.backend.release(display)
                raise MediaAcquisitionError("display capture produced no video", code="no-device")

            shared = ToggleableTrack(track, label="display")
            self._prior_audio = self._media.audio_track
            await self._media.release_video()
            await self._peer.replace_track("video", shared)
            self._display = display
            self._shared = shared
            self._media.track_display(shared)
            track.on("ended", self.handle_track_ended)

            self._session.is_screen_sharing = True
            logger.info("screen share started call_id=%s", self._session.call_id)
        await self._broadcast()
        if self._callbacks.on_negotiation_needed:
            await self._callbacks.on_negotiation_needed()

    def handle_track_ended(self) -> None:
        """Capture revoked from outside (e.g. the user closed the picker)."""
        if not self._session.is_screen_sharing:
            return
        if self._revert_task is not None and not self._revert_task.done():
            return
        logger.info("screen share track ended externally call_id=%s", self._session.call_id)
        self._revert_task = asyncio.ensure_future(self.stop())

    async def join(self) -> None:
        """Wait for a pending revert to the camera, if any."""
        task = self._revert_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    def _drop_display(self) -> None:
        display = self._display
        self._display = None
        if display is None:
            return
        # A stopped track has already dropped its listeners.
        if display.video is not None and self.handle_track_ended in display.video.listeners("ended"):
            display.video.remove_listener("ended", self.handle_track_ended)
        self._media.backend.release(display)
        if self._shared is not None:
            self._shared.stop()
            self._shared = None

    async def stop(self) -> None:
        async with self._lock:
            if not self._session.is_screen_sharing:
                return
            self._drop_display()
            video = await self._media.acquire_video()
            await self._peer.replace_track("video", video)

            audio_sender = self._peer.sender_track("audio")
            prior = self._prior_audio
            if (audio_sender is None or audio_sender.readyState != "live") and prior is not None:
                if prior.readyState == "live":
                    await self._peer.replace_track("audio", prior)
                    logger.info("screen share audio re-attached call_id=%s", self._session.call_id)
            self._prior_audio = None
            self._media.track_display(None)

            self._session.is_screen_sharing = False
            logger.info("screen share stopped call_id=%s", self._session.call_id)
        await self._broadcast()
        if self._callbacks.on_negotiation_needed:
            await self._callbacks.on_negotiation_needed()

    def teardown(self) -> None:
        """Stop the display capture without going back to the camera."""
        if self._revert_task is not None and not self._revert_task.done():
            self._revert_task.cancel()
        self._revert_task = None
        self._drop_display()
        self._prior_audio = None
        self._session.is_screen_sharing = False

    async def _broadcast(self) -> None:
        try:
            await self._callbacks.send(
                protocol.make_screen_sharing_status(self._session.call_id, self._session.is_screen_sharing)
            )
        except Exception:
            logger.exception("screen share status send failed call_id=%s", self._session.call_id)

    async def _notice(self, level: str, message: str, code: str) -> None:
        if self._callbacks.on_notice:
            await self._callbacks.on_notice(level, message, code)
