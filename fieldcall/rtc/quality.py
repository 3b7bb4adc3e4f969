"""Periodic connection quality sampling."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..net import protocol
from ..session.models import CallSession, Quality, QualitySnapshot


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]

POOR_BANDWIDTH_KBPS = 100.0
FAIR_BANDWIDTH_KBPS = 500.0
POOR_PACKET_LOSS = 10
FAIR_PACKET_LOSS = 5


def classify_quality(bandwidth_kbps: float, packet_loss: int) -> Quality:
    if bandwidth_kbps < POOR_BANDWIDTH_KBPS or packet_loss > POOR_PACKET_LOSS:
        return Quality.POOR
    if bandwidth_kbps < FAIR_BANDWIDTH_KBPS or packet_loss > FAIR_PACKET_LOSS:
        return Quality.FAIR
    return Quality.GOOD


@dataclass
class QualityCallbacks:
    send: AsyncCallback  # (msg: dict)
    resolution: Callable[[], str]
    on_notice: Optional[AsyncCallback] = None  # (level: str, message: str, code: str)
    on_snapshot: Optional[AsyncCallback] = None  # (snapshot: QualitySnapshot)


class ConnectionQualityMonitor:
    def __init__(
        self,
        session: CallSession,
        peer: Any,
        callbacks: QualityCallbacks,
        *,
        interval: float = 5.0,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session = session
        self._peer = peer
        self._callbacks = callbacks
        self._interval = interval
        self._sleep = sleep
        self._clock = clock
        self._task: Optional[asyncio.Task[None]] = None
        self._last_bytes_sent = 0
        self._last_time: Optional[float] = None
        self._warned_poor = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def bind_peer(self, peer: Any) -> None:
        self._peer = peer
        # Counters restart with a rebuilt transport.
        self._last_bytes_sent = 0
        self._last_time = None

    def start(self) -> None:
        if self.is_running:
            return
        self._last_time = self._clock()
        self._task = asyncio.create_task(self._run(), name=f"quality-{self._session.call_id}")
        logger.debug("quality monitor started call_id=%s interval=%s", self._session.call_id, self._interval)

    def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()

    async def _run(self) -> None:
        while True:
            await self._sleep(self._interval)
            try:
                await self.sample_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("quality sample failed call_id=%s", self._session.call_id)

    async def sample_once(self) -> QualitySnapshot:
        stats = await self._peer.get_stats()
        now = self._clock()
        if self._last_time is None:
            self._last_time = now
        elapsed = now - self._last_time
        sent_delta = max(0, stats.bytes_sent - self._last_bytes_sent)
        bandwidth_kbps = (sent_delta * 8 / elapsed / 1000.0) if elapsed > 0 else 0.0
        self._last_bytes_sent = stats.bytes_sent
        self._last_time = now

        quality = classify_quality(bandwidth_kbps, stats.packets_lost)
        snapshot = QualitySnapshot(
            quality=quality,
            bandwidth_kbps=bandwidth_kbps,
            packet_loss=stats.packets_lost,
            resolution=self._callbacks.resolution(),
            bytes_sent=stats.bytes_sent,
            bytes_received=stats.bytes_received,
            sampled_at=now,
        )
        self._session.quality_snapshot = snapshot
        logger.debug(
            "quality sample call_id=%s quality=%s kbps=%.1f loss=%s",
            self._session.call_id,
            quality.value,
            bandwidth_kbps,
            stats.packets_lost,
        )

        await self._callbacks.send(
            protocol.make_connection_stats(self._session.call_id, snapshot.to_stats(), quality.value)
        )
        if self._callbacks.on_snapshot:
            await self._callbacks.on_snapshot(snapshot)

        if quality is Quality.POOR:
            if not self._warned_poor:
                self._warned_poor = True
                logger.warning("quality poor call_id=%s kbps=%.1f loss=%s", self._session.call_id, bandwidth_kbps, stats.packets_lost)
                if self._callbacks.on_notice:
                    await self._callbacks.on_notice("warning", "Poor connection quality", "quality-poor")
        else:
            self._warned_poor = False
        return snapshot
