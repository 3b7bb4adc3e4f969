"""Backoff-driven transport recovery."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from ..config import RetryPolicy
from .models import CallSession, CallState


logger = logging.getLogger(__name__)


Sleep = Callable[[float], Awaitable[None]]
AsyncCallback = Callable[..., Awaitable[None]]

FAILED = "failed"


@dataclass
class ReconnectCallbacks:
    restart: AsyncCallback  # (kind: str)
    on_exhausted: AsyncCallback  # (attempts: int)
    on_notice: Optional[AsyncCallback] = None  # (message: str)


class ReconnectionManager:
    """Runs restart+backoff cycles after a transport failure.

    `policy.max_attempts` counts cycles, not failure reports. A cycle for
    `failed` restarts the transport and then waits out `delay_for(n)`; a
    `disconnected` report first gets a plain backoff window so the transport
    can recover on its own, and the cycles after it restart. Cycles keep
    running on their own until the session leaves `Reconnecting`; reports
    that arrive meanwhile are absorbed. When the window of the last allowed
    cycle expires without a recovery `on_exhausted` fires and nothing else is
    scheduled until `reset()`.
    """

    def __init__(
        self,
        session: CallSession,
        policy: RetryPolicy,
        callbacks: ReconnectCallbacks,
        *,
        sleep: Sleep = asyncio.sleep,
    ):
        self._session = session
        self._policy = policy
        self._callbacks = callbacks
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None
        self._exhausted = False
        self.delays: List[float] = []

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    async def on_transport_failure(self, kind: str) -> None:
        if self._exhausted:
            logger.debug("reconnect ignored (exhausted) call_id=%s kind=%s", self._session.call_id, kind)
            return
        if self.is_active:
            logger.debug("reconnect absorbed (cycle running) call_id=%s kind=%s", self._session.call_id, kind)
            return
        if not self._policy.allows(self._session.reconnect_attempt):
            await self._exhaust()
            return
        self._task = asyncio.create_task(
            self._run(kind), name=f"reconnect-{self._session.call_id}-{self._session.reconnect_attempt}"
        )

    def _recovered(self) -> bool:
        return self._session.state is not CallState.RECONNECTING

    async def _run(self, kind: str) -> None:
        try:
            while True:
                attempt = self._session.reconnect_attempt
                if not self._policy.allows(attempt):
                    await self._exhaust()
                    return
                self._session.reconnect_attempt = attempt + 1
                delay = self._policy.delay_for(attempt)
                self.delays.append(delay)
                logger.info(
                    "reconnect cycle call_id=%s kind=%s attempt=%s delay=%.1fs",
                    self._session.call_id,
                    kind,
                    attempt,
                    delay,
                )
                if self._callbacks.on_notice:
                    await self._callbacks.on_notice(f"Connection {kind}, reconnecting in {delay:.0f}s")

                if kind == FAILED:
                    try:
                        await self._callbacks.restart(kind)
                    except Exception:
                        logger.exception("reconnect restart failed call_id=%s attempt=%s", self._session.call_id, attempt)
                await self._sleep(delay)
                if self._recovered():
                    logger.info("reconnect recovered call_id=%s attempt=%s", self._session.call_id, attempt)
                    return
                # Still down after the window: the next cycle restarts first.
                kind = FAILED
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("reconnect cycle failed call_id=%s", self._session.call_id)

    async def _exhaust(self) -> None:
        self._exhausted = True
        logger.warning(
            "reconnect exhausted call_id=%s attempts=%s",
            self._session.call_id,
            self._session.reconnect_attempt,
        )
        await self._callbacks.on_exhausted(self._session.reconnect_attempt)

    async def join(self) -> None:
        """Wait until the running cycles finish, if any."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    def reset(self) -> None:
        if self._session.reconnect_attempt:
            logger.info("reconnect reset call_id=%s", self._session.call_id)
        self._session.reconnect_attempt = 0
        self._exhausted = False
        self.cancel()

    def cancel(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
