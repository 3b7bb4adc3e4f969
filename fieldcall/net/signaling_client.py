"""WebSocket signaling client.

This is intentionally unaware of aiortc. It only moves JSON call messages
between the channel and whoever registered `on_message` (normally the
`CallSessionManager`).
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets

from ..errors import SignalingError
from . import protocol


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class SignalingCallbacks:
	on_log: Optional[AsyncCallback] = None
	on_message: Optional[AsyncCallback] = None  # (msg: dict)
	on_error: Optional[AsyncCallback] = None  # (error: str, payload: dict)
	on_closed: Optional[AsyncCallback] = None  # ()


class SignalingClient:
	def __init__(self, url: str, callbacks: Optional[SignalingCallbacks] = None):
		self.url = url
		self.callbacks = callbacks or SignalingCallbacks()

		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._recv_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._connected_evt = asyncio.Event()

	@property
	def is_connected(self) -> bool:
		return self._ws is not None and self._connected_evt.is_set()

	async def connect(self) -> bool:
		if self._recv_task and not self._recv_task.done():
			return True

		await self._log(f"Connecting to {self.url}")
		logger.info("signaling connect url=%s", self.url)
		try:
			self._ws = await websockets.connect(self.url)
		except Exception:
			logger.exception("signaling connect failed url=%s", self.url)
			await self._emit_error("connect-failed", {"url": self.url})
			return False
		self._connected_evt.set()
		self._recv_task = asyncio.create_task(self._recv_loop(), name="signaling-recv")
		return True

	async def disconnect(self) -> None:
		await self._log("Disconnecting")
		logger.info("signaling disconnect")
		self._connected_evt.clear()
		if self._recv_task:
			self._recv_task.cancel()
			try:
				await self._recv_task
			except asyncio.CancelledError:
				pass
			self._recv_task = None

		if self._ws:
			try:
				await self._ws.close()
			except Exception:
				logger.debug("signaling close failed", exc_info=True)
		self._ws = None

	async def send(self, payload: Dict[str, Any]) -> None:
		if not self._ws or not self._connected_evt.is_set():
			raise SignalingError("signaling not connected", code="not-connected")
		mtype = payload.get("type")
		call_id = payload.get("callId")
		if mtype in (protocol.VIDEO_OFFER, protocol.VIDEO_ANSWER):
			logger.info("signaling send type=%s call_id=%s sdp_len=%s", mtype, call_id, len(str(payload.get("sdp", ""))))
		elif mtype in (protocol.ICE_CANDIDATE, protocol.CONNECTION_STATS, protocol.PONG):
			logger.debug("signaling send type=%s call_id=%s", mtype, call_id)
		else:
			logger.info("signaling send type=%s call_id=%s", mtype, call_id)
		raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
		async with self._send_lock:
			await self._ws.send(raw)

	async def _recv_loop(self) -> None:
		assert self._ws is not None
		ws = self._ws
		logger.debug("signaling recv loop started")

		try:
			async for raw in ws:
				await self.handle_raw(raw)
		except asyncio.CancelledError:
			pass
		except Exception as e:
			logger.exception("signaling recv loop crashed")
			await self._emit_error(f"recv-loop-exception: {e}", {})
		finally:
			self._connected_evt.clear()
			logger.debug("signaling recv loop stopped")
			try:
				await ws.close()
			except Exception:
				logger.debug("signaling close failed", exc_info=True)
			if self._ws is ws:
				self._ws = None
			if self.callbacks.on_closed:
				await self.callbacks.on_closed()

	async def handle_raw(self, raw: Any) -> None:
		"""Decode and dispatch one frame from the channel."""
		try:
			msg = json.loads(raw)
		except (json.JSONDecodeError, TypeError):
			await self._emit_error("invalid-json", {"raw": raw})
			return

		if isinstance(msg, dict) and msg.get("type") == protocol.PING:
			await self.send(protocol.make_pong(msg.get("ts")))
			return

		if isinstance(msg, dict) and msg.get("type") == protocol.ERROR:
			await self._emit_error(str(msg.get("error", "error")), msg)
			return

		problem = protocol.validate_call_message(msg)
		if problem:
			await self._emit_error(problem, msg if isinstance(msg, dict) else {"msg": msg})
			return

		logger.debug("signaling recv type=%s call_id=%s", msg["type"], msg["callId"])
		if self.callbacks.on_message:
			await self.callbacks.on_message(msg)

	async def _emit_error(self, error: str, payload: Dict[str, Any]) -> None:
		logger.warning("signaling error=%s", error)
		await self._log(f"Signaling error: {error}")
		if self.callbacks.on_error:
			await self.callbacks.on_error(error, payload)

	async def _log(self, message: str) -> None:
		if self.callbacks.on_log:
			await self.callbacks.on_log(message)
