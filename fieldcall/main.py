from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Any, Dict

from .config import SessionConfig
from .errors import SignalingError
from .logging_config import setup_logging
from .net.signaling_client import SignalingCallbacks, SignalingClient
from .session.manager import CallSessionManager, ManagerCallbacks
from .session.models import CallSession, CallState, ClaimContext, Notice, Role
from .storage import LocalDirectorySink


logger = logging.getLogger(__name__)


async def _print_log(message: str) -> None:
	print(message)


async def run_call(cfg: SessionConfig, call_id: str, role: Role, claim: ClaimContext | None) -> int:
	done = asyncio.Event()
	outcome: Dict[str, Any] = {"state": None}

	async def on_notice(cid: str | None, notice: Notice) -> None:
		prefix = "!!" if notice.fatal else notice.level
		print(f"[{cid or '-'}] {prefix}: {notice.message}")

	async def on_state(cid: str, state: CallState) -> None:
		print(f"[{cid}] state: {state.value}")

	async def on_ended(session: CallSession) -> None:
		outcome["state"] = session.state
		done.set()

	signaling: SignalingClient
	manager = CallSessionManager(
		lambda msg: signaling.send(msg),
		LocalDirectorySink(cfg.storage_dir),
		config=cfg,
		callbacks=ManagerCallbacks(
			on_log=_print_log,
			on_session_state=on_state,
			on_notice=on_notice,
			on_session_ended=on_ended,
		),
	)

	async def on_signaling_error(error: str, payload: Dict[str, Any]) -> None:
		await manager.handle_signaling_error(SignalingError(error, code=error), payload)

	async def on_closed() -> None:
		logger.warning("signaling closed; ending calls")
		await manager.shutdown()
		done.set()

	signaling = SignalingClient(
		cfg.signaling_url,
		SignalingCallbacks(
			on_log=_print_log,
			on_message=manager.handle_message,
			on_error=on_signaling_error,
			on_closed=on_closed,
		),
	)
	if not await signaling.connect():
		return 1

	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		try:
			loop.add_signal_handler(sig, lambda: asyncio.ensure_future(manager.end_session(call_id)))
		except (NotImplementedError, RuntimeError):
			# Windows event loops have no signal handlers.
			pass

	try:
		await manager.start_session(call_id, role, claim)
		await done.wait()
	finally:
		await manager.shutdown()
		await signaling.disconnect()

	return 0 if outcome["state"] is CallState.ENDED else 3


def main(argv: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(description="fieldcall headless call client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use FIELDCALL_LOG_LEVEL.",
	)
	parser.add_argument(
		"--server-url",
		default=None,
		help="WebSocket signaling URL (FIELDCALL_SIGNALING_URL)",
	)
	parser.add_argument(
		"--call-id",
		default=os.environ.get("FIELDCALL_CALL_ID"),
		help="Call to join",
	)
	parser.add_argument(
		"--role",
		choices=[r.value for r in Role],
		default=os.environ.get("FIELDCALL_ROLE", Role.INVESTIGATOR.value),
		help="Role in the call",
	)
	parser.add_argument("--claim-id", default=os.environ.get("FIELDCALL_CLAIM_ID"), help="Claim the call belongs to")
	parser.add_argument("--claim-number", default=os.environ.get("FIELDCALL_CLAIM_NUMBER"), help="Human readable claim number")
	parser.add_argument("--storage-dir", default=None, help="Where recordings and screenshots are written")
	args = parser.parse_args(argv)

	setup_logging(args.log_level)

	if not args.call_id:
		parser.error("--call-id is required (or set FIELDCALL_CALL_ID)")

	cfg = SessionConfig.from_env()
	if args.server_url:
		cfg.signaling_url = args.server_url
	if args.storage_dir:
		cfg.storage_dir = args.storage_dir
	claim = ClaimContext(args.claim_id, args.claim_number) if args.claim_id else None

	try:
		return asyncio.run(run_call(cfg, args.call_id, Role(args.role), claim))
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
