from __future__ import annotations

import logging
import os
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging for the call orchestrator.

    Session progress is also pushed through the `on_log` callbacks; this
    config targets console logs for headless runs.
    """

    effective_level = (level or os.environ.get("FIELDCALL_LOG_LEVEL") or "INFO").upper()

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root.setLevel(effective_level)

    # aiortc/aioice are chatty at DEBUG; keep them quiet unless asked.
    if effective_level != "DEBUG":
        for name in ("aiortc", "aioice", "websockets"):
            logging.getLogger(name).setLevel(logging.WARNING)
