"""Upload sinks for recordings and screenshots.

The durable object store is an external collaborator; the core only needs
`upload(data, content_type, metadata, on_progress) -> url`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol

from .errors import UploadError


logger = logging.getLogger(__name__)


ProgressCallback = Callable[[int], None]


class UploadSink(Protocol):
    async def upload(
        self,
        data: bytes,
        content_type: str,
        metadata: Dict[str, str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> str: ...


class LocalDirectorySink:
    """Writes artifacts (plus a JSON sidecar with the metadata) to a directory."""

    def __init__(self, root: str, *, slice_size: int = 256 * 1024):
        self.root = Path(root)
        self.slice_size = max(1, int(slice_size))

    def _target(self, content_type: str, metadata: Dict[str, str]) -> Path:
        ext = mimetypes.guess_extension(content_type.split(";")[0].strip()) or ".bin"
        if content_type.startswith("video/webm"):
            ext = ".webm"
        call_id = metadata.get("callId", "call")
        stamp = time.strftime("%Y%m%dT%H%M%S")
        return self.root / call_id / f"{stamp}-{uuid.uuid4().hex[:8]}{ext}"

    async def upload(
        self,
        data: bytes,
        content_type: str,
        metadata: Dict[str, str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        target = self._target(content_type, metadata)
        loop = asyncio.get_running_loop()
        total = len(data)

        def _mkdirs() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)

        try:
            await loop.run_in_executor(None, _mkdirs)
            with open(target, "wb") as fh:
                written = 0
                while written < total:
                    piece = data[written:written + self.slice_size]
                    await loop.run_in_executor(None, fh.write, piece)
                    written += len(piece)
                    if on_progress:
                        on_progress(int(written * 100 / total))
            sidecar = target.with_suffix(target.suffix + ".json")
            meta = dict(metadata, contentType=content_type, size=str(total))
            await loop.run_in_executor(None, sidecar.write_text, json.dumps(meta, indent=2))
        except OSError as e:
            raise UploadError(f"write failed: {e}") from e

        if on_progress and total == 0:
            on_progress(100)
        logger.info("storage stored path=%s bytes=%s", target, total)
        return target.resolve().as_uri()
