"""Remote media consumption and still captures."""

from __future__ import annotations

import asyncio
import logging
from fractions import Fraction
from typing import Any, Optional

import av
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from ..errors import RecordingError


logger = logging.getLogger(__name__)


def encode_jpeg(frame: av.VideoFrame) -> bytes:
    """Encode one frame as JPEG.

    Frames arrive as captured; mirroring is a local preview concern only.
    """
    ctx = av.CodecContext.create("mjpeg", "w")
    ctx.width = frame.width
    ctx.height = frame.height
    ctx.pix_fmt = "yuvj420p"
    ctx.time_base = Fraction(1, 1)

    img = frame.reformat(format="yuvj420p")
    img.pts = 0
    packets = list(ctx.encode(img)) + list(ctx.encode(None))
    data = b"".join(bytes(p) for p in packets)
    if not data:
        raise RecordingError("jpeg encoder produced no data", code="unsupported-format")
    return data


class RemoteMediaSink:
    """Drains remote tracks so the receiver never stalls.

    The latest decoded video frame is kept for screenshots.
    """

    def __init__(self) -> None:
        self._tasks: list[asyncio.Task[None]] = []
        self.latest_video: Optional[av.VideoFrame] = None

    async def start(self, track: MediaStreamTrack) -> None:
        self._tasks.append(asyncio.create_task(self._pump(track), name=f"remote-{track.kind}-pump"))
        logger.info("remote sink attached kind=%s", track.kind)

    async def _pump(self, track: Any) -> None:
        try:
            while True:
                frame = await track.recv()
                if isinstance(frame, av.VideoFrame):
                    self.latest_video = frame
        except (MediaStreamError, asyncio.CancelledError):
            pass
        except Exception as e:
            logger.info("remote pump stopped kind=%s error=%s", getattr(track, "kind", None), e)

    def stop(self) -> None:
        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks.clear()
        self.latest_video = None
