"""Runtime configuration.

Everything can be tuned through `FIELDCALL_*` environment variables; CLI
flags in `main.py` override the env values. Invalid values fall back to the
defaults rather than failing startup.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer


logger = logging.getLogger(__name__)


DEFAULT_ICE_SERVERS: List[Dict[str, Any]] = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
]


def _env_truthy(name: str) -> bool:
    v = os.environ.get(name, "").strip().casefold()
    return v in {"1", "true", "yes", "on"}


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    v = os.environ.get(name)
    if v is None or not v.strip():
        return default
    return v.strip()


def _env_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return int(v)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return float(v)
    except Exception:
        return default


def _env_ice_servers(name: str) -> List[Dict[str, Any]]:
    raw = os.environ.get(name)
    if not raw:
        return list(DEFAULT_ICE_SERVERS)
    try:
        servers = json.loads(raw)
    except json.JSONDecodeError:
        # Plain comma separated urls: "stun:a:3478,stun:b:3478"
        return [{"urls": u.strip()} for u in raw.split(",") if u.strip()]
    if isinstance(servers, list) and all(isinstance(s, dict) for s in servers):
        return servers
    logger.warning("ignoring malformed %s, using defaults", name)
    return list(DEFAULT_ICE_SERVERS)


@dataclass
class RetryPolicy:
    """Retry/backoff policy.

    `delay_for(n)` is `min(base_delay * 2**n, max_delay)` seconds, with the
    first attempt being n == 0.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def allows(self, attempt: int) -> bool:
        return attempt < self.max_attempts


@dataclass
class MediaConfig:
    facing_mode: str = "environment"
    width: int = 1280
    height: int = 720
    frame_rate: int = 30
    # ffmpeg device names per facing mode, e.g. {"user": "/dev/video1"}
    camera_devices: Dict[str, str] = field(default_factory=dict)
    microphone_device: str = "default"
    display_device: Optional[str] = None
    display_capture: bool = True
    torch_control_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "MediaConfig":
        cameras: Dict[str, str] = {}
        env_cam = _env_str("FIELDCALL_CAMERA_ENVIRONMENT", None)
        user_cam = _env_str("FIELDCALL_CAMERA_USER", None)
        if env_cam:
            cameras["environment"] = env_cam
        if user_cam:
            cameras["user"] = user_cam
        return cls(
            facing_mode=_env_str("FIELDCALL_FACING_MODE", cls.facing_mode) or cls.facing_mode,
            width=_env_int("FIELDCALL_VIDEO_WIDTH", cls.width),
            height=_env_int("FIELDCALL_VIDEO_HEIGHT", cls.height),
            frame_rate=_env_int("FIELDCALL_VIDEO_FPS", cls.frame_rate),
            camera_devices=cameras,
            microphone_device=_env_str("FIELDCALL_MICROPHONE", cls.microphone_device) or cls.microphone_device,
            display_device=_env_str("FIELDCALL_DISPLAY", None),
            display_capture=not _env_truthy("FIELDCALL_NO_DISPLAY_CAPTURE"),
            torch_control_path=_env_str("FIELDCALL_TORCH_PATH", None),
        )


@dataclass
class RecordingConfig:
    chunk_interval: float = 1.0
    content_type: str = "video/webm"
    upload_policy: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_attempts=1))

    @classmethod
    def from_env(cls) -> "RecordingConfig":
        return cls(
            chunk_interval=_env_float("FIELDCALL_RECORDING_CHUNK_SEC", cls.chunk_interval),
            content_type=_env_str("FIELDCALL_RECORDING_CONTENT_TYPE", cls.content_type) or cls.content_type,
            upload_policy=RetryPolicy(
                max_attempts=max(1, _env_int("FIELDCALL_UPLOAD_ATTEMPTS", 1)),
                base_delay=_env_float("FIELDCALL_UPLOAD_RETRY_BASE_SEC", 1.0),
                max_delay=_env_float("FIELDCALL_UPLOAD_RETRY_MAX_SEC", 30.0),
            ),
        )


@dataclass
class SessionConfig:
    signaling_url: str = "ws://127.0.0.1:8765/ws"
    ice_servers: List[Dict[str, Any]] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    quality_interval: float = 5.0
    duration_tick: float = 1.0
    ring_timeout: float = 30.0
    reconnect_policy: RetryPolicy = field(default_factory=RetryPolicy)
    media: MediaConfig = field(default_factory=MediaConfig)
    recording: RecordingConfig = field(default_factory=RecordingConfig)
    storage_dir: str = "recordings"

    @classmethod
    def from_env(cls) -> "SessionConfig":
        return cls(
            signaling_url=_env_str("FIELDCALL_SIGNALING_URL", cls.signaling_url) or cls.signaling_url,
            ice_servers=_env_ice_servers("FIELDCALL_ICE_SERVERS"),
            quality_interval=_env_float("FIELDCALL_QUALITY_INTERVAL_SEC", cls.quality_interval),
            ring_timeout=_env_float("FIELDCALL_RING_TIMEOUT_SEC", cls.ring_timeout),
            reconnect_policy=RetryPolicy(
                max_attempts=_env_int("FIELDCALL_RECONNECT_ATTEMPTS", 5),
                base_delay=_env_float("FIELDCALL_RECONNECT_BASE_SEC", 1.0),
                max_delay=_env_float("FIELDCALL_RECONNECT_MAX_SEC", 30.0),
            ),
            media=MediaConfig.from_env(),
            recording=RecordingConfig.from_env(),
            storage_dir=_env_str("FIELDCALL_STORAGE_DIR", cls.storage_dir) or cls.storage_dir,
        )

    def rtc_configuration(self) -> RTCConfiguration:
        servers = []
        for s in self.ice_servers:
            try:
                servers.append(RTCIceServer(**s))
            except TypeError:
                logger.warning("ignoring ice server entry %r", s)
        return RTCConfiguration(iceServers=servers)
