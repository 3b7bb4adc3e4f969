"""Call session data model."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..net.protocol import IceCandidateDict, LocationDict, StatsDict


class Role(str, Enum):
    INVESTIGATOR = "investigator"
    SUPERVISOR = "supervisor"

    @property
    def opposite(self) -> "Role":
        return Role.SUPERVISOR if self is Role.INVESTIGATOR else Role.INVESTIGATOR


class CallState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ENDED = "ended"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CallState.ENDED, CallState.FAILED)


# Non-terminal edges. ENDED/FAILED are reachable from every non-terminal state.
TRANSITIONS: Dict[CallState, frozenset[CallState]] = {
    CallState.IDLE: frozenset({CallState.INITIALIZING}),
    CallState.INITIALIZING: frozenset({CallState.NEGOTIATING}),
    CallState.NEGOTIATING: frozenset({CallState.CONNECTED, CallState.RECONNECTING}),
    CallState.CONNECTED: frozenset({CallState.RECONNECTING}),
    CallState.RECONNECTING: frozenset({CallState.CONNECTED}),
    CallState.ENDED: frozenset(),
    CallState.FAILED: frozenset(),
}


def can_transition(current: CallState, target: CallState) -> bool:
    if current.is_terminal:
        return False
    if target.is_terminal:
        return True
    return target in TRANSITIONS[current]


class Quality(str, Enum):
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class RecordingState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPING = "stopping"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ClaimContext:
    """Read-only claim reference attached to artifacts."""

    claim_id: str
    claim_number: Optional[str] = None

    def as_metadata(self) -> Dict[str, str]:
        meta = {"claimId": self.claim_id}
        if self.claim_number:
            meta["claimNumber"] = self.claim_number
        return meta


@dataclass
class QualitySnapshot:
    quality: Quality
    bandwidth_kbps: float
    packet_loss: int
    resolution: str
    bytes_sent: int = 0
    bytes_received: int = 0
    sampled_at: float = field(default_factory=time.monotonic)

    def to_stats(self) -> StatsDict:
        return {
            "bandwidth": round(self.bandwidth_kbps, 1),
            "resolution": self.resolution,
            "packetLoss": self.packet_loss,
        }


@dataclass
class RecordingJob:
    started_by: str
    started_at: int
    state: RecordingState = RecordingState.RECORDING
    chunks: List[bytes] = field(default_factory=list)
    stopped_by: Optional[str] = None
    stopped_at: Optional[int] = None
    progress: int = 0
    url: Optional[str] = None
    error: Optional[str] = None

    @property
    def size(self) -> int:
        return sum(len(c) for c in self.chunks)


@dataclass
class Notice:
    """A user-facing notification."""

    level: str  # info | warning | error
    message: str
    code: Optional[str] = None
    fatal: bool = False


@dataclass
class CallSession:
    call_id: str
    role: Role
    claim: Optional[ClaimContext] = None
    state: CallState = CallState.IDLE

    local_tracks: List[Any] = field(default_factory=list)
    remote_tracks: List[Any] = field(default_factory=list)

    pending_ice_candidates: List[IceCandidateDict] = field(default_factory=list)
    remote_description_set: bool = False

    reconnect_attempt: int = 0
    recording_job: Optional[RecordingJob] = None
    quality_snapshot: Optional[QualitySnapshot] = None
    remote_quality: Optional[Dict[str, Any]] = None

    is_screen_sharing: bool = False
    remote_screen_sharing: bool = False
    last_location: Optional[LocationDict] = None

    connected_at: Optional[float] = None
    duration_seconds: int = 0
    end_reason: Optional[str] = None
    history: List[CallState] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append(self.state)

    @property
    def is_investigator(self) -> bool:
        return self.role is Role.INVESTIGATOR
