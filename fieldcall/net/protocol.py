"""Signaling protocol helpers.

Every message is a JSON object with a `type` and the `callId` it belongs to.
The channel itself is ordered and bidirectional; routing by `callId` is done
on the client side (see `session/manager.py`).
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional, TypedDict


# Message type constants
JOIN_CALL = "join_call"
CALL_ACCEPTED = "call_accepted"
CALL_REJECTED = "call_rejected"

VIDEO_OFFER = "video_offer"
VIDEO_ANSWER = "video_answer"
ICE_CANDIDATE = "ice_candidate"

RECORDING_STATUS = "recording_status"
RECORDING_COMPLETED = "recording_completed"
RECORDING_ERROR = "recording_error"

CONNECTION_STATS = "connection_stats"
SCREEN_SHARING_STATUS = "screen_sharing_status"
LOCATION_UPDATE = "location_update"
SCREENSHOT_SAVED = "screenshot_saved"
REQUEST_FRONT_CAMERA = "request_front_camera"

END_CALL = "end_call"
CALL_ENDED = "call_ended"

PING = "ping"
PONG = "pong"
ERROR = "error"

CALL_MESSAGES = frozenset(
	{
		JOIN_CALL,
		CALL_ACCEPTED,
		CALL_REJECTED,
		VIDEO_OFFER,
		VIDEO_ANSWER,
		ICE_CANDIDATE,
		RECORDING_STATUS,
		RECORDING_COMPLETED,
		RECORDING_ERROR,
		CONNECTION_STATS,
		SCREEN_SHARING_STATUS,
		LOCATION_UPDATE,
		SCREENSHOT_SAVED,
		REQUEST_FRONT_CAMERA,
		END_CALL,
		CALL_ENDED,
	}
)


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


class StatsDict(TypedDict, total=False):
	bandwidth: float
	resolution: str
	packetLoss: int


class LocationDict(TypedDict, total=False):
	lat: float
	lon: float
	accuracy: Optional[float]
	heading: Optional[float]
	speed: Optional[float]


def now_ms() -> int:
	return int(time.time() * 1000)


def make_join_call(call_id: str, role: str) -> Dict[str, Any]:
	return {"type": JOIN_CALL, "callId": call_id, "role": role}


def make_call_accepted(call_id: str) -> Dict[str, Any]:
	return {"type": CALL_ACCEPTED, "callId": call_id}


def make_call_rejected(call_id: str, reason: str = "") -> Dict[str, Any]:
	return {"type": CALL_REJECTED, "callId": call_id, "reason": reason}


def make_offer(call_id: str, sdp: str, *, restart: bool = False) -> Dict[str, Any]:
	msg: Dict[str, Any] = {"type": VIDEO_OFFER, "callId": call_id, "sdp": sdp}
	if restart:
		msg["restart"] = True
	return msg


def make_answer(call_id: str, sdp: str) -> Dict[str, Any]:
	return {"type": VIDEO_ANSWER, "callId": call_id, "sdp": sdp}


def make_ice(call_id: str, candidate: IceCandidateDict) -> Dict[str, Any]:
	return {"type": ICE_CANDIDATE, "callId": call_id, "candidate": candidate}


def make_recording_status(call_id: str, is_recording: bool, actor: str, ts: Optional[int] = None) -> Dict[str, Any]:
	msg: Dict[str, Any] = {
		"type": RECORDING_STATUS,
		"callId": call_id,
		"isRecording": is_recording,
		"timestamp": ts if ts is not None else now_ms(),
	}
	msg["startedBy" if is_recording else "stoppedBy"] = actor
	return msg


def make_recording_completed(call_id: str, url: str) -> Dict[str, Any]:
	return {"type": RECORDING_COMPLETED, "callId": call_id, "recordingUrl": url}


def make_recording_error(call_id: str, error: str, code: str = "recording") -> Dict[str, Any]:
	return {"type": RECORDING_ERROR, "callId": call_id, "error": error, "code": code}


def make_connection_stats(call_id: str, stats: StatsDict, quality: str) -> Dict[str, Any]:
	return {"type": CONNECTION_STATS, "callId": call_id, "stats": stats, "quality": quality}


def make_screen_sharing_status(call_id: str, is_sharing: bool) -> Dict[str, Any]:
	return {"type": SCREEN_SHARING_STATUS, "callId": call_id, "isScreenSharing": is_sharing}


def make_location_update(call_id: str, location: LocationDict, ts: Optional[int] = None) -> Dict[str, Any]:
	return {
		"type": LOCATION_UPDATE,
		"callId": call_id,
		"location": location,
		"timestamp": ts if ts is not None else now_ms(),
	}


def make_screenshot_saved(call_id: str, url: str, ts: Optional[int] = None) -> Dict[str, Any]:
	return {
		"type": SCREENSHOT_SAVED,
		"callId": call_id,
		"screenshotUrl": url,
		"timestamp": ts if ts is not None else now_ms(),
	}


def make_request_front_camera(call_id: str) -> Dict[str, Any]:
	return {"type": REQUEST_FRONT_CAMERA, "callId": call_id}


def make_end_call(call_id: str) -> Dict[str, Any]:
	return {"type": END_CALL, "callId": call_id}


def make_pong(ts: Optional[int] = None) -> Dict[str, Any]:
	msg: Dict[str, Any] = {"type": PONG}
	if ts is not None:
		msg["ts"] = ts
	return msg


# Fields a message must carry beyond type/callId.
REQUIRED_FIELDS: Dict[str, tuple[str, ...]] = {
	JOIN_CALL: ("role",),
	VIDEO_OFFER: ("sdp",),
	VIDEO_ANSWER: ("sdp",),
	ICE_CANDIDATE: ("candidate",),
	RECORDING_STATUS: ("isRecording",),
	RECORDING_COMPLETED: ("recordingUrl",),
	RECORDING_ERROR: ("error",),
	CONNECTION_STATS: ("stats", "quality"),
	SCREEN_SHARING_STATUS: ("isScreenSharing",),
	LOCATION_UPDATE: ("location",),
	SCREENSHOT_SAVED: ("screenshotUrl",),
}


def validate_call_message(msg: Any) -> Optional[str]:
	"""Return an error code if `msg` is not a well-formed call message."""
	if not isinstance(msg, dict):
		return "invalid-message"
	mtype = msg.get("type")
	if not isinstance(mtype, str):
		return "missing-type"
	if mtype not in CALL_MESSAGES:
		return "unknown-type"
	call_id = msg.get("callId")
	if not isinstance(call_id, str) or not call_id:
		return "missing-call-id"
	for name in REQUIRED_FIELDS.get(mtype, ()):
		if name not in msg:
			return f"missing-{name}"
	return None
