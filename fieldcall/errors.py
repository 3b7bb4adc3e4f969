"""Error taxonomy for call sessions.

Every error carries a stable `code` that is safe to put on the wire
(`recording_error`, notices) so the remote role can react to it.
"""

from __future__ import annotations

from typing import Optional


class CallError(Exception):
    code = "call-error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class MediaAcquisitionError(CallError):
    """Permission denied, device busy or no matching device."""

    code = "media-acquisition"


class SignalingError(CallError):
    """Malformed or out-of-order signaling message."""

    code = "signaling"


class NegotiationError(CallError):
    """Session description rejected or renegotiation collision."""

    code = "negotiation"


class ConnectionError(CallError):  # noqa: A001
    code = "connection"

    def __init__(self, message: str, *, transient: bool = True, code: Optional[str] = None):
        super().__init__(message, code=code)
        self.transient = transient


class RecordingError(CallError):
    """No data captured or unsupported output format."""

    code = "recording"


class UploadError(CallError):
    """Network failure while persisting an artifact."""

    code = "upload"
