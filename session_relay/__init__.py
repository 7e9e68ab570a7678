"""
Session Relay Package.

Real-time collaboration relay for live coding interviews. An interviewer
and a candidate sharing one interview exchange code edits, notes, test
results and AI insights over WebSockets; the relay fans each update out to
the other participants of the same interview and persists proctoring
screenshots to disk.

Components:
    - SessionRelay: Accept, dispatch, broadcast and close connections
    - ConnectionRegistry: Owned map of open connections, rooms derived on read
    - ScreenshotStore: Writes and lists screenshot files
    - Models: Pydantic wire models and the Connection record

Example:
    >>> from pathlib import Path
    >>> from session_relay import ScreenshotStore, SessionRelay
    >>>
    >>> relay = SessionRelay(ScreenshotStore(Path("./screenshots")))
    >>> connection = await relay.accept(websocket, "interview-1", "userA", "candidate")
    >>> await relay.handle_message(connection, raw_frame)

Last Grunted: 10/19/2026
"""

from .models import (
    Connection,
    MalformedMessageError,
    MessageType,
    ParticipantRole,
    RelayMessage,
    RelayTransport,
    ScreenshotPayload,
    parse_message,
    parse_role,
)

from .registry import ConnectionRegistry

from .screenshots import (
    ScreenshotInfo,
    ScreenshotReadError,
    ScreenshotStore,
    ScreenshotWriteError,
    decode_component,
    encode_component,
)

from .relay import (
    DEFAULT_SEND_TIMEOUT,
    GOING_AWAY,
    POLICY_VIOLATION,
    TRY_AGAIN_LATER,
    HandshakeRejectedError,
    RelayStats,
    SessionRelay,
)


__all__ = [
    # Models
    "Connection",
    "MalformedMessageError",
    "MessageType",
    "ParticipantRole",
    "RelayMessage",
    "RelayTransport",
    "ScreenshotPayload",
    "parse_message",
    "parse_role",
    # Registry
    "ConnectionRegistry",
    # Screenshots
    "ScreenshotInfo",
    "ScreenshotReadError",
    "ScreenshotStore",
    "ScreenshotWriteError",
    "decode_component",
    "encode_component",
    # Relay
    "DEFAULT_SEND_TIMEOUT",
    "GOING_AWAY",
    "POLICY_VIOLATION",
    "TRY_AGAIN_LATER",
    "HandshakeRejectedError",
    "RelayStats",
    "SessionRelay",
]

__version__ = "1.0.0"
