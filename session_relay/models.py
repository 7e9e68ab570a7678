"""
Pydantic models for the Session Relay.

Defines the on-the-wire message envelope, the screenshot payload, and the
in-memory Connection record the relay keeps for each live participant.

Last Grunted: 10/19/2026
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError, field_validator


__all__ = [
    "MessageType",
    "ParticipantRole",
    "RelayMessage",
    "ScreenshotPayload",
    "Connection",
    "RelayTransport",
    "MalformedMessageError",
    "parse_message",
    "parse_role",
]


def _format_utc_timestamp() -> str:
    """Return current UTC timestamp as ISO 8601 string with 'Z' suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class MessageType(str, Enum):
    """
    Message tags understood by the relay.

    Attributes:
        CODE_UPDATE: Full current editor contents.
        NOTES_UPDATE: Interviewer or candidate notes.
        TEST_RESULTS_UPDATE: Results of a (simulated) test run.
        AI_INSIGHTS_UPDATE: AI code-analysis output.
        SCREENSHOT: Proctoring screenshot, persisted and never fanned out.
        JOIN_INTERVIEW: Handshake acknowledgement, no-op.
        PARTICIPANT_JOINED: Presence event emitted by the relay.
        PARTICIPANT_LEFT: Presence event emitted by the relay.
    """

    CODE_UPDATE = "code_update"
    NOTES_UPDATE = "notes_update"
    TEST_RESULTS_UPDATE = "test_results_update"
    AI_INSIGHTS_UPDATE = "ai_insights_update"
    SCREENSHOT = "screenshot"
    JOIN_INTERVIEW = "join_interview"
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"


class ParticipantRole(str, Enum):
    """Participant roles. Informational only, never used for authorization."""

    INTERVIEWER = "interviewer"
    CANDIDATE = "candidate"
    ADMIN = "admin"


DEFAULT_ROLE = ParticipantRole.CANDIDATE


def parse_role(raw: Optional[str]) -> tuple[ParticipantRole, bool]:
    """
    Resolve a handshake role string.

    Args:
        raw: Role as supplied by the client, possibly missing.

    Returns:
        Tuple of (role, recognized). ``recognized`` is False when the
        default role was substituted.
    """
    normalized = (raw or "").strip().lower()
    try:
        return ParticipantRole(normalized), True
    except ValueError:
        return DEFAULT_ROLE, False


class MalformedMessageError(Exception):
    """Raised when an inbound frame cannot be decoded into a RelayMessage."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Malformed message: {reason}")


class RelayMessage(BaseModel):
    """
    Message envelope exchanged over the real-time channel.

    Example:
        >>> RelayMessage(type="code_update", payload={"code": "x=1"})
    """

    type: str = Field(..., min_length=1, description="Message tag, see MessageType")
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Type-specific body",
    )

    model_config = {"extra": "ignore"}

    @property
    def message_type(self) -> Optional[MessageType]:
        """Known tag for this message, or None for unknown tags."""
        try:
            return MessageType(self.type)
        except ValueError:
            return None

    def to_json(self) -> str:
        return json.dumps(self.model_dump(), ensure_ascii=False)


def parse_message(raw: str | bytes) -> RelayMessage:
    """
    Decode one inbound frame.

    Accepts the canonical ``{"type": ..., "payload": {...}}`` envelope as
    well as flat frames with no ``payload`` key, in which case every
    top-level key except ``type`` becomes the payload.

    Raises:
        MalformedMessageError: If the frame is not a JSON object with a
            string ``type`` and an object ``payload``.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedMessageError("frame is not valid UTF-8") from exc

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedMessageError(f"invalid JSON ({exc.msg})") from exc

    if not isinstance(data, dict):
        raise MalformedMessageError("top-level value is not an object")

    if "payload" not in data:
        data = {
            "type": data.get("type"),
            "payload": {key: value for key, value in data.items() if key != "type"},
        }

    try:
        return RelayMessage.model_validate(data)
    except ValidationError as exc:
        raise MalformedMessageError(
            "; ".join(error["msg"] for error in exc.errors())
        ) from exc


class ScreenshotPayload(BaseModel):
    """
    Body of a ``screenshot`` message.

    Image bytes arrive as a list of integers (one per byte) and are
    reconstructed into a ``bytes`` buffer by :meth:`image_bytes`.
    """

    interview_id: Optional[str] = Field(default=None, alias="interviewId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    timestamp: str = Field(default_factory=_format_utc_timestamp)
    data: list[int] = Field(..., min_length=1)

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("timestamp", mode="before")
    @classmethod
    def coerce_timestamp(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("data")
    @classmethod
    def validate_byte_range(cls, value: list[int]) -> list[int]:
        if any(byte < 0 or byte > 255 for byte in value):
            raise ValueError("data values must be in range 0-255")
        return value

    def image_bytes(self) -> bytes:
        return bytes(self.data)


class RelayTransport(Protocol):
    """
    Bidirectional channel the relay pushes messages through.

    Starlette's WebSocket satisfies this interface.
    """

    async def accept(self) -> None:
        """Complete the handshake."""

    async def send_text(self, data: str) -> None:
        """Send one text frame."""

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        """Close the channel."""


def _new_connection_id() -> str:
    return f"conn_{uuid.uuid4().hex}"


@dataclass(eq=False)
class Connection:
    """
    One live participant session.

    ``interview_id``, ``user_id`` and ``role`` never change after accept;
    only ``last_activity`` is touched while the connection is open.
    """

    interview_id: str
    user_id: str
    role: ParticipantRole
    transport: RelayTransport = field(repr=False)
    connection_id: str = field(default_factory=_new_connection_id)
    connected_at: str = field(default_factory=_format_utc_timestamp)
    last_activity: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def describe(self) -> dict[str, str]:
        return {
            "connectionId": self.connection_id,
            "userId": self.user_id,
            "role": self.role.value,
            "connectedAt": self.connected_at,
        }
