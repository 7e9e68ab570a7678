"""
Mock transports and message generators for Session Relay testing.

FakeTransport stands in for a Starlette WebSocket so the relay can be
driven without a network stack.

Last Grunted: 10/19/2026
"""

import asyncio
import json
import random
from datetime import datetime, timezone
from typing import Any, Optional


# =============================================================================
# Transports
# =============================================================================

class FakeTransport:
    """
    In-memory transport that records everything the relay does to it.

    Args:
        fail_sends: Raise on every send_text, simulating a dead peer.
        fail_accept: Raise on accept, simulating a handshake that never completes.
    """

    def __init__(self, fail_sends: bool = False, fail_accept: bool = False) -> None:
        self.fail_sends = fail_sends
        self.fail_accept = fail_accept
        self.accepted = False
        self.closed = False
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.sent: list[str] = []

    async def accept(self) -> None:
        if self.fail_accept:
            raise RuntimeError("handshake aborted")
        self.accepted = True

    async def send_text(self, data: str) -> None:
        if self.fail_sends:
            raise ConnectionResetError("peer went away")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason

    @property
    def messages(self) -> list[dict[str, Any]]:
        return [json.loads(frame) for frame in self.sent]


class HangingTransport(FakeTransport):
    """Transport whose sends never complete, like a client that stopped reading."""

    def __init__(self) -> None:
        super().__init__()
        self.send_attempts = 0
        self._never = asyncio.Event()

    async def send_text(self, data: str) -> None:
        self.send_attempts += 1
        await self._never.wait()


# =============================================================================
# Frame Generators
# =============================================================================

SAMPLE_CODE = [
    "def two_sum(nums, target):\n    seen = {}\n",
    "x = 1",
    "for i in range(10):\n    print(i)\n",
]

SAMPLE_NOTES = [
    "Candidate asked clarifying questions before coding.",
    "Good use of a hash map, discussed O(n) complexity.",
]


def frame(message_type: str, payload: Optional[dict[str, Any]] = None) -> str:
    """Encode a canonical {type, payload} frame."""
    return json.dumps({"type": message_type, "payload": payload or {}})


def generate_code_update(code: Optional[str] = None) -> str:
    return frame("code_update", {"code": code if code is not None else random.choice(SAMPLE_CODE)})


def generate_notes_update(notes: Optional[str] = None) -> str:
    return frame("notes_update", {"notes": notes if notes is not None else random.choice(SAMPLE_NOTES)})


def generate_screenshot(
    interview_id: Optional[str] = "interview-1",
    user_id: Optional[str] = "userA",
    timestamp: Optional[str] = None,
    data: Optional[list[int]] = None,
) -> str:
    """Encode a screenshot frame with a tiny PNG-like byte sequence."""
    payload: dict[str, Any] = {
        "timestamp": timestamp
        or datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "data": data if data is not None else [0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A],
    }
    if interview_id is not None:
        payload["interviewId"] = interview_id
    if user_id is not None:
        payload["userId"] = user_id
    return frame("screenshot", payload)
