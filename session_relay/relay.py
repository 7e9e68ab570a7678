"""
Session Relay.

Accepts real-time connections, binds each one to an interview room, and
fans room-scoped messages out to the other participants of that room.

Delivery is best effort:
    - malformed frames and unknown message types are logged and dropped
    - a failed send to one recipient never aborts delivery to the others
    - a send that does not finish within ``send_timeout`` drops the
      stalled recipient, so one slow client cannot hold up a room
    - screenshot writes run as detached tasks whose failures are logged

Nothing is replayed to late joiners and no message history is kept.

Example:
    relay = SessionRelay(ScreenshotStore(Path("./screenshots")))
    connection = await relay.accept(websocket, "interview-1", "userA", "candidate")
    await relay.handle_message(connection, '{"type": "code_update", "payload": {"code": "x=1"}}')
    await relay.handle_close(connection)

Last Grunted: 10/19/2026
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional, TypedDict

from pydantic import ValidationError

from .models import (
    Connection,
    MalformedMessageError,
    MessageType,
    RelayMessage,
    RelayTransport,
    ScreenshotPayload,
    parse_message,
    parse_role,
)
from .registry import ConnectionRegistry
from .screenshots import ScreenshotStore, ScreenshotWriteError


__all__ = [
    "SessionRelay",
    "RelayStats",
    "HandshakeRejectedError",
    "POLICY_VIOLATION",
    "GOING_AWAY",
    "TRY_AGAIN_LATER",
    "DEFAULT_SEND_TIMEOUT",
]


logger = logging.getLogger(__name__)

# RFC 6455 close codes
POLICY_VIOLATION = 1008
GOING_AWAY = 1001
TRY_AGAIN_LATER = 1013

DEFAULT_SEND_TIMEOUT = 5.0

ENRICHED_TYPES = frozenset({MessageType.CODE_UPDATE, MessageType.NOTES_UPDATE})
OPAQUE_TYPES = frozenset({MessageType.TEST_RESULTS_UPDATE, MessageType.AI_INSIGHTS_UPDATE})


class RelayStats(TypedDict):
    """Relay counters."""

    connections_accepted: int
    handshakes_rejected: int
    messages_received: int
    messages_forwarded: int
    malformed_messages: int
    unknown_messages: int
    delivery_failures: int
    screenshots_saved: int
    screenshot_failures: int
    connections_reaped: int
    slow_consumers_dropped: int
    started_at: str


def get_initial_stats() -> RelayStats:
    """Create zeroed relay counters."""
    return RelayStats(
        connections_accepted=0,
        handshakes_rejected=0,
        messages_received=0,
        messages_forwarded=0,
        malformed_messages=0,
        unknown_messages=0,
        delivery_failures=0,
        screenshots_saved=0,
        screenshot_failures=0,
        connections_reaped=0,
        slow_consumers_dropped=0,
        started_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )


class HandshakeRejectedError(Exception):
    """Raised when a connection is refused before registration."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Handshake rejected: {reason}")


class SessionRelay:
    """
    Per-interview message relay.

    Each instance owns its own registry, so independent relays can run
    side by side in one process.

    Attributes:
        registry: Open connections.
        screenshot_store: Destination for screenshot messages.
        presence_events: Announce joins and departures to the room.
        idle_timeout: Seconds without traffic in either direction before a
            connection is reaped. ``0`` disables reaping.
        send_timeout: Seconds one outbound send may take before the
            recipient is treated as stalled and dropped.
        stats: Relay counters.
    """

    def __init__(
        self,
        screenshot_store: ScreenshotStore,
        *,
        presence_events: bool = False,
        idle_timeout: float = 0.0,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        registry: Optional[ConnectionRegistry] = None,
    ) -> None:
        if send_timeout <= 0:
            raise ValueError(f"send_timeout must be > 0. Got: {send_timeout}")
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.screenshot_store = screenshot_store
        self.presence_events = presence_events
        self.idle_timeout = idle_timeout
        self.send_timeout = send_timeout
        self.stats = get_initial_stats()
        self._pending_writes: set[asyncio.Task[None]] = set()
        self._pending_closes: set[asyncio.Task[None]] = set()
        logger.info(
            "SessionRelay initialized (presence_events=%s, idle_timeout=%.1fs, send_timeout=%.1fs)",
            presence_events,
            idle_timeout,
            send_timeout,
        )

    @property
    def connection_count(self) -> int:
        return len(self.registry)

    @property
    def pending_writes(self) -> int:
        return len(self._pending_writes)

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def accept(
        self,
        transport: RelayTransport,
        interview_id: Optional[str],
        user_id: Optional[str],
        role: Optional[str] = None,
    ) -> Connection:
        """
        Validate the handshake and register a new connection.

        Args:
            transport: Channel to the participant, not yet accepted.
            interview_id: Room to join.
            user_id: Authenticated participant id.
            role: Participant role. Missing or unknown values fall back
                to the default role.

        Returns:
            The registered connection.

        Raises:
            HandshakeRejectedError: If ``interview_id`` or ``user_id`` is
                missing. The transport is closed with a policy-violation
                code before raising and nothing is registered.
        """
        interview_id = (interview_id or "").strip()
        user_id = (user_id or "").strip()

        if not interview_id or not user_id:
            missing = [
                name
                for name, value in (("interviewId", interview_id), ("userId", user_id))
                if not value
            ]
            reason = f"missing {', '.join(missing)}"
            self.stats["handshakes_rejected"] += 1
            logger.warning("Rejecting connection: %s", reason)
            await transport.close(code=POLICY_VIOLATION, reason=reason)
            raise HandshakeRejectedError(reason)

        resolved_role, recognized = parse_role(role)
        if not recognized:
            logger.warning(
                "Unrecognized role %r for user %s, defaulting to %s",
                role,
                user_id,
                resolved_role.value,
            )

        connection = Connection(
            interview_id=interview_id,
            user_id=user_id,
            role=resolved_role,
            transport=transport,
        )
        # Registered before the accept frame goes out, so a client that has
        # seen the accept is already reachable by broadcasts.
        self.registry.add(connection)
        try:
            await transport.accept()
        except Exception:
            self.registry.remove(connection.connection_id)
            raise
        self.stats["connections_accepted"] += 1

        logger.info(
            "Client connected: %s (user=%s, role=%s, interview=%s)",
            connection.connection_id,
            user_id,
            resolved_role.value,
            interview_id,
        )

        if self.presence_events:
            await self._broadcast_presence(MessageType.PARTICIPANT_JOINED, connection)
        return connection

    async def handle_close(self, connection: Connection) -> bool:
        """
        Remove a connection from the registry.

        Idempotent: closing an already removed connection is a no-op.

        Returns:
            True if the connection was registered and has been removed.
        """
        removed = self.registry.remove(connection.connection_id)
        if removed is None:
            logger.debug("Close for unknown connection %s ignored", connection.connection_id)
            return False

        logger.info(
            "Client disconnected: %s (user=%s, interview=%s)",
            connection.connection_id,
            connection.user_id,
            connection.interview_id,
        )

        if self.presence_events:
            await self._broadcast_presence(MessageType.PARTICIPANT_LEFT, connection)
        return True

    async def reap_idle(self, now: Optional[float] = None) -> int:
        """
        Close connections idle for longer than ``idle_timeout``.

        Args:
            now: Monotonic reference time. Defaults to ``time.monotonic()``.

        Returns:
            Number of connections reaped.
        """
        if self.idle_timeout <= 0:
            return 0

        reference = time.monotonic() if now is None else now
        reaped = 0
        for connection in self.registry.idle_since(reference - self.idle_timeout):
            if not await self.handle_close(connection):
                continue
            reaped += 1
            logger.info("Reaped idle connection %s", connection.connection_id)
            await self._close_transport(connection, GOING_AWAY, "idle timeout")

        self.stats["connections_reaped"] += reaped
        return reaped

    async def _close_transport(self, connection: Connection, code: int, reason: str) -> None:
        try:
            await asyncio.wait_for(
                connection.transport.close(code=code, reason=reason),
                timeout=self.send_timeout,
            )
        except Exception as e:
            logger.warning(
                "Failed to close connection %s (%s): %r", connection.connection_id, reason, e
            )

    # -------------------------------------------------------------------------
    # Message dispatch
    # -------------------------------------------------------------------------

    async def handle_message(self, connection: Connection, raw: str | bytes) -> None:
        """
        Decode one frame from ``connection`` and dispatch it by type.

        Never raises for message content; every failure is logged and the
        connection stays open.
        """
        if connection.connection_id not in self.registry:
            logger.debug("Dropping frame from closed connection %s", connection.connection_id)
            return

        connection.touch()
        self.stats["messages_received"] += 1

        try:
            message = parse_message(raw)
        except MalformedMessageError as e:
            self.stats["malformed_messages"] += 1
            logger.warning(
                "Discarding malformed message from %s: %s", connection.connection_id, e.reason
            )
            return

        message_type = message.message_type

        if message_type in ENRICHED_TYPES:
            payload = {**message.payload, "userId": connection.user_id}
            await self.broadcast(
                connection.interview_id,
                RelayMessage(type=message.type, payload=payload),
                exclude=connection.connection_id,
            )
        elif message_type in OPAQUE_TYPES:
            await self.broadcast(
                connection.interview_id,
                message,
                exclude=connection.connection_id,
            )
        elif message_type is MessageType.SCREENSHOT:
            self._schedule_screenshot(connection, message.payload)
        elif message_type is MessageType.JOIN_INTERVIEW:
            logger.debug(
                "join_interview acknowledged for %s in %s",
                connection.connection_id,
                connection.interview_id,
            )
        else:
            self.stats["unknown_messages"] += 1
            logger.warning(
                "Unknown message type %r from %s", message.type, connection.connection_id
            )

    async def broadcast(
        self,
        interview_id: str,
        message: RelayMessage,
        exclude: Optional[str] = None,
    ) -> int:
        """
        Send ``message`` to every connection in a room except ``exclude``.

        Recipients are snapshotted before sending; a connection joining
        mid-broadcast does not receive this message.

        Returns:
            Number of successful deliveries.
        """
        recipients = self.registry.room_members(interview_id, exclude=exclude)
        if not recipients:
            return 0

        data = message.to_json()
        results = await asyncio.gather(
            *(self._deliver(recipient, data) for recipient in recipients)
        )
        delivered = sum(1 for ok in results if ok)
        self.stats["messages_forwarded"] += delivered
        logger.debug(
            "Forwarded %s to %d/%d peers in %s",
            message.type,
            delivered,
            len(recipients),
            interview_id,
        )
        return delivered

    async def _deliver(self, recipient: Connection, data: str) -> bool:
        try:
            await asyncio.wait_for(
                recipient.transport.send_text(data), timeout=self.send_timeout
            )
        except asyncio.TimeoutError:
            self.stats["delivery_failures"] += 1
            logger.warning(
                "Delivery to %s timed out after %.1fs, dropping connection",
                recipient.connection_id,
                self.send_timeout,
            )
            await self._drop_slow_consumer(recipient)
            return False
        except Exception as e:
            self.stats["delivery_failures"] += 1
            logger.warning("Delivery to %s failed: %s", recipient.connection_id, e)
            return False
        # Outbound traffic counts as activity for receive-only participants.
        recipient.touch()
        return True

    async def _drop_slow_consumer(self, connection: Connection) -> None:
        """
        Unregister a stalled recipient and close it in the background.

        The close runs detached and is bounded by ``send_timeout``.
        """
        if not await self.handle_close(connection):
            return
        self.stats["slow_consumers_dropped"] += 1
        task = asyncio.create_task(
            self._close_transport(connection, TRY_AGAIN_LATER, "send timeout")
        )
        self._pending_closes.add(task)
        task.add_done_callback(self._pending_closes.discard)

    async def _broadcast_presence(self, message_type: MessageType, connection: Connection) -> None:
        payload: dict[str, Any] = {
            "userId": connection.user_id,
            "role": connection.role.value,
            "connectionId": connection.connection_id,
        }
        await self.broadcast(
            connection.interview_id,
            RelayMessage(type=message_type.value, payload=payload),
            exclude=connection.connection_id,
        )

    # -------------------------------------------------------------------------
    # Screenshots
    # -------------------------------------------------------------------------

    def _schedule_screenshot(self, connection: Connection, payload: dict[str, Any]) -> None:
        task = asyncio.create_task(self._persist_screenshot(connection, payload))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _persist_screenshot(self, connection: Connection, payload: dict[str, Any]) -> None:
        try:
            screenshot = ScreenshotPayload.model_validate(payload)
        except ValidationError as e:
            self.stats["screenshot_failures"] += 1
            logger.error(
                "Invalid screenshot payload from %s: %s", connection.connection_id, e
            )
            return

        interview_id = screenshot.interview_id or connection.interview_id
        user_id = screenshot.user_id or connection.user_id
        if interview_id != connection.interview_id or user_id != connection.user_id:
            self.stats["screenshot_failures"] += 1
            logger.error(
                "Screenshot identity %s/%s does not match connection %s (%s/%s)",
                interview_id,
                user_id,
                connection.connection_id,
                connection.interview_id,
                connection.user_id,
            )
            return

        try:
            await self.screenshot_store.save(
                interview_id, user_id, screenshot.timestamp, screenshot.image_bytes()
            )
        except ScreenshotWriteError as e:
            self.stats["screenshot_failures"] += 1
            logger.error("Screenshot persistence failed: %s", e)
            return
        except Exception as e:
            self.stats["screenshot_failures"] += 1
            logger.error("Unexpected screenshot failure: %s", e, exc_info=True)
            return

        self.stats["screenshots_saved"] += 1

    async def wait_for_pending_writes(self) -> None:
        """Wait until every scheduled screenshot write has finished."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    async def wait_for_pending_closes(self) -> None:
        """Wait until every detached close of a dropped connection has finished."""
        while self._pending_closes:
            await asyncio.gather(*list(self._pending_closes), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def room_snapshot(self, interview_id: str) -> list[dict[str, str]]:
        """Describe the participants currently connected to a room."""
        return [connection.describe() for connection in self.registry.room_members(interview_id)]

    def active_rooms(self) -> dict[str, int]:
        return self.registry.rooms()
