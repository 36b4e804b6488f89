"""WebSocket connection manager for real-time session updates."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from fastapi import WebSocket

from core.config import get_settings
from services.session_state import SessionSnapshot

logger = logging.getLogger(__name__)


class WebSocketManager:
    """
    Manages WebSocket connections and session state fan-out.

    Features:
    - Connection tracking per listener (user) ID
    - Position-only updates coalesced to prevent render thrashing
    - Broadcast to all subscribers
    """

    def __init__(self) -> None:
        """Initialize WebSocket manager."""
        self.settings = get_settings()
        self._connections: dict[str, set[WebSocket]] = {}
        self._pending: dict[str, dict[str, Any]] = {}
        self._flush_tasks: dict[str, asyncio.Task[None]] = {}
        self._buffer_interval = self.settings.ws_position_buffer_ms / 1000.0

    async def connect(self, websocket: WebSocket, resource_id: str) -> None:
        """
        Accept and register a WebSocket connection.

        Args:
            websocket: The WebSocket connection
            resource_id: Identifier for the resource (the listener's user id)
        """
        await websocket.accept()
        self._connections.setdefault(resource_id, set()).add(websocket)

    def disconnect(self, websocket: WebSocket, resource_id: str) -> None:
        """
        Remove a WebSocket connection.

        Args:
            resource_id: Identifier for the resource
        """
        conns = self._connections.get(resource_id)
        if conns is not None:
            conns.discard(websocket)
            if not conns:
                del self._connections[resource_id]

        # If no listeners remain, drop pending updates for that resource id.
        if resource_id not in self._connections:
            self._pending.pop(resource_id, None)
            task = self._flush_tasks.pop(resource_id, None)
            if task is not None:
                task.cancel()

    def is_connected(self, resource_id: str) -> bool:
        """Check if a resource has an active connection."""
        return resource_id in self._connections and len(self._connections[resource_id]) > 0

    async def send_personal_message(
        self,
        message: dict[str, Any],
        resource_id: str,
    ) -> bool:
        """
        Send a message to every connection of a resource.

        Args:
            message: Message to send
            resource_id: Target resource ID

        Returns:
            True if sent to at least one connection, False otherwise
        """
        websockets = list(self._connections.get(resource_id, set()))
        if not websockets:
            return False

        sent_any = False
        to_drop: list[WebSocket] = []
        for ws in websockets:
            try:
                await ws.send_json(message)
                sent_any = True
            except Exception as e:
                logger.debug("Dropping websocket for %s: %s", resource_id, e)
                to_drop.append(ws)

        for ws in to_drop:
            self.disconnect(ws, resource_id)

        return sent_any

    async def broadcast(self, message: dict[str, Any]) -> None:
        """
        Broadcast a message to all connected clients.

        Args:
            message: Message to broadcast
        """
        for resource_id in list(self._connections.keys()):
            await self.send_personal_message(message, resource_id)

    def buffer_message(self, message: dict[str, Any], resource_id: str) -> None:
        """
        Buffer a message for delayed sending.

        Only the newest buffered message survives until the flush; position
        ticks arrive several times a second and clients only need the latest.

        Args:
            message: Message to buffer
            resource_id: Target resource ID
        """
        if resource_id not in self._connections:
            return

        self._pending[resource_id] = message

        # Start flush task if not already running
        if resource_id not in self._flush_tasks or self._flush_tasks[resource_id].done():
            self._flush_tasks[resource_id] = asyncio.create_task(
                self._flush_buffer(resource_id)
            )

    async def _flush_buffer(self, resource_id: str) -> None:
        """
        Flush the buffered message after interval.

        Args:
            resource_id: Resource ID to flush
        """
        await asyncio.sleep(self._buffer_interval)

        message = self._pending.pop(resource_id, None)
        if message is None or resource_id not in self._connections:
            return

        await self.send_personal_message(message, resource_id)

    def _send_now(self, message: dict[str, Any], resource_id: str) -> None:
        # A full update supersedes any buffered position tick.
        self._pending.pop(resource_id, None)
        asyncio.create_task(self.send_personal_message(message, resource_id))

    def create_state_listener(
        self,
        resource_id: str,
        message_type: str = "state",
    ) -> Callable[[SessionSnapshot], None]:
        """
        Create a session listener that forwards snapshots to a resource.

        Args:
            resource_id: Resource ID to send updates to
            message_type: Type field for messages

        Returns:
            Listener suitable for `PlaybackSessionController.subscribe`
        """
        last: dict[str, Any] = {}

        def listener(snapshot: SessionSnapshot) -> None:
            if not self.is_connected(resource_id):
                return

            state = snapshot.model_dump(mode="json")
            message = {"type": message_type, "user_id": resource_id, "state": state}

            previous = last.get("state")
            last["state"] = state
            if previous is not None and _only_position_changed(previous, state):
                # Position tick - buffer it
                self.buffer_message(message, resource_id)
            else:
                # Transport/chapter/error change - send immediately
                self._send_now(message, resource_id)

        return listener

    async def send_state(self, resource_id: str, snapshot: SessionSnapshot) -> bool:
        """
        Send a full state message.

        Args:
            resource_id: Target resource ID
            snapshot: Session snapshot to send

        Returns:
            True if sent successfully
        """
        return await self.send_personal_message(
            {
                "type": "state",
                "user_id": resource_id,
                "state": snapshot.model_dump(mode="json"),
            },
            resource_id,
        )

    async def send_error(self, resource_id: str, error: str) -> bool:
        """Send an error message (e.g. an unknown command)."""
        return await self.send_personal_message(
            {"type": "error", "user_id": resource_id, "error": error}, resource_id
        )


def _only_position_changed(previous: dict[str, Any], current: dict[str, Any]) -> bool:
    keys = set(previous) | set(current)
    changed = {k for k in keys if previous.get(k) != current.get(k)}
    return bool(changed) and changed <= {"position_ms", "sleep_timer_remaining_seconds"}
