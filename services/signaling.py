"""
WebSocket fan-out of attendance events to dashboards
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set
from dataclasses import dataclass, field
from datetime import datetime, timezone
from fastapi import WebSocket

logger = logging.getLogger(__name__)

DASHBOARD_ROOM = "dashboard"


class Notifier(ABC):
    """Anything the core can hand an event to. Delivery is best-effort."""

    @abstractmethod
    def publish(self, event: Dict[str, Any]) -> None:
        ...


def make_event(event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": event_type, "payload": payload}


@dataclass
class Connection:
    """Represents a connected client"""
    websocket: WebSocket
    room: str
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    client_id: str = ""

    def __hash__(self):
        return hash(self.client_id)

    def __eq__(self, other):
        if not isinstance(other, Connection):
            return False
        return self.client_id == other.client_id


class ConnectionManager(Notifier):
    """
    Manages WebSocket connections grouped in rooms and publishes events to them.
    `publish` never blocks and never raises; sends happen on background tasks.
    """

    def __init__(self):
        # Room -> Set of connections
        self.rooms: Dict[str, Set[Connection]] = {DASHBOARD_ROOM: set()}
        # WebSocket -> Connection mapping for easy lookup
        self.connections: Dict[WebSocket, Connection] = {}
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket, room: str = DASHBOARD_ROOM, client_id: str = "") -> Connection:
        """Accept a new WebSocket connection and add to room"""
        await websocket.accept()

        connection = Connection(
            websocket=websocket,
            room=room,
            client_id=client_id or f"client_{id(websocket)}"
        )

        async with self._lock:
            self.rooms.setdefault(room, set()).add(connection)
            self.connections[websocket] = connection

        logger.info(f"Client {connection.client_id} connected to room '{room}'")

        await self.send_personal(websocket, make_event(
            "connected",
            {"message": "Connected to attendance system"},
        ))
        return connection

    async def disconnect(self, websocket: WebSocket):
        """Remove a connection"""
        async with self._lock:
            connection = self.connections.pop(websocket, None)
            if connection:
                self.rooms[connection.room].discard(connection)
                logger.info(f"Client {connection.client_id} disconnected from room '{connection.room}'")

    async def send_personal(self, websocket: WebSocket, message: dict):
        """Send message to a specific client"""
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.error(f"Error sending message: {e}")
            await self.disconnect(websocket)

    async def broadcast_to_room(self, room: str, message: dict, exclude: Optional[WebSocket] = None):
        """Broadcast message to all clients in a room"""
        async with self._lock:
            connections = list(self.rooms.get(room, ()))

        disconnected = []
        for conn in connections:
            if conn.websocket is exclude:
                continue
            try:
                await conn.websocket.send_json(message)
            except Exception:
                disconnected.append(conn.websocket)

        # Clean up disconnected clients
        for ws in disconnected:
            await self.disconnect(ws)

    def publish(self, event: Dict[str, Any], room: str = DASHBOARD_ROOM) -> None:
        """Schedule a broadcast of `event`; failures are logged, never raised."""
        try:
            task = asyncio.get_running_loop().create_task(self.broadcast_to_room(room, event))
        except RuntimeError:
            logger.debug(f"No running loop, dropping {event.get('type')} event")
            return
        self._pending.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Event delivery failed: {task.exception()}")

    async def drain(self):
        """Wait for in-flight broadcasts (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_room_count(self, room: str) -> int:
        """Get number of connections in a room"""
        return len(self.rooms.get(room, []))
