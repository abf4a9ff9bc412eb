"""
Real-time room fan-out over WebSockets.

A RoomHub keeps WebSocket connections grouped by room name:
- user-<id>: every connection of one user
- team-<id>: connections that joined a team room
- chat-<id>: connections that joined a chat room

Route handlers run in FastAPI's worker threads, so publishing is synchronous
and thread-safe: messages are scheduled onto the event loop the hub was
started on and the caller never waits for delivery. Delivery is at-most-once;
a connection that fails to receive is dropped from every room.
"""

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional, Set

from fastapi import Request, WebSocket
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


class RealtimeError(Exception):
    """Base error for the real-time layer."""


class RealtimeNotInitialized(RealtimeError):
    """Raised when publishing before the hub has been bound to an event loop."""


def user_room(user_id: str) -> str:
    return f"user-{user_id}"


def team_room(team_id: int) -> str:
    return f"team-{team_id}"


def chat_room(chat_id: int) -> str:
    return f"chat-{chat_id}"


class RoomHub:
    """Room-addressed broadcast service owned by the application."""

    def __init__(self):
        # room name -> set of connections
        self._rooms: Dict[str, Set[WebSocket]] = {}
        # connection -> id of the user it authenticated as
        self._owners: Dict[WebSocket, str] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def started(self) -> bool:
        return self._loop is not None

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Bind the hub to the running event loop (call from app startup)."""
        self._loop = loop or asyncio.get_running_loop()
        logger.info("Real-time hub started")

    def stop(self) -> None:
        self._loop = None
        with self._lock:
            self._rooms.clear()
            self._owners.clear()
        logger.info("Real-time hub stopped")

    def connect(self, websocket: WebSocket, user_id: str) -> str:
        """Register an authenticated connection and place it in the user's personal room."""
        room = user_room(user_id)
        with self._lock:
            self._owners[websocket] = user_id
            self._rooms.setdefault(room, set()).add(websocket)
        logger.debug(f"Connection registered for user {user_id}")
        return room

    def join(self, room: str, websocket: WebSocket) -> None:
        with self._lock:
            self._rooms.setdefault(room, set()).add(websocket)
        logger.debug(f"Connection joined room {room}")

    def leave(self, room: str, websocket: WebSocket) -> None:
        with self._lock:
            members = self._rooms.get(room)
            if members is None:
                return
            members.discard(websocket)
            if not members:
                del self._rooms[room]
        logger.debug(f"Connection left room {room}")

    def leave_all(self, websocket: WebSocket) -> List[str]:
        """Remove a connection from every room; returns the rooms it was in."""
        left = []
        with self._lock:
            self._owners.pop(websocket, None)
            for room in list(self._rooms):
                members = self._rooms[room]
                if websocket in members:
                    members.discard(websocket)
                    left.append(room)
                    if not members:
                        del self._rooms[room]
        return left

    def evict(self, room: str, user_id: str) -> int:
        """
        Remove every connection of a user from a room.

        Called when the user loses access to the team or chat behind the room.

        Returns:
            Number of connections removed
        """
        with self._lock:
            members = self._rooms.get(room)
            if not members:
                return 0
            removed = {ws for ws in members if self._owners.get(ws) == user_id}
            members -= removed
            if not members:
                del self._rooms[room]
        if removed:
            logger.info(f"Evicted user {user_id} from room {room} ({len(removed)} connections)")
        return len(removed)

    def close_room(self, room: str) -> int:
        """Remove every connection from a room whose team or chat no longer exists."""
        with self._lock:
            members = self._rooms.pop(room, set())
        if members:
            logger.info(f"Closed room {room} ({len(members)} connections)")
        return len(members)

    def rooms_of(self, websocket: WebSocket) -> List[str]:
        with self._lock:
            return sorted(room for room, members in self._rooms.items() if websocket in members)

    def connection_count(self, room: str) -> int:
        with self._lock:
            return len(self._rooms.get(room, ()))

    def publish(self, room: str, event: str, data: Any = None) -> int:
        """
        Schedule an event for every connection in a room.

        Args:
            room: Room name (see user_room, team_room, chat_room)
            event: Event name, e.g. "task:created"
            data: JSON-serializable payload (pydantic models and datetimes allowed)

        Returns:
            Number of connections the message was scheduled for

        Raises:
            RealtimeNotInitialized: If the hub has not been started
        """
        loop = self._loop
        if loop is None:
            raise RealtimeNotInitialized("Real-time hub has not been started")

        with self._lock:
            targets = list(self._rooms.get(room, ()))
        if not targets:
            return 0

        message = {"event": event, "room": room, "data": jsonable_encoder(data)}
        for websocket in targets:
            self._schedule(loop, self._deliver(websocket, message))
        logger.debug(f"Published {event} to {room} ({len(targets)} connections)")
        return len(targets)

    def emit(self, room: str, event: str, data: Any = None) -> int:
        """Best-effort publish: failures are logged, never raised."""
        try:
            return self.publish(room, event, data)
        except RealtimeError as e:
            logger.warning(f"Dropped {event} for {room}: {e}")
        except (RuntimeError, TypeError, ValueError) as e:
            logger.error(f"Failed to publish {event} to {room}: {e}")
        return 0

    @staticmethod
    def _schedule(loop: asyncio.AbstractEventLoop, coro) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            loop.create_task(coro)
        else:
            asyncio.run_coroutine_threadsafe(coro, loop)

    async def _deliver(self, websocket: WebSocket, message: dict) -> None:
        try:
            await websocket.send_json(message)
        except Exception as e:
            # Connection closed or errored
            logger.info(f"Dropping connection after failed send: {e}")
            self.leave_all(websocket)


def get_hub(request: Request) -> RoomHub:
    """FastAPI dependency returning the application's hub."""
    return request.app.state.hub
