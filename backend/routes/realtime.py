"""
WebSocket endpoint for real-time updates.

Clients connect to /ws?token=<identity token>. The connection is placed in
the user's personal room and may then join team and chat rooms it belongs to:

    {"action": "join", "room": "team-3"}
    {"action": "leave", "room": "chat-7"}
    {"action": "ping"}

Server frames use the same envelope as broadcast events:
{"event": ..., "room": ..., "data": ...}.
"""

import json
import logging
from typing import Optional, Tuple

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from database import SessionLocal
from activity import record_activity
from auth.dependencies import ensure_not_blocked, resolve_identity
from auth.permissions import chat_role_of, team_role_of
from auth.security import IdentityError, verify_identity_token
from realtime import RoomHub, user_room
from schemas import ActivityAction

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

# Close codes in the application range (4000-4999)
CLOSE_UNAUTHENTICATED = 4001
CLOSE_FORBIDDEN = 4003


def _authenticate(token: Optional[str]) -> str:
    """Verify the token and return the local user id (provisioning if needed)."""
    if not token:
        raise IdentityError("Authentication required")
    claims = verify_identity_token(token)
    with SessionLocal() as db:
        user = resolve_identity(db, claims)
        ensure_not_blocked(user)
        return user.id


def _parse_room(room: str) -> Tuple[str, str]:
    kind, sep, key = room.partition("-")
    if not sep or not key or kind not in ("user", "team", "chat"):
        raise ValueError(f"Unknown room: {room}")
    return kind, key


def _check_room(user_id: str, room: str, action: str) -> None:
    """
    Raise ValueError if the user may not join or leave the room.

    Team joins and leaves are recorded in the activity log.
    """
    kind, key = _parse_room(room)
    if kind == "user":
        if key != user_id:
            raise ValueError("Cannot join another user's room")
        return

    try:
        resource_id = int(key)
    except ValueError:
        raise ValueError(f"Unknown room: {room}")

    with SessionLocal() as db:
        if kind == "chat":
            if action == "join" and chat_role_of(db, resource_id, user_id) is None:
                raise ValueError("You are not a member of this chat")
            return

        role = team_role_of(db, resource_id, user_id)
        if role is None:
            if action == "join":
                raise ValueError("You are not a member of this team")
            return
        record_activity(
            db, user_id,
            ActivityAction.team_joined if action == "join" else ActivityAction.team_left,
            {"team_id": resource_id, "user_id": user_id, "role": role},
            team_id=resource_id,
        )


def _frame(event: str, room: Optional[str], data=None) -> dict:
    return {"event": event, "room": room, "data": data if data is not None else {}}


async def _handle(hub: RoomHub, websocket: WebSocket, user_id: str, raw: str) -> dict:
    try:
        message = json.loads(raw)
    except ValueError:
        return _frame("error", None, {"detail": "Frames must be JSON objects"})
    if not isinstance(message, dict):
        return _frame("error", None, {"detail": "Frames must be JSON objects"})

    action = message.get("action")
    room = message.get("room")

    if action == "ping":
        return _frame("pong", None)

    if action not in ("join", "leave"):
        return _frame("error", room, {"detail": f"Unknown action: {action}"})
    if not isinstance(room, str):
        return _frame("error", None, {"detail": "room is required"})

    if action == "leave" and room == user_room(user_id):
        return _frame("error", room, {"detail": "Cannot leave the personal room"})

    try:
        await run_in_threadpool(_check_room, user_id, room, action)
    except ValueError as e:
        return _frame("error", room, {"detail": str(e)})

    if action == "join":
        hub.join(room, websocket)
        logger.info(f"User {user_id} joined room {room}")
        return _frame("joined", room)

    hub.leave(room, websocket)
    logger.info(f"User {user_id} left room {room}")
    return _frame("left", room)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
):
    """Authenticated real-time connection."""
    hub: RoomHub = websocket.app.state.hub

    try:
        user_id = await run_in_threadpool(_authenticate, token)
    except IdentityError as e:
        logger.info(f"WebSocket rejected: {e.message}")
        await websocket.close(code=CLOSE_UNAUTHENTICATED, reason=e.message)
        return
    except HTTPException as e:
        logger.info(f"WebSocket rejected: {e.detail}")
        await websocket.close(code=CLOSE_FORBIDDEN, reason=str(e.detail))
        return

    await websocket.accept()
    personal = hub.connect(websocket, user_id)
    logger.info(f"WebSocket connected for user {user_id}")

    try:
        await websocket.send_json(_frame("connected", personal, {"user_id": user_id}))
        while True:
            raw = await websocket.receive_text()
            await websocket.send_json(await _handle(hub, websocket, user_id, raw))
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for user {user_id}")
    finally:
        rooms = hub.leave_all(websocket)
        logger.debug(f"Connection for user {user_id} removed from {len(rooms)} rooms")
