"""Room-scoped realtime channel for chat.

Clients connect to `/ws?token=<jwt>` and exchange JSON frames of the form
`{"event": str, "data": any}`. A socket joins rooms with `join_room`;
messages posted over HTTP are pushed to every socket joined to the room
as `receive_message`. Presence is the number of sockets joined to a room
and is pushed as `active_users_count` whenever it changes.
"""

import json
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool
from sqlmodel import Session

from .auth import decode_token, load_account
from .database import engine
from .exceptions import CredentialsException
from .services import ChatService

logger = logging.getLogger("ethioace.chat")


class ConnectionManager:
    """Tracks which sockets are joined to which rooms."""

    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = defaultdict(set)

    def count(self, room_id) -> int:
        return len(self.rooms.get(str(room_id), ()))

    def join(self, websocket: WebSocket, room_id) -> None:
        self.rooms[str(room_id)].add(websocket)

    def leave(self, websocket: WebSocket, room_id) -> bool:
        key = str(room_id)
        members = self.rooms.get(key)
        if not members or websocket not in members:
            return False
        members.discard(websocket)
        if not members:
            del self.rooms[key]
        return True

    def disconnect(self, websocket: WebSocket) -> List[str]:
        """Drop a socket from every room; return the rooms it was in."""
        left = [key for key, members in self.rooms.items() if websocket in members]
        for key in left:
            self.leave(websocket, key)
        return left

    async def send(self, websocket: WebSocket, event: str, data: Any) -> None:
        await websocket.send_json({"event": event, "data": data})

    async def broadcast(self, room_id, event: str, data: Any) -> None:
        """Send an event to every socket in the room, dropping dead ones."""
        dead = []
        for websocket in list(self.rooms.get(str(room_id), ())):
            try:
                await self.send(websocket, event, data)
            except (WebSocketDisconnect, RuntimeError) as exc:
                logger.warning("dropping socket from room %s: %s", room_id, exc)
                dead.append(websocket)
        for websocket in dead:
            self.leave(websocket, room_id)

    async def broadcast_count(self, room_id) -> None:
        await self.broadcast(room_id, "active_users_count", self.count(room_id))


manager = ConnectionManager()


def _load_user(token: Optional[str]):
    if not token:
        return None
    try:
        payload = decode_token(token)
    except CredentialsException:
        return None
    with Session(engine) as session:
        user = load_account(session, payload)
        if user is not None:
            session.expunge(user)
        return user


def _room_error(user, room_id: int) -> Optional[str]:
    """Reason `user` may not join `room_id` over the socket, or None."""
    with Session(engine) as session:
        chat = ChatService(session)
        room = chat.chat.get_room(room_id)
        if not room or not room.is_active:
            return "Chat room not found"
        if not chat.is_visible(user, room):
            return "This chat room is not available for your stream"
    return None


def _room_id(data) -> Optional[int]:
    if isinstance(data, dict):
        data = data.get("roomId")
    try:
        return int(data)
    except (TypeError, ValueError):
        return None


async def handle_event(websocket: WebSocket, user, event: str, data: Any) -> None:
    if event not in ("join_room", "leave_room", "get_active_users"):
        await manager.send(websocket, "error", {"message": f"unknown event: {event}"})
        return
    room_id = _room_id(data)
    if room_id is None:
        await manager.send(websocket, "error", {"message": "roomId is required"})
        return
    if event == "join_room":
        error = await run_in_threadpool(_room_error, user, room_id)
        if error:
            await manager.send(websocket, "error", {"message": error, "roomId": room_id})
            return
        manager.join(websocket, room_id)
        logger.info("%s %s joined room %s", user.role, user.id, room_id)
        await manager.broadcast_count(room_id)
    elif event == "leave_room":
        if manager.leave(websocket, room_id):
            logger.info("%s %s left room %s", user.role, user.id, room_id)
            await manager.broadcast_count(room_id)
    else:
        await manager.send(websocket, "active_users_count", manager.count(room_id))


async def chat_socket(websocket: WebSocket, token: Optional[str] = None):
    """WebSocket endpoint: authenticate, then dispatch client events."""
    user = await run_in_threadpool(_load_user, token)
    if user is None:
        await websocket.close(code=1008)
        return
    await websocket.accept()
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                await manager.send(websocket, "error", {"message": "invalid JSON frame"})
                continue
            if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                await manager.send(websocket, "error", {"message": "frame must be {event, data}"})
                continue
            await handle_event(websocket, user, frame["event"], frame.get("data"))
    except WebSocketDisconnect as exc:
        logger.info("socket closed for %s %s (code=%s)", user.role, user.id, exc.code)
    finally:
        for room_id in manager.disconnect(websocket):
            await manager.broadcast_count(room_id)
