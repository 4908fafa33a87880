"""
Amora — realtime.py
─────────────────────────────────────────────────────────────────
Realtime Gateway (WebSocket /ws)

Handshake:
  ws://host/ws?token=<jwt>        or   Authorization: Bearer <jwt>
  Missing / invalid token → closed with 1008 before accept.

Frames (both directions):
  {"event": "chat:message", "data": {...}}

Client → server:
  profile:view   targetUserId
  chat:join      conversationId
  chat:message   {conversationId, content, type}
  chat:typing    {conversationId, isTyping}
  chat:read      conversationId

Server → client:
  chat:message  chat:read  chat:typing  chat:error  match:created
  user:online   user:offline  profile:viewed  error

RealtimeHub owns every live connection: user id → connections
(private channel), room → connections, and the typing sets.
One hub per app, created in the lifespan, closed on shutdown.
─────────────────────────────────────────────────────────────────
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set

from fastapi import APIRouter, WebSocket

from amora.core.errors import AmoraError, AuthenticationError, ValidationError
from amora.core.security import Principal, verify_token

logger = logging.getLogger("amora.realtime")

POLICY_VIOLATION = 1008
GOING_AWAY       = 1001


def room_for(conversation_id: str) -> str:
    return f"chat:{conversation_id}"


# ─────────────────────────────────────────────
# Connection
# ─────────────────────────────────────────────
class Connection:
    """One accepted socket + the user behind it."""

    def __init__(self, websocket: WebSocket, principal: Principal):
        self.websocket = websocket
        self.principal = principal
        self.rooms: Set[str] = set()

    @property
    def user_id(self) -> str:
        return self.principal.user_id

    async def send(self, event: str, data: Any):
        await self.websocket.send_json({"event": event, "data": data})


# ─────────────────────────────────────────────
# RealtimeHub
# ─────────────────────────────────────────────
class RealtimeHub:

    def __init__(self):
        self.users:  Dict[str, Set[Connection]] = {}
        self.rooms:  Dict[str, Set[Connection]] = {}
        self.typing: Dict[str, Set[str]] = {}      # conversation id → typing user ids

    # ─── Membership ───────────────────────────

    def register(self, conn: Connection):
        self.users.setdefault(conn.user_id, set()).add(conn)

    def unregister(self, conn: Connection) -> bool:
        """Drop a connection everywhere. True if it was the user's last one."""
        for room in list(conn.rooms):
            self.leave(conn, room)
        conns = self.users.get(conn.user_id)
        if conns is not None:
            conns.discard(conn)
            if not conns:
                del self.users[conn.user_id]
                return True
            return False
        return True

    def join(self, conn: Connection, room: str):
        self.rooms.setdefault(room, set()).add(conn)
        conn.rooms.add(room)

    def leave(self, conn: Connection, room: str):
        members = self.rooms.get(room)
        if members is not None:
            members.discard(conn)
            if not members:
                del self.rooms[room]
        conn.rooms.discard(room)

    def is_online(self, user_id: str) -> bool:
        return bool(self.users.get(user_id))

    # ─── Typing ───────────────────────────────

    def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> List[str]:
        users = self.typing.setdefault(conversation_id, set())
        if is_typing:
            users.add(user_id)
        else:
            users.discard(user_id)
        current = sorted(users)
        if not users:
            del self.typing[conversation_id]
        return current

    def purge_typing(self, user_id: str) -> Dict[str, List[str]]:
        """Remove user from every typing set. Returns the rooms that changed."""
        changed = {}
        for conversation_id, users in list(self.typing.items()):
            if user_id in users:
                users.discard(user_id)
                changed[conversation_id] = sorted(users)
                if not users:
                    del self.typing[conversation_id]
        return changed

    # ─── Emit ─────────────────────────────────

    async def _send(self, conns, event: str, data: Any, exclude: Optional[Connection] = None):
        for conn in list(conns):
            if conn is exclude:
                continue
            try:
                await conn.send(event, data)
            except Exception as e:
                logger.warning(f"Send failed to {conn.user_id} ({event}): {e}")

    async def emit_to_user(self, user_id: str, event: str, data: Any):
        """Private channel user:{id}. No-op when the user is offline."""
        await self._send(self.users.get(user_id, ()), event, data)

    async def emit_to_room(self, room: str, event: str, data: Any, exclude: Optional[Connection] = None):
        await self._send(self.rooms.get(room, ()), event, data, exclude=exclude)

    async def broadcast(self, event: str, data: Any):
        everyone = [c for conns in self.users.values() for c in conns]
        await self._send(everyone, event, data)

    # ─── Lifecycle ────────────────────────────

    async def close(self):
        for conns in list(self.users.values()):
            for conn in list(conns):
                try:
                    await conn.websocket.close(code=GOING_AWAY)
                except Exception as e:
                    logger.debug(f"Close failed for {conn.user_id}: {e}")
        self.users.clear()
        self.rooms.clear()
        self.typing.clear()
        logger.info("Realtime hub closed")


# ─────────────────────────────────────────────
# RealtimeGateway
# ─────────────────────────────────────────────
def _field(data: Any, key: str, *aliases: str) -> Any:
    """Accept either a bare value or {key: value}."""
    if isinstance(data, dict):
        for k in (key, *aliases):
            if k in data:
                return data[k]
        return None
    return data


def _require_str(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{name} is required")
    return value


class RealtimeGateway:

    def __init__(self, hub: RealtimeHub, users, chat):
        self.hub   = hub
        self.users = users
        self.chat  = chat
        self.handlers = {
            "profile:view": self.on_profile_view,
            "chat:join":    self.on_join,
            "chat:message": self.on_message,
            "chat:typing":  self.on_typing,
            "chat:read":    self.on_read,
        }
        # user id → [lock, holders + waiters]
        self._presence_locks: Dict[str, list] = {}

    @asynccontextmanager
    async def _presence(self, user_id: str):
        """
        Serialize connect / disconnect of one user, so the stored
        is_online flag always ends up matching the live connections.
        """
        entry = self._presence_locks.setdefault(user_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._presence_locks[user_id]

    # ─── Connection lifecycle ─────────────────

    async def serve(self, websocket: WebSocket):
        token = websocket.query_params.get("token") or websocket.headers.get("authorization")
        try:
            principal = verify_token(token)
        except AuthenticationError as e:
            logger.info(f"Socket rejected: {e.message}")
            await websocket.close(code=POLICY_VIOLATION)
            return

        await websocket.accept()
        conn = Connection(websocket, principal)
        await self.on_connect(conn)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                await self.dispatch(conn, message.get("text"))
        finally:
            await self.on_disconnect(conn)

    async def on_connect(self, conn: Connection):
        logger.info(f"User connected: {conn.user_id}")
        async with self._presence(conn.user_id):
            self.hub.register(conn)
            try:
                await self.users.set_online(conn.user_id, True)
            except Exception as e:
                logger.error(f"Could not mark {conn.user_id} online: {e}")
            await self.hub.broadcast("user:online", {"userId": conn.user_id})

    async def on_disconnect(self, conn: Connection):
        logger.info(f"User disconnected: {conn.user_id}")
        async with self._presence(conn.user_id):
            last = self.hub.unregister(conn)
            if not last:
                return

            try:
                last_seen = await self.users.set_online(conn.user_id, False)
            except Exception as e:
                logger.error(f"Could not mark {conn.user_id} offline: {e}")
                last_seen = None
            await self.hub.broadcast("user:offline", {"userId": conn.user_id, "lastSeen": last_seen})

            for conversation_id, typing_users in self.hub.purge_typing(conn.user_id).items():
                await self.hub.emit_to_room(room_for(conversation_id), "chat:typing", {
                    "conversationId": conversation_id,
                    "userId":         conn.user_id,
                    "typingUsers":    typing_users,
                })

    # ─── Dispatch ─────────────────────────────

    async def dispatch(self, conn: Connection, raw: Optional[str]):
        """Decode one frame and run its handler. Errors go back to this socket only."""
        event = None
        try:
            if raw is None:
                raise ValidationError("Frame must be text")
            try:
                frame = json.loads(raw)
            except ValueError:
                raise ValidationError("Frame is not valid JSON")
            if not isinstance(frame, dict):
                raise ValidationError("Frame must be an object")

            event   = frame.get("event")
            handler = self.handlers.get(event)
            if handler is None:
                raise ValidationError(f"Unknown event: {event}")
            await handler(conn, frame.get("data"))

        except AmoraError as e:
            await conn.send("error", {**e.to_dict(), "event": event})
        except Exception as e:
            logger.error(f"Socket handler {event} failed for {conn.user_id}: {e}", exc_info=True)
            await conn.send("error", {"code": "internal_error", "message": "Internal error", "event": event})

    # ─── Handlers ─────────────────────────────

    async def on_profile_view(self, conn: Connection, data: Any):
        target_id = _require_str(_field(data, "targetUserId", "userId"), "targetUserId")
        await self.users.record_profile_view(target_id, conn.user_id)

    async def on_join(self, conn: Connection, data: Any):
        conversation_id = _require_str(_field(data, "conversationId"), "conversationId")
        self.hub.join(conn, room_for(conversation_id))

    async def on_message(self, conn: Connection, data: Any):
        if not isinstance(data, dict):
            raise ValidationError("chat:message expects {conversationId, content, type}")
        conversation_id = _require_str(data.get("conversationId"), "conversationId")
        # Fan-out happens inside the store
        await self.chat.append_message(
            conversation_id, conn.user_id, data.get("content"), data.get("type") or "text"
        )

    async def on_typing(self, conn: Connection, data: Any):
        if not isinstance(data, dict):
            raise ValidationError("chat:typing expects {conversationId, isTyping}")
        conversation_id = _require_str(data.get("conversationId"), "conversationId")
        typing_users = self.hub.set_typing(conversation_id, conn.user_id, bool(data.get("isTyping")))
        await self.hub.emit_to_room(room_for(conversation_id), "chat:typing", {
            "conversationId": conversation_id,
            "userId":         conn.user_id,
            "typingUsers":    typing_users,
        }, exclude=conn)

    async def on_read(self, conn: Connection, data: Any):
        conversation_id = _require_str(_field(data, "conversationId"), "conversationId")
        await self.chat.mark_read(conversation_id, conn.user_id)


# ─────────────────────────────────────────────
# Router
# ─────────────────────────────────────────────
router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.app.state.gateway.serve(websocket)
