"""
Amora — chat.py
─────────────────────────────────────────────────────────────────
Conversation Store
- One conversation per unordered participant set (idempotent create)
- Ordered message log, lastMessage cache
- Participation + quota / coin rules on every append
- Read receipts (false → true only, never by the sender)
- Realtime fan-out after commit, admin alert on admin chats

Every mutation runs in one BEGIN IMMEDIATE transaction: the quota
unit, the message row and the lastMessage pointer commit together
or not at all, and events are only sent after the commit.

Routes:
  GET  /api/chat                         → my conversations
  POST /api/chat                         → create-or-get {participants}
  POST /api/chat/with/{user_id}          → create-or-get with one user
  POST /api/chat/admin                   → create-or-get with an admin
  GET  /api/chat/message-cost            → quota + coin status
  GET  /api/chat/{conversation_id}
  POST /api/chat/{conversation_id}/messages
  POST /api/chat/{conversation_id}/read
─────────────────────────────────────────────────────────────────
"""

import logging
import secrets
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel

from amora.alerts import AdminAlerts
from amora.core.database import get_db, transaction
from amora.core.errors import ForbiddenError, NotFoundError, QuotaExceededError, ValidationError
from amora.core.security import Principal, get_current_principal
from amora.models.chat import Conversation, Message, MessageType
from amora.models.user import User
from amora.quota import QuotaLedger
from amora.users import UserDirectory, row_to_user

logger = logging.getLogger("amora.chat")


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def _new_conversation_id() -> str:
    return "cnv_" + secrets.token_urlsafe(12)

def _new_message_id() -> str:
    return "msg_" + secrets.token_urlsafe(12)

def participant_key(user_ids: List[str]) -> str:
    return ",".join(sorted(set(user_ids)))

def _row_to_message(row) -> Message:
    return Message(
        id              = row["id"],
        conversation_id = row["conversation_id"],
        sender          = row["sender_id"],
        content         = row["content"],
        type            = MessageType(row["type"]),
        timestamp       = row["timestamp"],
        read            = bool(row["read"]),
    )


async def _load_users(db, user_ids: List[str]) -> Dict[str, User]:
    marks = ",".join("?" * len(user_ids))
    async with db.execute(f"SELECT * FROM users WHERE id IN ({marks})", list(user_ids)) as cur:
        rows = await cur.fetchall()
    users = {r["id"]: row_to_user(r) for r in rows}
    missing = [uid for uid in user_ids if uid not in users]
    if missing:
        raise NotFoundError(f"User not found: {missing[0]}")
    return users


async def _participants(db, conversation_id: str) -> List[str]:
    """Participant ids, NotFoundError if the conversation doesn't exist."""
    async with db.execute("SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)) as cur:
        if await cur.fetchone() is None:
            raise NotFoundError("Conversation not found")
    async with db.execute(
        "SELECT user_id FROM conversation_participants WHERE conversation_id = ? ORDER BY user_id",
        (conversation_id,)
    ) as cur:
        return [r["user_id"] async for r in cur]


async def _load_conversations(db, conversation_ids: List[str]) -> List[Conversation]:
    """Full conversations (participants + messages), in the order given."""
    if not conversation_ids:
        return []
    marks = ",".join("?" * len(conversation_ids))

    async with db.execute(f"SELECT * FROM conversations WHERE id IN ({marks})", conversation_ids) as cur:
        conv_rows = {r["id"]: r async for r in cur}

    participants: Dict[str, List[str]] = {cid: [] for cid in conversation_ids}
    async with db.execute(
        f"""SELECT conversation_id, user_id FROM conversation_participants
            WHERE conversation_id IN ({marks}) ORDER BY user_id""",
        conversation_ids
    ) as cur:
        async for r in cur:
            participants[r["conversation_id"]].append(r["user_id"])

    messages: Dict[str, List[Message]] = {cid: [] for cid in conversation_ids}
    async with db.execute(
        f"SELECT * FROM messages WHERE conversation_id IN ({marks}) ORDER BY seq",
        conversation_ids
    ) as cur:
        async for r in cur:
            messages[r["conversation_id"]].append(_row_to_message(r))

    result = []
    for cid in conversation_ids:
        row  = conv_rows[cid]
        msgs = messages[cid]
        last = next((m for m in reversed(msgs) if m.id == row["last_message_id"]), None)
        result.append(Conversation(
            id           = cid,
            participants = participants[cid],
            created_at   = row["created_at"],
            updated_at   = row["updated_at"],
            last_message = last,
            messages     = msgs,
        ))
    return result


# ─────────────────────────────────────────────
# ConversationStore
# ─────────────────────────────────────────────
class ConversationStore:

    def __init__(
        self,
        hub,
        users:   UserDirectory,
        quota:   QuotaLedger,
        alerts:  AdminAlerts,
        db_path: Optional[str] = None,
    ):
        self.hub     = hub
        self.users   = users
        self.quota   = quota
        self.alerts  = alerts
        self.db_path = db_path

    # ─── Create ────────────────────────────────

    async def create_or_get(self, participant_ids: List[str]) -> Conversation:
        """
        Return the conversation for exactly this participant set, creating
        it if needed. The first id is the requester: a free-tier requester
        is quota-checked before a new conversation is created.
        """
        ids = list(dict.fromkeys(participant_ids))
        if len(ids) < 2:
            raise ValidationError("A conversation needs at least two distinct participants")
        key = participant_key(ids)

        try:
            async with transaction(self.db_path) as db:
                users = await _load_users(db, ids)

                async with db.execute(
                    "SELECT id FROM conversations WHERE participant_key = ?", (key,)
                ) as cur:
                    row = await cur.fetchone()

                if row:
                    conversation_id = row["id"]
                else:
                    if not any(u.is_admin for u in users.values()):
                        await self.quota.check(db, users[ids[0]])

                    conversation_id = _new_conversation_id()
                    ts = _now()
                    await db.execute(
                        """INSERT INTO conversations (id, participant_key, created_at, updated_at)
                           VALUES (?,?,?,?)""",
                        (conversation_id, key, ts, ts)
                    )
                    await db.executemany(
                        "INSERT INTO conversation_participants (conversation_id, user_id) VALUES (?,?)",
                        [(conversation_id, uid) for uid in ids]
                    )
                    logger.info(f"Conversation created: {conversation_id} ({key})")

                conversation = (await _load_conversations(db, [conversation_id]))[0]
        except QuotaExceededError as e:
            await self.quota.notify_rejected(ids[0], e)
            raise

        return conversation

    async def create_with_admin(self, participant_ids: List[str]) -> Conversation:
        admin = await self.users.get_admin()
        ids = list(dict.fromkeys(participant_ids))
        if admin.id not in ids:
            ids.append(admin.id)
        return await self.create_or_get(ids)

    # ─── Messages ──────────────────────────────

    async def append_message(
        self,
        conversation_id: str,
        sender_id:       str,
        content:         str,
        type:            str = MessageType.TEXT.value,
    ) -> Message:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Message content cannot be empty")
        try:
            message_type = MessageType(type)
        except ValueError:
            raise ValidationError("Message type must be 'text' or 'image'")

        message_id = _new_message_id()

        try:
            async with transaction(self.db_path) as db:
                participants = await _participants(db, conversation_id)
                if sender_id not in participants:
                    raise ForbiddenError("Not authorized to send messages in this chat")

                users      = await _load_users(db, participants)
                with_admin = any(u.is_admin for u in users.values())
                if not with_admin:
                    await self.quota.consume(db, users[sender_id], ref_id=message_id)

                ts = _now()
                await db.execute(
                    """INSERT INTO messages (id, conversation_id, sender_id, content, type, timestamp, read)
                       VALUES (?,?,?,?,?,?,0)""",
                    (message_id, conversation_id, sender_id, content, message_type.value, ts)
                )
                await db.execute(
                    "UPDATE conversations SET last_message_id = ?, updated_at = ? WHERE id = ?",
                    (message_id, ts, conversation_id)
                )
        except QuotaExceededError as e:
            await self.quota.notify_rejected(sender_id, e)
            raise

        message = Message(
            id              = message_id,
            conversation_id = conversation_id,
            sender          = sender_id,
            content         = content,
            type            = message_type,
            timestamp       = ts,
            read            = False,
        )

        payload = {"conversationId": conversation_id, "message": message.to_dict()}
        for uid in participants:
            if uid != sender_id:
                await self.hub.emit_to_user(uid, "chat:message", payload)

        if with_admin:
            self.alerts.fire(content)

        return message

    async def mark_read(self, conversation_id: str, user_id: str) -> int:
        """
        Mark every unread message not sent by user_id as read.
        Returns how many changed. Nothing changed → no event.
        """
        async with transaction(self.db_path) as db:
            participants = await _participants(db, conversation_id)
            if user_id not in participants:
                raise ForbiddenError("Not a participant of this chat")

            cur = await db.execute(
                """UPDATE messages SET read = 1
                   WHERE conversation_id = ? AND sender_id != ? AND read = 0""",
                (conversation_id, user_id)
            )
            changed = cur.rowcount

        if changed:
            payload = {"conversationId": conversation_id, "userId": user_id}
            for uid in participants:
                if uid != user_id:
                    await self.hub.emit_to_user(uid, "chat:read", payload)
        return changed

    # ─── Read ──────────────────────────────────

    async def list_for_user(self, user_id: str) -> List[Conversation]:
        """Newest activity first, messages oldest first."""
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT c.id FROM conversations c
                   JOIN conversation_participants p ON p.conversation_id = c.id
                   WHERE p.user_id = ?
                   ORDER BY c.updated_at DESC, c.id""",
                (user_id,)
            ) as cur:
                ids = [r["id"] async for r in cur]
            return await _load_conversations(db, ids)

    async def get(self, conversation_id: str, user_id: str) -> Conversation:
        async with get_db(self.db_path) as db:
            participants = await _participants(db, conversation_id)
            if user_id not in participants:
                raise ForbiddenError("Not a participant of this chat")
            return (await _load_conversations(db, [conversation_id]))[0]


# ─────────────────────────────────────────────
# Router
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/chat", tags=["chat"])


class CreateConversationRequest(BaseModel):
    participants: List[str]


class SendMessageRequest(BaseModel):
    content: str
    type:    str = MessageType.TEXT.value


def _store(request: Request) -> ConversationStore:
    return request.app.state.chat


@router.get("")
async def list_conversations(request: Request, principal: Principal = Depends(get_current_principal)):
    conversations = await _store(request).list_for_user(principal.user_id)
    return [c.to_dict() for c in conversations]


@router.post("")
async def create_conversation(
    body: CreateConversationRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
):
    """The caller is always a participant, and always the requester."""
    ids = [principal.user_id, *[p for p in body.participants if p != principal.user_id]]
    conversation = await _store(request).create_or_get(ids)
    return conversation.to_dict()


@router.post("/with/{user_id}")
async def create_conversation_with(user_id: str, request: Request, principal: Principal = Depends(get_current_principal)):
    if user_id == principal.user_id:
        raise ValidationError("Cannot message yourself")
    conversation = await _store(request).create_or_get([principal.user_id, user_id])
    return conversation.to_dict()


@router.post("/admin")
async def create_conversation_with_admin(request: Request, principal: Principal = Depends(get_current_principal)):
    conversation = await _store(request).create_with_admin([principal.user_id])
    return conversation.to_dict()


@router.get("/message-cost")
async def message_cost(request: Request, principal: Principal = Depends(get_current_principal)):
    user = await request.app.state.users.get_user(principal.user_id)
    status = await request.app.state.quota.status(user)
    return asdict(status)


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, request: Request, principal: Principal = Depends(get_current_principal)):
    conversation = await _store(request).get(conversation_id, principal.user_id)
    return conversation.to_dict()


@router.post("/{conversation_id}/messages", status_code=201)
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
):
    message = await _store(request).append_message(
        conversation_id, principal.user_id, body.content, body.type
    )
    return message.to_dict()


@router.post("/{conversation_id}/read", status_code=204)
async def mark_read(conversation_id: str, request: Request, principal: Principal = Depends(get_current_principal)):
    await _store(request).mark_read(conversation_id, principal.user_id)
    return Response(status_code=204)
