"""
Amora — models/chat.py
─────────────────────────────────────────────────────────────────
Conversation, message and message quota table definitions
+ dataclasses.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Optional


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
CHAT_SQL = """
    CREATE TABLE IF NOT EXISTS conversations (
        id              TEXT PRIMARY KEY,
        participant_key TEXT NOT NULL UNIQUE,   -- sorted ids joined by ','
        last_message_id TEXT,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS conversation_participants (
        conversation_id TEXT NOT NULL REFERENCES conversations(id),
        user_id         TEXT NOT NULL REFERENCES users(id),
        PRIMARY KEY (conversation_id, user_id)
    );

    CREATE INDEX IF NOT EXISTS idx_participants_user
        ON conversation_participants(user_id);

    CREATE TABLE IF NOT EXISTS messages (
        seq             INTEGER PRIMARY KEY AUTOINCREMENT,
        id              TEXT NOT NULL UNIQUE,
        conversation_id TEXT NOT NULL REFERENCES conversations(id),
        sender_id       TEXT NOT NULL REFERENCES users(id),
        content         TEXT NOT NULL,
        type            TEXT NOT NULL DEFAULT 'text' CHECK (type IN ('text', 'image')),
        timestamp       TEXT NOT NULL,
        read            INTEGER NOT NULL DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_messages_conversation
        ON messages(conversation_id, seq);

    CREATE TABLE IF NOT EXISTS message_quotas (
        user_id TEXT NOT NULL REFERENCES users(id),
        period  TEXT NOT NULL,                  -- YYYY-MM-DD (UTC)
        count   INTEGER NOT NULL DEFAULT 0 CHECK (count >= 0),
        PRIMARY KEY (user_id, period)
    );
"""


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────
class MessageType(str, Enum):
    TEXT  = "text"
    IMAGE = "image"


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class Message:
    id:              str
    conversation_id: str
    sender:          str
    content:         str
    type:            MessageType
    timestamp:       str
    read:            bool

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass
class Conversation:
    id:           str
    participants: List[str]
    created_at:   str
    updated_at:   str
    last_message: Optional[Message] = None
    messages:     List[Message] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id":           self.id,
            "participants": list(self.participants),
            "created_at":   self.created_at,
            "updated_at":   self.updated_at,
            "last_message": self.last_message.to_dict() if self.last_message else None,
            "messages":     [m.to_dict() for m in self.messages],
        }


@dataclass
class QuotaStatus:
    period:            str
    used:              int
    cap:               int
    remaining:         int
    coins:             int
    coins_per_message: int
    exempt:            bool
    can_send:          bool
