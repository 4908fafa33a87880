"""
Amora — models/user.py
─────────────────────────────────────────────────────────────────
User, relation (like / dislike / match), profile view and coin
ledger table definitions + dataclasses.
Structure only, no logic.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
USERS_SQL = """
    CREATE TABLE IF NOT EXISTS users (
        id            TEXT PRIMARY KEY,
        email         TEXT UNIQUE,
        phone         TEXT UNIQUE,
        role          TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
        first_name    TEXT,
        last_name     TEXT,
        date_of_birth TEXT,
        gender        TEXT CHECK (gender IN ('man', 'woman')),
        interest      TEXT CHECK (interest IN ('dating', 'hookup')),
        profile_image TEXT,
        bio           TEXT,
        about         TEXT,
        coins         INTEGER NOT NULL DEFAULT 0 CHECK (coins >= 0),
        is_premium    INTEGER NOT NULL DEFAULT 0,
        is_online     INTEGER NOT NULL DEFAULT 0,
        last_seen     TEXT,
        created_at    TEXT NOT NULL,
        updated_at    TEXT NOT NULL,
        CHECK (email IS NOT NULL OR phone IS NOT NULL)
    );

    -- likes / dislikes / matches: one row per ordered pair,
    -- so a target sits in at most one of the three sets
    CREATE TABLE IF NOT EXISTS user_relations (
        user_id     TEXT NOT NULL REFERENCES users(id),
        target_id   TEXT NOT NULL REFERENCES users(id),
        kind        TEXT NOT NULL CHECK (kind IN ('like', 'dislike', 'match')),
        created_at  TEXT NOT NULL,
        PRIMARY KEY (user_id, target_id)
    );

    CREATE INDEX IF NOT EXISTS idx_relations_target
        ON user_relations(target_id, kind);

    CREATE TABLE IF NOT EXISTS matches (
        id          TEXT PRIMARY KEY,
        user_lo     TEXT NOT NULL REFERENCES users(id),
        user_hi     TEXT NOT NULL REFERENCES users(id),
        created_at  TEXT NOT NULL,
        UNIQUE (user_lo, user_hi)
    );

    CREATE TABLE IF NOT EXISTS profile_views (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id     TEXT NOT NULL REFERENCES users(id),
        viewer_id   TEXT NOT NULL REFERENCES users(id),
        created_at  TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_views_user
        ON profile_views(user_id, created_at DESC);

    CREATE TABLE IF NOT EXISTS coin_ledger (
        id            TEXT PRIMARY KEY,
        user_id       TEXT NOT NULL REFERENCES users(id),
        delta         INTEGER NOT NULL,
        reason        TEXT NOT NULL,
        ref_id        TEXT,
        balance_after INTEGER NOT NULL,
        created_at    TEXT NOT NULL
    );

    CREATE UNIQUE INDEX IF NOT EXISTS idx_coin_ledger_ref_id
        ON coin_ledger(ref_id)
        WHERE ref_id IS NOT NULL;

    CREATE INDEX IF NOT EXISTS idx_coin_ledger_user
        ON coin_ledger(user_id, created_at DESC);
"""


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────
class Role(str, Enum):
    USER  = "user"
    ADMIN = "admin"


class RelationKind(str, Enum):
    LIKE    = "like"
    DISLIKE = "dislike"
    MATCH   = "match"


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class User:
    id:            str
    email:         Optional[str]
    phone:         Optional[str]
    role:          Role
    first_name:    Optional[str]
    last_name:     Optional[str]
    date_of_birth: Optional[str]
    gender:        Optional[str]      # "man" | "woman"
    interest:      Optional[str]      # "dating" | "hookup"
    profile_image: Optional[str]
    bio:           Optional[str]
    about:         Optional[str]
    coins:         int
    is_premium:    bool
    is_online:     bool
    last_seen:     Optional[str]
    created_at:    str
    updated_at:    str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_quota_exempt(self) -> bool:
        return self.is_admin or self.is_premium


@dataclass
class ProfileView:
    viewer_id:  str
    timestamp:  str


@dataclass
class CoinEntry:
    id:            str
    user_id:       str
    delta:         int
    reason:        str
    ref_id:        Optional[str]
    balance_after: int
    created_at:    str
