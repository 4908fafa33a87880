"""
Amora — core/database.py
─────────────────────────────────────────────────────────────────
Single place for:
  - DB connection helpers (get_db, transaction)
  - One init_all_tables() call on startup

Table SQL lives next to the dataclasses in models/.

Usage:
    from amora.core.database import get_db, transaction, init_all_tables

    # In main.py startup:
    await init_all_tables()

    # Reads / single statement writes:
    async with get_db() as db:
        await db.execute(...)

    # Multi-step writes (check-then-act, counters, appends):
    async with transaction() as db:
        ...   # committed on exit, rolled back on any exception
─────────────────────────────────────────────────────────────────
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import aiosqlite

from amora.core.config import cfg
from amora.models.user import USERS_SQL
from amora.models.chat import CHAT_SQL

logger = logging.getLogger("amora.database")

BUSY_TIMEOUT = 10.0   # seconds a writer waits for the RESERVED lock


# ─────────────────────────────────────────────
# Connection helpers
# ─────────────────────────────────────────────
@asynccontextmanager
async def get_db(db_path: Optional[str] = None):
    """
    Use instead of aiosqlite.connect() everywhere.

    async with get_db() as db:
        await db.execute(...)
    """
    async with aiosqlite.connect(db_path or cfg.DB_PATH, timeout=BUSY_TIMEOUT) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys = ON")
        yield db


@asynccontextmanager
async def transaction(db_path: Optional[str] = None):
    """
    Write transaction on a dedicated connection.

    BEGIN IMMEDIATE takes the write lock up front, so concurrent
    writers queue here instead of interleaving their reads and writes.
    """
    async with aiosqlite.connect(
        db_path or cfg.DB_PATH, timeout=BUSY_TIMEOUT, isolation_level=None
    ) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys = ON")
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.execute("ROLLBACK")
            raise
        else:
            await db.execute("COMMIT")


# ─────────────────────────────────────────────
# Init, once on startup
# ─────────────────────────────────────────────
async def init_all_tables(db_path: Optional[str] = None):
    """
    Creates all tables in correct order.
    Safe to call multiple times (IF NOT EXISTS).

    users → relations / matches / views / coin ledger → chats → messages → quotas
    """
    path = db_path or cfg.DB_PATH
    async with aiosqlite.connect(path) as db:
        await db.execute("PRAGMA journal_mode = WAL")
        await db.execute("PRAGMA foreign_keys = ON")

        await db.executescript(USERS_SQL)
        logger.info("✓ Users, relations & coin tables")

        await db.executescript(CHAT_SQL)
        logger.info("✓ Chat, message & quota tables")

        await db.commit()

    logger.info(f"✅ Database ready → {path}")
