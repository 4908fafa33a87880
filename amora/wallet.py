"""
Amora — wallet.py
─────────────────────────────────────────────────────────────────
Coin Wallet Service
- Balance lives on users.coins, every change is written to coin_ledger
- Atomic debit (conditional UPDATE, never read-modify-write)
- Idempotent credit via ref_id
- Manual admin credits with an auditable ref_id

Usage:
    wallet = CoinWallet(db_path)
    await wallet.admin_credit(user_id, 20, "goodwill", admin_id)

    # inside someone else's transaction (message send):
    await wallet.debit_in(db, user_id, 1, REASON_MESSAGE, message_id)
─────────────────────────────────────────────────────────────────
"""

import logging
import secrets
from datetime import datetime, timezone
from typing import List, Optional

from amora.core.database import get_db, transaction
from amora.core.errors import ConflictError, NotFoundError, QuotaExceededError, ValidationError
from amora.models.user import CoinEntry

logger = logging.getLogger("amora.wallet")


# Debit reasons
REASON_MESSAGE = "message_overflow"

# Credit reasons
REASON_ADMIN   = "admin_credit"


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class InsufficientCoinsError(QuotaExceededError):
    """Not enough coins to send this message."""
    code = "insufficient_coins"


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def _new_id() -> str:
    return secrets.token_urlsafe(12)

def _row_to_entry(r) -> CoinEntry:
    return CoinEntry(
        id            = r["id"],
        user_id       = r["user_id"],
        delta         = int(r["delta"]),
        reason        = r["reason"],
        ref_id        = r["ref_id"],
        balance_after = int(r["balance_after"]),
        created_at    = r["created_at"],
    )


# ─────────────────────────────────────────────
# CoinWallet
# ─────────────────────────────────────────────
class CoinWallet:
    """
    All coin operations.
    `*_in` methods run on the caller's transaction, the rest open their own.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    # ─── Read ─────────────────────────────────

    async def get_balance(self, user_id: str) -> int:
        async with get_db(self.db_path) as db:
            async with db.execute("SELECT coins FROM users WHERE id = ?", (user_id,)) as cur:
                row = await cur.fetchone()
        if not row:
            raise NotFoundError("User not found")
        return int(row["coins"])

    async def get_ledger(self, user_id: str, limit: int = 50, offset: int = 0) -> List[CoinEntry]:
        """Paginated ledger history for a user, newest first."""
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT * FROM coin_ledger
                   WHERE user_id = ?
                   ORDER BY created_at DESC
                   LIMIT ? OFFSET ?""",
                (user_id, limit, offset)
            ) as cur:
                rows = await cur.fetchall()
        return [_row_to_entry(r) for r in rows]

    # ─── Write ────────────────────────────────

    async def _check_duplicate(self, db, ref_id: Optional[str]):
        if not ref_id:
            return
        async with db.execute("SELECT 1 FROM coin_ledger WHERE ref_id = ?", (ref_id,)) as cur:
            if await cur.fetchone() is not None:
                raise ConflictError(f"ref_id '{ref_id}' already processed")

    async def _write_ledger(self, db, user_id: str, delta: int, reason: str, ref_id: Optional[str]) -> int:
        async with db.execute("SELECT coins FROM users WHERE id = ?", (user_id,)) as cur:
            row = await cur.fetchone()
        balance_after = int(row["coins"])
        await db.execute(
            """INSERT INTO coin_ledger
               (id, user_id, delta, reason, ref_id, balance_after, created_at)
               VALUES (?,?,?,?,?,?,?)""",
            (_new_id(), user_id, delta, reason, ref_id, balance_after, _now())
        )
        return balance_after

    async def credit_in(self, db, user_id: str, amount: int, reason: str, ref_id: Optional[str] = None) -> int:
        if amount <= 0:
            raise ValidationError(f"Credit amount must be positive, got {amount}")
        await self._check_duplicate(db, ref_id)

        cur = await db.execute(
            "UPDATE users SET coins = coins + ?, updated_at = ? WHERE id = ?",
            (amount, _now(), user_id)
        )
        if cur.rowcount == 0:
            raise NotFoundError("User not found")
        return await self._write_ledger(db, user_id, +amount, reason, ref_id)

    async def debit_in(self, db, user_id: str, amount: int, reason: str, ref_id: Optional[str] = None) -> int:
        """
        Deduct coins on the caller's transaction.
        Raises InsufficientCoinsError if balance < amount.
        """
        if amount <= 0:
            raise ValidationError(f"Debit amount must be positive, got {amount}")
        await self._check_duplicate(db, ref_id)

        cur = await db.execute(
            "UPDATE users SET coins = coins - ?, updated_at = ? WHERE id = ? AND coins >= ?",
            (amount, _now(), user_id, amount)
        )
        if cur.rowcount == 0:
            raise InsufficientCoinsError()
        return await self._write_ledger(db, user_id, -amount, reason, ref_id)

    async def credit(self, user_id: str, amount: int, reason: str, ref_id: Optional[str] = None) -> int:
        """
        Add coins. Returns new balance.
        Raises ConflictError if ref_id already processed.
        """
        async with transaction(self.db_path) as db:
            balance = await self.credit_in(db, user_id, amount, reason, ref_id)
        logger.info(f"Coins credited: user={user_id} +{amount} ({reason}) → {balance}")
        return balance

    async def admin_credit(self, user_id: str, amount: int, note: str, admin_id: str) -> int:
        """Manual credit by an admin, always with a unique auditable ref_id."""
        ref_id = f"admin_{admin_id}_{_new_id()}"
        return await self.credit(user_id, amount, reason=f"{REASON_ADMIN}:{note}", ref_id=ref_id)
