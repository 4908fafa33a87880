"""
Amora — quota.py
─────────────────────────────────────────────────────────────────
Quota Ledger: free-message allowance per user per day.

Policy:
  - Period = calendar day in UTC ("2025-01-31")
  - FREE_MESSAGES_PER_DAY free messages (default 5)
  - Admins and premium users bypass the ledger entirely
  - Once the day is used up, COINS_PER_MESSAGE coins are spent per
    message if COIN_OVERFLOW is on and the user can afford it
  - Otherwise → QuotaExceededError (+ chat:error to the user)

Rows are created lazily and incremented once per sent message,
free or coin-paid, so `used` can run past the cap. Old periods are
simply never read again.

All writes take the caller's transaction (`db`), so a rejected or
rolled-back message never leaves a counted quota unit behind.
─────────────────────────────────────────────────────────────────
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from amora.core.config import cfg
from amora.core.database import get_db
from amora.core.errors import QuotaExceededError
from amora.models.chat import QuotaStatus
from amora.models.user import User
from amora.wallet import CoinWallet, InsufficientCoinsError, REASON_MESSAGE

logger = logging.getLogger("amora.quota")

# consume() outcomes
CHARGED_EXEMPT = "exempt"
CHARGED_FREE   = "free"
CHARGED_COINS  = "coins"


def period_key(now: Optional[datetime] = None) -> str:
    """Quota bucket for `now` (UTC calendar day)."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).date().isoformat()


class QuotaLedger:

    def __init__(self, hub, wallet: CoinWallet, db_path: Optional[str] = None,
                 cap: int = None, coins_per_message: int = None):
        self.hub               = hub
        self.wallet            = wallet
        self.db_path           = db_path
        self.cap               = cap if cap is not None else cfg.FREE_MESSAGES_PER_DAY
        self.coins_per_message = coins_per_message if coins_per_message is not None else cfg.COINS_PER_MESSAGE

    # ─── Read ─────────────────────────────────

    async def _used(self, db, user_id: str, period: str) -> int:
        async with db.execute(
            "SELECT count FROM message_quotas WHERE user_id = ? AND period = ?",
            (user_id, period)
        ) as cur:
            row = await cur.fetchone()
        return int(row["count"]) if row else 0

    def _can_overflow(self, coins: int) -> bool:
        return cfg.COIN_OVERFLOW and coins >= self.coins_per_message

    async def status(self, user: User) -> QuotaStatus:
        period = period_key()
        async with get_db(self.db_path) as db:
            used = await self._used(db, user.id, period)
        remaining = max(0, self.cap - used)
        return QuotaStatus(
            period            = period,
            used              = used,
            cap               = self.cap,
            remaining         = remaining,
            coins             = user.coins,
            coins_per_message = self.coins_per_message,
            exempt            = user.is_quota_exempt,
            can_send          = user.is_quota_exempt or remaining > 0 or self._can_overflow(user.coins),
        )

    # ─── Check / consume (caller's transaction) ─

    async def check(self, db, user: User):
        """
        Raise QuotaExceededError if `user` could not send a message right
        now. Nothing is written.
        """
        if user.is_quota_exempt:
            return
        if await self._used(db, user.id, period_key()) < self.cap:
            return
        async with db.execute("SELECT coins FROM users WHERE id = ?", (user.id,)) as cur:
            row = await cur.fetchone()
        if row and self._can_overflow(int(row["coins"])):
            return
        raise QuotaExceededError()

    async def consume(self, db, user: User, ref_id: Optional[str] = None) -> str:
        """
        Count one message against today's allowance.
        Returns CHARGED_EXEMPT / CHARGED_FREE / CHARGED_COINS.
        """
        if user.is_quota_exempt:
            return CHARGED_EXEMPT

        period = period_key()
        await db.execute(
            """INSERT INTO message_quotas (user_id, period, count) VALUES (?,?,0)
               ON CONFLICT(user_id, period) DO NOTHING""",
            (user.id, period)
        )
        cur = await db.execute(
            """UPDATE message_quotas SET count = count + 1
               WHERE user_id = ? AND period = ? AND count < ?""",
            (user.id, period, self.cap)
        )
        if cur.rowcount == 1:
            return CHARGED_FREE

        if cfg.COIN_OVERFLOW:
            try:
                await self.wallet.debit_in(db, user.id, self.coins_per_message, REASON_MESSAGE, ref_id)
            except InsufficientCoinsError:
                pass
            else:
                # paid messages are counted too: count >= cap from here on
                await db.execute(
                    "UPDATE message_quotas SET count = count + 1 WHERE user_id = ? AND period = ?",
                    (user.id, period)
                )
                return CHARGED_COINS

        logger.info(f"Quota exceeded: user={user.id} period={period} cap={self.cap}")
        raise QuotaExceededError()

    async def notify_rejected(self, user_id: str, exc: QuotaExceededError):
        """chat:error to the user whose message was refused."""
        await self.hub.emit_to_user(user_id, "chat:error", exc.to_dict())
