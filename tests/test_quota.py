from datetime import datetime, timedelta, timezone

import pytest

from amora.core.config import cfg
from amora.core.database import transaction
from amora.core.errors import QuotaExceededError
from amora.models.user import Role
from amora.quota import CHARGED_COINS, CHARGED_EXEMPT, CHARGED_FREE, period_key


async def _consume(quota, db_path, user, ref_id=None):
    async with transaction(db_path) as db:
        return await quota.consume(db, user, ref_id=ref_id)


def test_period_key_is_utc_day():
    late_evening = datetime(2025, 1, 31, 23, 30, tzinfo=timezone(timedelta(hours=-2)))
    assert period_key(late_evening) == "2025-02-01"
    assert period_key(datetime(2025, 1, 31, 0, 0, tzinfo=timezone.utc)) == "2025-01-31"


async def test_free_user_gets_cap_then_rejected(quota, make_user, db_path):
    user = await make_user()

    for _ in range(5):
        assert await _consume(quota, db_path, user) == CHARGED_FREE

    with pytest.raises(QuotaExceededError) as exc:
        await _consume(quota, db_path, user)
    assert exc.value.code == "quota_exceeded"
    assert exc.value.status == 402

    status = await quota.status(user)
    assert status.used == 5
    assert status.remaining == 0
    assert status.can_send is False


async def test_rejected_consume_leaves_count_unchanged(quota, make_user, db_path):
    user = await make_user()
    for _ in range(5):
        await _consume(quota, db_path, user)
    for _ in range(3):
        with pytest.raises(QuotaExceededError):
            await _consume(quota, db_path, user)

    assert (await quota.status(user)).used == 5


async def test_premium_and_admin_are_exempt(quota, make_user, db_path):
    premium = await make_user(is_premium=True)
    admin   = await make_user(role=Role.ADMIN)

    for _ in range(8):
        assert await _consume(quota, db_path, premium) == CHARGED_EXEMPT
        assert await _consume(quota, db_path, admin) == CHARGED_EXEMPT

    assert (await quota.status(premium)).used == 0
    assert (await quota.status(premium)).exempt is True


async def test_coins_cover_overflow(quota, wallet, users, make_user, db_path):
    user = await make_user(coins=2)
    for _ in range(5):
        await _consume(quota, db_path, user)

    assert await _consume(quota, db_path, user, ref_id="m6") == CHARGED_COINS
    assert await _consume(quota, db_path, user, ref_id="m7") == CHARGED_COINS
    with pytest.raises(QuotaExceededError):
        await _consume(quota, db_path, user, ref_id="m8")

    assert await wallet.get_balance(user.id) == 0
    ledger = await wallet.get_ledger(user.id)
    assert sorted(e.ref_id for e in ledger) == ["m6", "m7"]
    assert all(e.delta == -1 for e in ledger)

    status = await quota.status(await users.get_user(user.id))
    assert status.used == 7
    assert status.remaining == 0
    assert status.can_send is False


async def test_overflow_disabled_ignores_coins(quota, wallet, make_user, db_path, monkeypatch):
    monkeypatch.setattr(cfg, "COIN_OVERFLOW", False)
    user = await make_user(coins=10)
    for _ in range(5):
        await _consume(quota, db_path, user)

    with pytest.raises(QuotaExceededError):
        await _consume(quota, db_path, user)
    assert await wallet.get_balance(user.id) == 10


async def test_check_does_not_count(quota, make_user, db_path):
    user = await make_user()
    async with transaction(db_path) as db:
        for _ in range(10):
            await quota.check(db, user)

    assert (await quota.status(user)).used == 0


async def test_check_rejects_when_exhausted(quota, make_user, db_path):
    user = await make_user()
    for _ in range(5):
        await _consume(quota, db_path, user)

    async with transaction(db_path) as db:
        with pytest.raises(QuotaExceededError):
            await quota.check(db, user)


async def test_consume_rolls_back_with_transaction(quota, make_user, db_path):
    user = await make_user()
    with pytest.raises(RuntimeError):
        async with transaction(db_path) as db:
            await quota.consume(db, user)
            raise RuntimeError("insert failed")

    assert (await quota.status(user)).used == 0


async def test_notify_rejected_emits_chat_error(quota, hub, make_user):
    user = await make_user()
    await quota.notify_rejected(user.id, QuotaExceededError())

    assert hub.of("chat:error") == [(user.id, {
        "code":    "quota_exceeded",
        "message": "Daily message limit reached. Add coins to your account to send more messages.",
    })]
