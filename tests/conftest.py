import itertools

import pytest

from amora.alerts import AdminAlerts
from amora.chat import ConversationStore
from amora.core.config import cfg
from amora.core.database import init_all_tables
from amora.matching import MatchEngine
from amora.models.user import Role
from amora.quota import QuotaLedger
from amora.users import UserDirectory
from amora.wallet import CoinWallet

COMPLETE_PROFILE = {
    "last_name":     "Doe",
    "date_of_birth": "1995-04-12",
    "gender":        "woman",
    "interest":      "dating",
    "profile_image": "https://cdn.example.com/p.jpg",
    "bio":           "Coffee first",
    "about":         "Hiking, films, bad puns",
}


class RecordingHub:
    """Stands in for RealtimeHub: keeps every emit in order."""

    def __init__(self):
        self.events = []

    async def emit_to_user(self, user_id, event, data):
        self.events.append((user_id, event, data))

    def of(self, event):
        return [(uid, data) for uid, ev, data in self.events if ev == event]


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    monkeypatch.setattr(cfg, "FREE_MESSAGES_PER_DAY", 5)
    monkeypatch.setattr(cfg, "COINS_PER_MESSAGE", 1)
    monkeypatch.setattr(cfg, "COIN_OVERFLOW", True)
    monkeypatch.setattr(cfg, "RETRY_DELAY", 0.0)
    monkeypatch.setattr(cfg, "CALLMEBOT_PHONE", "")
    monkeypatch.setattr(cfg, "CALLMEBOT_API_KEY", "")
    monkeypatch.setattr(cfg, "AWS_ACCESS_KEY_ID", "")
    monkeypatch.setattr(cfg, "TWILIO_ACCOUNT_SID", "")


@pytest.fixture
async def db_path(tmp_path):
    path = str(tmp_path / "amora-test.db")
    await init_all_tables(path)
    return path


@pytest.fixture
def hub():
    return RecordingHub()


@pytest.fixture
def wallet(db_path):
    return CoinWallet(db_path)


@pytest.fixture
def users(hub, db_path):
    return UserDirectory(hub, db_path)


@pytest.fixture
def quota(hub, wallet, db_path):
    return QuotaLedger(hub, wallet, db_path)


@pytest.fixture
def alerts():
    return AdminAlerts()


@pytest.fixture
def chat(hub, users, quota, alerts, db_path):
    return ConversationStore(hub, users, quota, alerts, db_path)


@pytest.fixture
def matches(hub, db_path):
    return MatchEngine(hub, db_path)


@pytest.fixture
def make_user(users):
    counter = itertools.count(1)

    async def _make(role=Role.USER, is_premium=False, coins=0, complete=True, **extra):
        n = next(counter)
        profile = {**COMPLETE_PROFILE, "first_name": f"User{n}"} if complete else {}
        profile.update(extra)
        return await users.create_user(
            email=f"user{n}@example.com", role=role, is_premium=is_premium, coins=coins, **profile
        )

    return _make
