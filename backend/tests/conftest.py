"""Stable shared fixtures for tests.

Design goal: avoid async fixture loop injection and keep test boundaries explicit.
Service tests build their own SQLite file inside the test coroutine.
"""
import os
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, patch

import pytest

# Must be set before importing app modules.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["APP_AUTH_BEARER_TOKENS"] = "test_token"
os.environ["APP_AUTH_TOKEN_USER_MAP"] = "admin_token:900"
os.environ["TELEGRAM_BOT_TOKEN"] = "test_bot_token"
os.environ["TELEGRAM_WEBHOOK_SECRET"] = "test_secret"
os.environ["TELEGRAM_BOT_USERNAME"] = "tt_reg_bot"
os.environ["TELEGRAM_ADMIN_IDS"] = "900,901"
os.environ["PENDING_PASSWORD_KEY"] = "test_pending_key"
os.environ["TEAMTALK_SERVER_NAME"] = "Test Server"
os.environ["TEAMTALK_HOST"] = "tt.example.org"

from api.main import app, get_db
from common.db import build_engine, build_session_factory
from common.directory import USERTYPE_ADMIN, USERTYPE_DEFAULT, AccountSummary
from common.errors import DirectoryUnavailable, UsernameTaken
from common.models import Base


class FakeDirectory:
    """In-memory directory implementing the DirectoryClient interface."""

    def __init__(self, usernames=()):
        self.accounts: Dict[str, AccountSummary] = {
            name: AccountSummary(name, USERTYPE_DEFAULT, "") for name in usernames
        }
        self.created: List[dict] = []
        self.unavailable = False
        self.create_error: Optional[Exception] = None
        self.listing: Optional[List[AccountSummary]] = None

    async def account_exists(self, username: str) -> bool:
        if self.unavailable:
            raise DirectoryUnavailable("directory down")
        return username in self.accounts

    async def list_accounts(self) -> List[AccountSummary]:
        if self.unavailable:
            raise DirectoryUnavailable("directory down")
        if self.listing is not None:
            return list(self.listing)
        return list(self.accounts.values())

    async def create_account(self, username, password, nickname, is_admin, note=""):
        if self.unavailable:
            raise DirectoryUnavailable("directory down")
        if self.create_error is not None:
            raise self.create_error
        if username in self.accounts:
            raise UsernameTaken(username)
        self.accounts[username] = AccountSummary(username, USERTYPE_ADMIN if is_admin else USERTYPE_DEFAULT, note)
        self.created.append({
            "username": username, "password": password, "nickname": nickname, "is_admin": is_admin, "note": note,
        })

    async def delete_account(self, username: str) -> bool:
        if self.unavailable:
            raise DirectoryUnavailable("directory down")
        return self.accounts.pop(username, None) is not None


class FakeNotifier:
    def __init__(self):
        self.user_messages: List[tuple] = []
        self.admin_messages: List[tuple] = []

    async def notify_user(self, chat_id, text, reply_markup=None):
        self.user_messages.append((chat_id, text, reply_markup))

    async def notify_admins(self, text, reply_markup=None, exclude=None):
        self.admin_messages.append((text, reply_markup, list(exclude or [])))


async def create_test_db(path):
    """Creates a fresh schema in a SQLite file and returns (engine, session_factory)."""
    engine = build_engine(f"sqlite+aiosqlite:///{path}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, build_session_factory(engine)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "users.db")


@pytest.fixture
def temp_files(tmp_path):
    directory = tmp_path / "temp_files"
    with patch("common.config.settings.TEMP_FILES_DIR", str(directory)):
        yield directory


@pytest.fixture
def fake_directory():
    return FakeDirectory()


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


@pytest.fixture
def mock_redis():
    r = AsyncMock()
    r.rpush = AsyncMock(return_value=1)
    r.get = AsyncMock(return_value=None)
    r.setex = AsyncMock(return_value=True)
    r.delete = AsyncMock(return_value=1)
    r.ping = AsyncMock(return_value=True)
    r.incr = AsyncMock(return_value=1)
    r.expire = AsyncMock(return_value=True)
    r.ttl = AsyncMock(return_value=60)
    r.llen = AsyncMock(return_value=0)
    return r


@pytest.fixture
def mock_send():
    with patch("api.main.send_message", new_callable=AsyncMock) as m, \
            patch("api.bot.send_message", new=m), \
            patch("common.telegram.send_message", new=m):
        m.return_value = {"ok": True}
        yield m


@pytest.fixture
def mock_send_document():
    with patch("api.bot.send_document", new_callable=AsyncMock) as m:
        m.return_value = {"ok": True}
        yield m


@pytest.fixture
def mock_db():
    db = AsyncMock()
    result = AsyncMock()
    result.rowcount = 1
    db.execute = AsyncMock(return_value=result)
    db.commit = AsyncMock(return_value=None)
    return db


@pytest.fixture
def app_no_db(mock_redis, mock_send, mock_db):
    async def _stub_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = _stub_get_db
    with patch("api.main.redis_client", mock_redis):
        yield app
    app.dependency_overrides.clear()
