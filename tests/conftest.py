import os

# Set test environment variables before any source imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "test-token")
os.environ.setdefault("OWNER_CHAT_ID", "1000")

import pytest
from unittest.mock import AsyncMock, MagicMock

from maven.db import Database
from maven.notifications import InMemoryStore, NotificationDispatcher, NotificationStore, Permission


class FakeDelivery:
    """Records deliveries; can deny permission or fail selected titles."""

    def __init__(self, permission=Permission.GRANTED, fail_titles=()):
        self.permission = permission
        self.fail_titles = set(fail_titles)
        self.delivered = []
        self.permission_requests = 0

    def request_permission(self):
        self.permission_requests += 1
        return self.permission

    def deliver(self, title, body):
        if title in self.fail_titles:
            raise RuntimeError(f"delivery failed: {title}")
        self.delivered.append((title, body))


class FakeActivity:
    def __init__(self):
        self.records = []

    def record(self, action, details):
        self.records.append((action, details))


@pytest.fixture
def db(tmp_path):
    """Fresh Database instance using temp file (real SQLite, WAL mode)."""
    return Database(tmp_path / "test.db")


@pytest.fixture
def kv():
    return InMemoryStore()


@pytest.fixture
def delivery():
    return FakeDelivery()


@pytest.fixture
def activity():
    return FakeActivity()


@pytest.fixture
def dispatcher(kv, delivery, activity):
    return NotificationDispatcher(NotificationStore(kv), delivery, activity=activity)


@pytest.fixture
def mock_context(db, kv, delivery):
    """Mock Telegram context with the owner's DB and an in-memory dispatcher."""
    context = MagicMock()
    context.bot_data = {
        "db": db,
        "dispatcher": NotificationDispatcher(NotificationStore(kv), delivery, activity=db),
        "owner_chat_id": 1000,
    }
    context.args = []
    context.bot = AsyncMock()
    return context


@pytest.fixture
def make_update():
    """Factory creating mock Telegram Update with given chat_id and text."""
    def _factory(chat_id=1000, text="/start"):
        update = MagicMock()
        update.effective_chat.id = chat_id
        update.message = MagicMock()
        update.message.text = text
        update.message.reply_text = AsyncMock()
        return update
    return _factory
