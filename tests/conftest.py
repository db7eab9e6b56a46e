"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file and fake transport / generation
clients, wired together through build_services exactly as in production.
"""

import asyncio
import hashlib
import hmac
import os
from datetime import datetime, timezone

import pytest

os.environ.setdefault("WEBHOOK_SECRET", "test-secret")

# Clear settings cache before any app imports to ensure test env vars are used
from chatdigest.config import Settings, get_settings  # noqa: E402
get_settings.cache_clear()

from chatdigest import storage  # noqa: E402
from chatdigest.clients import ChatInfo  # noqa: E402
from chatdigest.models import Schedule  # noqa: E402
from chatdigest.services import build_services  # noqa: E402

TEST_WEBHOOK_SECRET = "test-secret"
SELF_ID = "15550001111@c.us"


def run(coro):
    """Drive a coroutine to completion from a sync test."""
    return asyncio.run(coro)


def compute_signature(body: str, secret: str = TEST_WEBHOOK_SECRET) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class FakeTransport:
    """In-memory stand-in for the chat session."""

    def __init__(self, self_id: str = SELF_ID):
        self._self_id = self_id
        self.sent = []
        self.chats = []
        self.logouts = 0
        self.reconnects = 0
        self.send_error = None
        self.events = []

    @property
    def self_id(self) -> str:
        return self._self_id

    async def send_message(self, target: str, text: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((target, text))
        self.events.append("send")

    async def list_chats(self):
        return list(self.chats)

    async def logout(self) -> None:
        self.logouts += 1
        self.events.append("logout")

    async def reconnect(self) -> None:
        self.reconnects += 1
        self.events.append("reconnect")


class FakeGenerationClient:
    """
    Returns a canned digest per credential; credentials mapped to an
    exception raise it instead.
    """

    def __init__(self, results=None, default="DIGEST"):
        self.results = results or {}
        self.default = default
        self.calls = []

    async def generate(self, prompt: str, credential: str) -> str:
        self.calls.append((credential, prompt))
        result = self.results.get(credential, self.default)
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.db'}",
        WEBHOOK_SECRET=TEST_WEBHOOK_SECRET,
        LOG_LEVEL="INFO",
        GEMINI_API_KEYS="k1,k2,k3",
        TRANSPORT_SELF_ID=SELF_ID,
        SCHEDULE_TIMEZONE="UTC",
        TICK_ENABLED=False,
        OWNER_ID="owner-1",
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def generator_client() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture
def services(settings, transport, generator_client):
    """Services wired to fakes, with all tables created."""
    svc = build_services(settings, transport=transport, generation_client=generator_client)
    storage.init_db(svc.engine)
    yield svc
    storage.Base.metadata.drop_all(bind=svc.engine)
    svc.engine.dispose()


@pytest.fixture
def db(services):
    with services.session_factory() as session:
        yield session


@pytest.fixture
def add_schedule(db):
    """Factory inserting a schedule row."""

    def _add(time_of_day="09:00", target_type="self", target_id=None, last_run_at=None,
             is_active=True, owner_id="owner-1", schedule_id=None):
        extra = {"id": schedule_id} if schedule_id else {}
        schedule = Schedule(
            **extra,
            time_of_day=time_of_day,
            target_type=target_type,
            target_id=target_id,
            last_run_at=last_run_at,
            is_active=is_active,
            owner_id=owner_id,
        )
        db.add(schedule)
        db.commit()
        db.refresh(schedule)
        return schedule

    return _add


@pytest.fixture
def add_message(db):
    """Factory inserting a message through the repository."""
    counter = {"n": 0}

    def _add(chat_id="120363@g.us", sender="Alice", content="hello", timestamp=None, transport_id=None):
        counter["n"] += 1
        storage.save_message(
            db,
            transport_id=transport_id or f"msg-{counter['n']}",
            chat_id=chat_id,
            sender=sender,
            content=content,
            timestamp=timestamp or utc(2025, 1, 15, 8, 0),
        )

    return _add


@pytest.fixture
def group_chats():
    return [
        ChatInfo(id="1@g.us", display_name="Alpha", is_group=True),
        ChatInfo(id="2@g.us", display_name="   ", is_group=True),
        ChatInfo(id="3@c.us", display_name="Bob", is_group=False),
        ChatInfo(id="4@g.us", display_name="Zeta", is_group=True),
    ]
