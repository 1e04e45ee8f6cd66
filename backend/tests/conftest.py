import itertools
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace
from typing import List, Optional, Sequence
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

# Configure an isolated SQLite database before importing calilights modules.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="calilights_pytest_"))

os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_SESSION_DIR / 'calilights_test.db'}")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

# Keep external integrations quiet during tests
os.environ.setdefault("USE_CELERY", "false")
os.environ.setdefault("RETRY_FAST_INITIAL_DELAY", "0")
os.environ.setdefault("RETRY_SLOW_INITIAL_DELAY", "0")

from calilights.database.models import Chain, ChainMembership, Entry, User  # noqa: E402
from calilights.services.database_service import database_service  # noqa: E402
from calilights.services.entry_service import entry_service  # noqa: E402
from calilights.services.generation_client import generation_client  # noqa: E402
from calilights.services.notification_service import notification_service  # noqa: E402


def pytest_sessionfinish(session, exitstatus):
    """Remove the temporary database directory after the test session."""
    shutil.rmtree(_SESSION_DIR, ignore_errors=True)


@pytest_asyncio.fixture
async def db():
    """Fresh schema for every test."""
    await database_service.drop_all()
    await database_service.init_db()
    yield database_service
    await database_service.drop_all()


@dataclass
class ChainSetup:
    chain: Chain
    admin: User
    members: List[User] = field(default_factory=list)

    @property
    def id(self) -> uuid.UUID:
        return self.chain.id

    @property
    def everyone(self) -> List[User]:
        return [self.admin] + self.members


class Factory:
    """Creates users, chains and analyzed entries directly in the store."""

    def __init__(self):
        self._counter = 0

    async def user(self, email: Optional[str] = None, is_active: bool = True) -> User:
        self._counter += 1
        async with database_service.get_session() as session:
            user = User(
                email=email or f"user{self._counter}@calilights.test",
                display_name=f"User {self._counter}",
                is_active=is_active,
            )
            session.add(user)
            await session.flush()
        return user

    async def chain(self, name: str = "Night Owls", members: int = 2) -> ChainSetup:
        admin = await self.user()
        others = [await self.user() for _ in range(members)]
        async with database_service.get_session() as session:
            chain = Chain(name=name)
            session.add(chain)
            await session.flush()
            session.add(ChainMembership(chain_id=chain.id, user_id=admin.id, role="admin"))
            for member in others:
                session.add(ChainMembership(chain_id=chain.id, user_id=member.id, role="member"))
        return ChainSetup(chain=chain, admin=admin, members=others)

    async def analyzed_entry(
        self,
        mission_id,
        user_id,
        hue: Optional[float] = None,
        scene_tags: Sequence[str] = (),
        object_tags: Sequence[str] = (),
        palette: Sequence[str] = (),
    ) -> Entry:
        async with database_service.get_session() as session:
            entry = await entry_service.upsert_entry(
                session, mission_id, user_id,
                {"media_url": f"https://cdn.calilights.test/{uuid.uuid4()}.jpg", "media_type": "photo"},
            )
        async with database_service.get_session() as session:
            await entry_service.apply_analysis(
                session,
                entry.id,
                {
                    "dominant_hue": hue,
                    "palette": list(palette),
                    "scene_tags": list(scene_tags),
                    "object_tags": list(object_tags),
                    "alt_text": None,
                },
            )
        return entry


@pytest.fixture
def factory(db) -> Factory:
    return Factory()


@pytest.fixture
def generator():
    """Generation service stand-in: submit hands out sequential operation handles."""
    counter = itertools.count(1)

    def _handle(request):
        return f"projects/calilights/locations/us-central1/operations/op-{next(counter)}"

    with patch.object(generation_client, "submit", new=AsyncMock(side_effect=_handle)) as submit, \
            patch.object(generation_client, "poll", new=AsyncMock()) as poll:
        yield SimpleNamespace(submit=submit, poll=poll)


@pytest.fixture
def notifier():
    """Records push notifications instead of sending them."""
    with patch.object(notification_service, "send", new=AsyncMock(return_value=True)) as send:
        yield send
