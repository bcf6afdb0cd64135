import itertools
import os
import sys
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# Configure test environment before the package reads it
os.environ['DATABASE_URL'] = 'sqlite+aiosqlite:///./test_campuslink.db'
os.environ.pop('REDIS_URL', None)
os.environ['MEDIA_DIR'] = tempfile.mkdtemp(prefix='campuslink-media-')
os.environ['BACKEND_RETRY_DELAY'] = '0'

# Ensure the package root is on sys.path when pytest changes CWD to this tests dir
HERE = Path(__file__).resolve()
PKG_ROOT = HERE.parents[2]
if str(PKG_ROOT) not in sys.path:
    sys.path.insert(0, str(PKG_ROOT))

from campuslink import crud  # noqa: E402
from campuslink.auth import create_access_token  # noqa: E402
from campuslink.models import Base, engine  # noqa: E402
from campuslink.realtime import hub  # noqa: E402
from campuslink.storage import ObjectStorage  # noqa: E402


class FakeStorage(ObjectStorage):
    """Keeps uploads in memory"""

    def __init__(self):
        self.objects = {}

    async def upload_object(self, key, data, content_type):
        self.objects[key] = (data, content_type)
        return f'https://files.example.com/{key}'


@pytest.fixture(autouse=True)
def clean_hub():
    yield
    hub._subscriptions.clear()


@pytest_asyncio.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await hub.stop_dispatcher()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def make_profile(db):
    counter = itertools.count(1)

    async def _make(full_name=None, **fields):
        n = next(counter)
        return await crud.create_profile(
            email=f'student{n}@uni.example.com',
            full_name=full_name or f'Student {n}',
            **fields,
        )
    return _make


@pytest.fixture
def auth():
    def _headers(user_id):
        return {'Authorization': f'Bearer {create_access_token({"id": user_id})}'}
    return _headers


@pytest_asyncio.fixture
async def client(db, storage):
    from campuslink.main import app
    from campuslink.storage import get_storage

    app.dependency_overrides[get_storage] = lambda: storage
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def befriend(a, b):
    """Create an accepted relationship a -> b"""
    from campuslink import friendship
    fr = await friendship.send_request(a.id, b.id)
    return await friendship.respond(b.id, fr.id, 'accepted')


@pytest.fixture
def make_friends():
    return befriend
