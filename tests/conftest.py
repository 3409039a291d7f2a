import os
import pathlib
import sys
import tempfile
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# The app and the engine read their settings at import time, so the test
# secret and a scratch database must be in place before tasklens is imported.
os.environ.setdefault('SECRET_KEY', 'test-secret-key-for-unit-tests')
os.environ['DATABASE_URL'] = 'sqlite+aiosqlite:///' + os.path.join(tempfile.gettempdir(), 'tasklens_tests.db')

# Reduce SQLAlchemy logger verbosity during tests
import logging as _logging
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'aiosqlite'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

# ensure project root is on PYTHONPATH for test runs
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from tasklens import main
from tasklens.auth import hash_password
from tasklens.cache import TaggedCache
from tasklens.db import async_session, reset_db
from tasklens.gateway import MutationGateway
from tasklens.models import User
from tasklens.reader import TaskReader
from tasklens.store import RecordStore

# Wednesday afternoon, UTC. Every time-dependent test reads "now" from here.
NOW = datetime(2026, 3, 11, 15, 0, tzinfo=timezone.utc)


async def create_user(username: str, password: str = 'pw', tz: str | None = None) -> User:
    async with async_session() as sess:
        u = User(username=username, password_hash=hash_password(password), timezone=tz)
        sess.add(u)
        await sess.commit()
        await sess.refresh(u)
        return u


@pytest.fixture
def now():
    return NOW


@pytest_asyncio.fixture
async def db():
    await reset_db()
    main.cache.clear()
    yield


@pytest_asyncio.fixture
async def user(db):
    return await create_user('alice', 'alicepass')


@pytest_asyncio.fixture
async def other_user(db):
    return await create_user('bob', 'bobpass')


@pytest.fixture
def store(db):
    return RecordStore()


@pytest.fixture
def cache():
    return TaggedCache(ttl_seconds=60)


@pytest.fixture
def gateway(store, cache):
    return MutationGateway(store, cache)


@pytest.fixture
def reader(store, cache, now):
    return TaskReader(store, cache, clock=lambda: now)


@pytest_asyncio.fixture
async def anon_client(db, monkeypatch, now):
    monkeypatch.setattr(main.reader, '_clock', lambda: now)
    transport = ASGITransport(app=main.app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def client(anon_client, user):
    resp = await anon_client.post('/auth/token', json={'username': 'alice', 'password': 'alicepass'})
    assert resp.status_code == 200
    anon_client.headers.update({'Authorization': f"Bearer {resp.json()['access_token']}"})
    yield anon_client
