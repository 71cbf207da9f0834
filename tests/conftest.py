import sys
import pathlib
import os
import tempfile
import warnings
import logging as _logging
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# Point the engine at a throwaway SQLite file before recurtask.db is imported.
_TMP_DIR = tempfile.mkdtemp(prefix='recurtask-tests-')
os.environ.setdefault('DATABASE_URL', f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'test.db')}")

try:
    from sqlalchemy.exc import SAWarning
    warnings.filterwarnings('ignore', category=SAWarning)
except ImportError:
    pass

# Reduce SQLAlchemy logger verbosity during tests
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'sqlmodel'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

# ensure project root is on PYTHONPATH for test runs
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from recurtask.main import app
from recurtask.db import reset_db, async_session
from recurtask.models import Task


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def ensure_db():
    # every test starts from empty tables
    await reset_db()


@pytest_asyncio.fixture
async def client(ensure_db):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def make_task(ensure_db):
    """Insert a Task row directly and return it.

        parent = await make_task(recurrence_rule='FREQ=DAILY', due_date=utc(2025, 1, 1, 9))
    """
    async def _make(**fields):
        defaults = {
            'title': 'Water the plants',
            'dashboard_id': 'dash-1',
            'created_by_id': 'user-1',
        }
        defaults.update(fields)
        task = Task(**defaults)
        async with async_session() as sess:
            sess.add(task)
            await sess.commit()
            await sess.refresh(task)
        return task

    return _make
