import os

# Keep tests free of tracer providers and instrumentation side effects
os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest_asyncio

from models import DatabaseQueue


@pytest_asyncio.fixture
async def db(tmp_path):
    """A started DatabaseQueue on a temporary SQLite file."""
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    yield queue
    await queue.stop()
