"""Shared fixtures: every test gets its own in-memory database."""

from __future__ import annotations

import pytest
import pytest_asyncio

from orcascore.core.database import Database
from orcascore.core.events import EventBus


@pytest_asyncio.fixture
async def db():
    database = Database(":memory:")
    await database.initialize()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def empty_db():
    """Database without the seeded planning agent."""
    database = Database(":memory:", seed=False)
    await database.initialize()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def bus():
    events = EventBus()
    yield events
    events.clear_listeners()


class DictSettings:
    """In-memory stand-in for the settings store (``get`` raises ``KeyError``)."""

    def __init__(self, **values: str) -> None:
        self.values = dict(values)

    async def get(self, key: str) -> str:
        return self.values[key]


@pytest.fixture
def make_store():
    return DictSettings
