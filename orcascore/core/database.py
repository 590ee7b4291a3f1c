"""SQLite storage handle built on SQLAlchemy 2.0 async Core with aiosqlite.

Tables are declared with SQLAlchemy Core (no ORM). One ``Database`` instance is
created at process start and passed explicitly to every component that needs
storage, so tests can hand each case its own in-memory database.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import AsyncIterator

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    func,
    select,
)
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from orcascore.core.logging import get_logger

logger = get_logger("core.database")

PROMPTS_DIR = Path(__file__).resolve().parents[1] / "agents" / "prompts"

DEFAULT_PLANNING_MODEL = "claude-sonnet-4-5"

metadata = MetaData()

agents = Table(
    "agents",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", Text, nullable=False),
    Column("model_name", Text, nullable=False),
    Column("agent_prompt", Text, nullable=False),
    # NULL for worker agents, "planning" for the orchestrator
    Column("system_role", Text, nullable=True),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
    Index("idx_agents_system_role", "system_role"),
)

subtasks = Table(
    "subtasks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("task_id", Integer, nullable=False),
    Column("title", Text, nullable=False),
    Column("description", Text),
    Column("agent_id", Integer),
    Column("completed", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
    Index("idx_subtasks_task_id", "task_id"),
    Index("idx_subtasks_agent_id", "agent_id"),
)

agent_edit_locks = Table(
    "agent_edit_locks",
    metadata,
    # Primary key: at most one lock per task
    Column("task_id", Integer, primary_key=True, autoincrement=False),
    Column(
        "locked_by",
        Text,
        CheckConstraint("locked_by IN ('agent', 'user')"),
        nullable=False,
    ),
    Column("locked_at", DateTime, server_default=func.current_timestamp()),
    Column("original_content", Text),
    Index("idx_agent_edit_locks_locked_by", "locked_by"),
)

settings = Table(
    "settings",
    metadata,
    Column("key", Text, primary_key=True),
    Column("value", Text, nullable=False),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
)


class DatabaseError(Exception):
    """Raised when the storage handle is used before ``initialize()``."""


class Database:
    """Async engine owner with read/write connection helpers.

    Args:
        path: SQLite file path, or ``":memory:"`` for an isolated in-process
              database. All connections then share one underlying handle, so
              ``read()`` and ``write()`` take turns on it one block at a time.
        seed: Insert the default planning agent when none exists.
    """

    def __init__(self, path: str, seed: bool = True) -> None:
        self.path = path
        self.seed = seed
        self.engine: AsyncEngine | None = None
        # Set only for the shared in-memory handle
        self._shared_lock: asyncio.Lock | None = None

    @property
    def url(self) -> str:
        return f"sqlite+aiosqlite:///{self.path}"

    async def initialize(self) -> None:
        """Create the engine, the tables, and the seed rows."""
        logger.info("Initializing database at %s", self.path)
        engine_kwargs: dict = {"connect_args": {"check_same_thread": False}}

        if self.path == ":memory:":
            engine_kwargs["poolclass"] = StaticPool
            self._shared_lock = asyncio.Lock()
        else:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_async_engine(self.url, **engine_kwargs)

        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

        if self.seed:
            await self._seed_planning_agent()

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self._shared_lock = None
            logger.info("Database closed")

    @contextlib.asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        """Hold the shared-handle lock; a no-op for file databases."""
        if self._shared_lock is None:
            yield
            return
        async with self._shared_lock:
            yield

    @contextlib.asynccontextmanager
    async def read(self) -> AsyncIterator[AsyncConnection]:
        """Connection for read-only queries."""
        if self.engine is None:
            raise DatabaseError("Database not initialized")
        async with self._exclusive(), self.engine.connect() as conn:
            yield conn

    @contextlib.asynccontextmanager
    async def write(self) -> AsyncIterator[AsyncConnection]:
        """Connection wrapped in a transaction; rolled back if the block raises."""
        if self.engine is None:
            raise DatabaseError("Database not initialized")
        async with self._exclusive(), self.engine.begin() as conn:
            yield conn

    async def _seed_planning_agent(self) -> None:
        async with self.write() as conn:
            existing = await conn.execute(
                select(agents.c.id).where(agents.c.system_role == "planning").limit(1)
            )
            if existing.first() is not None:
                return
            prompt = (PROMPTS_DIR / "planning_agent.txt").read_text(encoding="utf-8")
            await conn.execute(
                agents.insert().values(
                    name="Task Planning Agent",
                    model_name=DEFAULT_PLANNING_MODEL,
                    agent_prompt=prompt,
                    system_role="planning",
                )
            )
        logger.info("Seeded default planning agent (model=%s)", DEFAULT_PLANNING_MODEL)
