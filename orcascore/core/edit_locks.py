"""Advisory per-task edit locks shared by the human editor and the planning agent.

Only one actor may edit a task's notes at a time. The lock row is keyed on
``task_id`` so acquisition is a single conflict-ignoring insert: two
concurrent acquirers cannot both win.

Usage
-----
::

    locks = EditLockManager(db)
    if await locks.acquire(7, "agent", original_content=notes):
        try:
            ...  # edit
        finally:
            await locks.release(7)

Abandoned locks are removed by ``cleanup_stale`` (run periodically by the
sweeper started in the web lifespan).
"""

from __future__ import annotations

from pydantic import BaseModel
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from orcascore.core.database import Database, agent_edit_locks
from orcascore.core.logging import get_logger

logger = get_logger("core.edit_locks")

LOCK_OWNERS = ("agent", "user")


class InvalidLockOwnerError(ValueError):
    """Raised when ``locked_by`` is not one of :data:`LOCK_OWNERS`."""


class LockStatus(BaseModel):
    is_locked: bool
    locked_by: str | None = None


class EditLockManager:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def acquire(self, task_id: int, locked_by: str, original_content: str | None = None) -> bool:
        """Take the lock for ``task_id``.

        Returns:
            ``True`` if the lock was created, ``False`` if the task was already locked.

        Raises:
            InvalidLockOwnerError: ``locked_by`` is not ``"agent"`` or ``"user"``.
        """
        if locked_by not in LOCK_OWNERS:
            raise InvalidLockOwnerError("locked_by must be 'agent' or 'user'")

        stmt = (
            sqlite_insert(agent_edit_locks)
            .values(task_id=task_id, locked_by=locked_by, original_content=original_content)
            .on_conflict_do_nothing(index_elements=[agent_edit_locks.c.task_id])
        )
        async with self.db.write() as conn:
            result = await conn.execute(stmt)

        acquired = result.rowcount == 1
        if acquired:
            logger.info("Edit lock on task %s acquired by %s", task_id, locked_by)
        else:
            logger.debug("Edit lock on task %s already held; %s refused", task_id, locked_by)
        return acquired

    async def release(self, task_id: int) -> None:
        """Drop the lock for ``task_id``. Releasing an unlocked task is a no-op."""
        async with self.db.write() as conn:
            await conn.execute(delete(agent_edit_locks).where(agent_edit_locks.c.task_id == task_id))

    async def check(self, task_id: int) -> LockStatus:
        query = select(agent_edit_locks.c.locked_by).where(agent_edit_locks.c.task_id == task_id)
        async with self.db.read() as conn:
            row = (await conn.execute(query)).first()
        if row is None:
            return LockStatus(is_locked=False)
        return LockStatus(is_locked=True, locked_by=row[0])

    async def get_original_content(self, task_id: int) -> str | None:
        """Content snapshot captured when the lock was taken, if any."""
        query = select(agent_edit_locks.c.original_content).where(agent_edit_locks.c.task_id == task_id)
        async with self.db.read() as conn:
            row = (await conn.execute(query)).first()
        return row[0] if row is not None else None

    async def force_release_all(self) -> int:
        async with self.db.write() as conn:
            result = await conn.execute(delete(agent_edit_locks))
        count = result.rowcount
        logger.warning("Force-released %d edit lock(s)", count)
        return count

    async def cleanup_stale(self, timeout_minutes: int) -> int:
        """Delete every lock held for longer than ``timeout_minutes``.

        Returns:
            Number of locks removed.
        """
        if timeout_minutes < 0:
            raise ValueError("timeout_minutes must be >= 0")

        expires_at = func.datetime(agent_edit_locks.c.locked_at, f"+{int(timeout_minutes)} minutes")
        stmt = delete(agent_edit_locks).where(expires_at < func.datetime("now"))
        async with self.db.write() as conn:
            result = await conn.execute(stmt)

        count = result.rowcount
        if count:
            logger.info("Removed %d stale edit lock(s) older than %d min", count, timeout_minutes)
        return count
