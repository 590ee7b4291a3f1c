"""Key/value user settings persisted in the ``settings`` table.

Values set from the front-end Settings screen (provider choice, API keys,
base URLs). Last write wins; every write is a single upsert statement.
"""

from __future__ import annotations

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from orcascore.core.database import Database, settings
from orcascore.core.logging import get_logger

logger = get_logger("core.settings_store")


class SettingNotFoundError(KeyError):
    """Raised by ``SettingsStore.get`` for a key that was never set."""

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"Setting '{self.key}' not found"


class SettingsStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def get(self, key: str) -> str:
        async with self.db.read() as conn:
            row = (await conn.execute(select(settings.c.value).where(settings.c.key == key))).first()
        if row is None:
            raise SettingNotFoundError(key)
        return row[0]

    async def get_or_default(self, key: str, default: str) -> str:
        try:
            return await self.get(key)
        except SettingNotFoundError:
            return default

    async def set(self, key: str, value: str) -> None:
        stmt = sqlite_insert(settings).values(key=key, value=value)
        # created_at keeps its original value on conflict
        stmt = stmt.on_conflict_do_update(
            index_elements=[settings.c.key],
            set_={"value": stmt.excluded.value, "updated_at": func.current_timestamp()},
        )
        async with self.db.write() as conn:
            await conn.execute(stmt)
        logger.debug("Setting '%s' updated", key)

    async def delete(self, key: str) -> None:
        async with self.db.write() as conn:
            await conn.execute(delete(settings).where(settings.c.key == key))
