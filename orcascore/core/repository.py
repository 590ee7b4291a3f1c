"""Agent and subtask queries.

Rows come back as pydantic models. Worker-agent loading tolerates NULL
columns (older rows written by the front-end may be incomplete) and falls back
to placeholder values rather than failing the whole load.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from pydantic import BaseModel
from sqlalchemy import select

from orcascore.core.database import Database, agents, subtasks
from orcascore.core.logging import get_logger

logger = get_logger("core.repository")


class Agent(BaseModel):
    """A configured persona that subtasks can be assigned to."""

    id: int
    name: str
    model_name: str
    agent_prompt: str
    system_role: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Agent:
        def _text(key: str, default: str) -> str:
            value = row.get(key)
            return default if value is None else str(value)

        return cls(
            id=row.get("id") or 0,
            name=_text("name", "Unknown"),
            model_name=_text("model_name", "unknown"),
            agent_prompt=_text("agent_prompt", ""),
            system_role=row.get("system_role"),
        )


class Subtask(BaseModel):
    id: int
    task_id: int
    title: str
    description: str | None = None
    agent_id: int | None = None
    completed: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AgentRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def get_planning_agent(self) -> Agent | None:
        """Return the agent whose ``system_role`` is ``planning``, if any."""
        query = (
            select(agents.c.id, agents.c.name, agents.c.model_name, agents.c.agent_prompt, agents.c.system_role)
            .where(agents.c.system_role == "planning")
            .order_by(agents.c.id)
            .limit(1)
        )
        async with self.db.read() as conn:
            row = (await conn.execute(query)).mappings().first()
        return Agent.from_row(row) if row is not None else None

    async def list_worker_agents(self) -> list[Agent]:
        """Agents without a system role, ordered by id."""
        query = (
            select(agents.c.id, agents.c.name, agents.c.model_name, agents.c.agent_prompt)
            .where(agents.c.system_role.is_(None))
            .order_by(agents.c.id)
        )
        async with self.db.read() as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [Agent.from_row(row) for row in rows]

    async def list_agents(self) -> list[Agent]:
        query = select(
            agents.c.id, agents.c.name, agents.c.model_name, agents.c.agent_prompt, agents.c.system_role
        ).order_by(agents.c.id)
        async with self.db.read() as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [Agent.from_row(row) for row in rows]

    async def create_agent(
        self,
        name: str,
        model_name: str,
        agent_prompt: str,
        system_role: str | None = None,
    ) -> Agent:
        async with self.db.write() as conn:
            result = await conn.execute(
                agents.insert().values(
                    name=name,
                    model_name=model_name,
                    agent_prompt=agent_prompt,
                    system_role=system_role,
                )
            )
            agent_id = result.inserted_primary_key[0]
        logger.info("Created agent %s (%s)", agent_id, name)
        return Agent(
            id=agent_id,
            name=name,
            model_name=model_name,
            agent_prompt=agent_prompt,
            system_role=system_role,
        )


class SubtaskRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, task_id: int, title: str, description: str, agent_id: int) -> int:
        """Insert one incomplete subtask and return its id."""
        async with self.db.write() as conn:
            result = await conn.execute(
                subtasks.insert().values(
                    task_id=task_id,
                    title=title,
                    description=description,
                    agent_id=agent_id,
                    completed=False,
                )
            )
            return result.inserted_primary_key[0]

    async def list_for_task(self, task_id: int) -> list[Subtask]:
        query = select(subtasks).where(subtasks.c.task_id == task_id).order_by(subtasks.c.id)
        async with self.db.read() as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [Subtask(**dict(row)) for row in rows]
