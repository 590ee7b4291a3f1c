"""Detached planning runs started from the UI.

``start`` returns as soon as the run is scheduled; the outcome reaches the
front-end only through ``task-planning-complete`` (and the progress events the
agent emits along the way).
"""

from __future__ import annotations

import asyncio

from orcascore.agents.models import PlanningComplete
from orcascore.agents.planning_agent import ChatBackend, PlanningAgent
from orcascore.core.config import Settings
from orcascore.core.database import Database
from orcascore.core.events import PLANNING_COMPLETE, EventBus, EventDeliveryError
from orcascore.core.logging import get_logger

logger = get_logger("agents.runner")

STARTED = "Task planning started"


class PlanningRunner:
    def __init__(self, db: Database, gateway: ChatBackend, events: EventBus, settings: Settings) -> None:
        self.db = db
        self.gateway = gateway
        self.events = events
        self.settings = settings
        self._runs: set[asyncio.Task] = set()

    @property
    def active_runs(self) -> int:
        return sum(1 for task in self._runs if not task.done())

    def start(self, task_id: int, task_title: str, task_description: str | None = None) -> str:
        """Schedule a planning run for ``task_id`` and return immediately."""
        run = asyncio.create_task(
            self._run(task_id, task_title, task_description),
            name=f"planning:{task_id}",
        )
        self._runs.add(run)
        run.add_done_callback(self._runs.discard)
        logger.info("Planning started for task %s: %s", task_id, task_title)
        return STARTED

    async def shutdown(self) -> None:
        """Cancel every in-flight run and wait for it to unwind."""
        pending = [task for task in self._runs if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Cancelled %d planning run(s)", len(pending))
        self._runs.clear()

    async def _run(self, task_id: int, task_title: str, task_description: str | None) -> None:
        try:
            agent = await PlanningAgent.load(
                self.db,
                task_id,
                self.gateway,
                self.events,
                max_iterations=self.settings.planning_max_iterations,
                max_tokens=self.settings.planning_max_tokens,
            )
            result = await agent.plan_task_with_fallback(task_title, task_description)
        except asyncio.CancelledError:
            logger.info("Planning for task %s cancelled", task_id)
            raise
        except Exception as exc:
            logger.error("Planning failed for task %s: %s", task_id, exc, exc_info=True)
            complete = PlanningComplete(
                task_id=task_id,
                success=False,
                message=f"Task planning failed: {exc}",
                error=str(exc),
            )
        else:
            logger.info("Planning finished for task %s: %s", task_id, result.message)
            complete = PlanningComplete(
                task_id=task_id,
                success=result.success,
                message=result.message,
                subtasks_created=result.subtasks_created,
            )

        try:
            await self.events.emit(PLANNING_COMPLETE, complete.model_dump(exclude_none=True))
        except EventDeliveryError as exc:
            logger.warning("Task %s: completion event not delivered: %s", task_id, exc)
