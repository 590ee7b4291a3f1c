"""AI planning agent: turns one task into subtasks through a tool-use conversation.

Flow of one run::

    Initializing ─▶ AnalyzingLoop(i) ─▶ Finalizing ─▶ Done
                          │
                          └─(any error)─▶ Fallback(k) ─▶ Done

The model may only change state by calling ``create_subtask``; free text in
its replies is ignored for control flow. Turns are strictly sequential since
every request carries the tool results of the previous one.

If the AI path fails for any reason, ``plan_task_with_fallback`` writes a
fixed three-step plan instead. That is the only recovery: the AI path is
never retried and the fallback never falls back again.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from infra.chat import ChatMessage
from orcascore.agents.models import (
    ChatResponse,
    PlanningProgress,
    PlanningResult,
    ToolResult,
    ToolUseBlock,
)
from orcascore.agents.tools import CREATE_SUBTASK, planning_tools
from orcascore.core.database import Database
from orcascore.core.events import PLANNING_PROGRESS, EventBus, EventDeliveryError
from orcascore.core.logging import get_logger
from orcascore.core.repository import Agent, AgentRepository, SubtaskRepository

logger = get_logger("agents.planning")

MAX_ITERATIONS = 20
MAX_TOKENS = 4096

# Subtask count at which the "creating" progress bar tops out
_EXPECTED_SUBTASKS = 5

INITIAL_REQUEST = (
    "Please analyze this task and create a comprehensive breakdown using the create_subtask tool. "
    "Create 3-7 subtasks that cover the complete workflow, and assign each to the most appropriate agent."
)

FALLBACK_STEPS: tuple[tuple[str, str], ...] = (
    (
        "Research and plan approach",
        "Gather requirements, research best practices, and develop a comprehensive execution plan",
    ),
    (
        "Execute primary deliverables",
        "Complete the main task deliverables according to the researched plan and requirements",
    ),
    (
        "Review and finalize output",
        "Quality check, refinements, and final validation of deliverables",
    ),
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PlanningError(Exception):
    """Base class for failures of a planning run."""


class PlanningAgentNotFoundError(PlanningError):
    """No agent with ``system_role = 'planning'`` exists. Not retried."""


class PlanningProtocolError(PlanningError):
    """The model answered with something the loop cannot act on."""


class MaxIterationsExceededError(PlanningError):
    pass


class FallbackPlanningError(PlanningError):
    """The deterministic plan could not be written either."""


class ToolInputError(ValueError):
    """A tool call carried missing or invalid arguments."""


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class ChatBackend(Protocol):
    """What the planning loop needs from :class:`infra.chat.ChatGateway`."""

    async def resolve_model(self, friendly_name: str) -> str:
        ...

    async def complete(
        self,
        model: str,
        messages: list[ChatMessage],
        system: str | None = None,
        max_tokens: int = MAX_TOKENS,
        tools: list[dict[str, Any]] | None = None,
    ) -> str:
        ...


def _require_text(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ToolInputError(f"Missing {key}")
    return value


def _require_int(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool):
        raise ToolInputError(f"Missing {key}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise ToolInputError(f"Missing {key}")


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class PlanningAgent:
    """One planning run for one task. Build it with :meth:`load`."""

    def __init__(
        self,
        db: Database,
        task_id: int,
        planner: Agent,
        workers: list[Agent],
        gateway: ChatBackend,
        events: EventBus,
        max_iterations: int = MAX_ITERATIONS,
        max_tokens: int = MAX_TOKENS,
    ) -> None:
        self.task_id = task_id
        self.planner = planner
        self.workers = workers
        self._worker_ids = {agent.id for agent in workers}
        self._subtasks = SubtaskRepository(db)
        self._gateway = gateway
        self._events = events
        self.max_iterations = max_iterations
        self.max_tokens = max_tokens

    @classmethod
    async def load(
        cls,
        db: Database,
        task_id: int,
        gateway: ChatBackend,
        events: EventBus,
        max_iterations: int = MAX_ITERATIONS,
        max_tokens: int = MAX_TOKENS,
    ) -> PlanningAgent:
        """Read the planning agent and the worker pool from storage.

        Raises:
            PlanningAgentNotFoundError: no agent carries ``system_role = 'planning'``.
        """
        repo = AgentRepository(db)
        planner = await repo.get_planning_agent()
        if planner is None:
            raise PlanningAgentNotFoundError(
                "Planning agent not found in database. "
                "Please ensure a planning agent exists with system_role = 'planning'."
            )
        workers = await repo.list_worker_agents()
        logger.info(
            "Planning agent loaded for task %s (model=%s, %d worker agents)",
            task_id, planner.model_name, len(workers),
        )
        return cls(
            db, task_id, planner, workers, gateway, events,
            max_iterations=max_iterations, max_tokens=max_tokens,
        )

    # ── Prompt & tools ────────────────────────────────────────────────

    def tool_schemas(self) -> list[dict[str, Any]]:
        return planning_tools()

    def build_system_prompt(self, task_title: str, task_description: str | None) -> str:
        agents_context = "\n\n".join(
            f"**Agent ID {agent.id}: {agent.name} (Model: {agent.model_name})**\n{agent.agent_prompt}\n"
            for agent in self.workers
        )
        return (
            f"{self.planner.agent_prompt}\n\n"
            "## Current Planning Task\n\n"
            f"**Task ID**: {self.task_id}\n"
            f"**Title**: {task_title}\n"
            f"**Description**: {task_description or 'No description provided'}\n\n"
            "## Available Agents for Assignment\n\n"
            f"{agents_context}\n\n"
            "## Instructions\n\n"
            "Analyze this task and create appropriate subtasks using the create_subtask tool. "
            "Each subtask should have a clear title, detailed description, and be assigned to "
            "the most suitable agent based on their capabilities."
        )

    # ── Tool execution ────────────────────────────────────────────────

    async def execute_create_subtask(self, tool_input: dict[str, Any]) -> str:
        """Validate a ``create_subtask`` call and insert the subtask.

        ``task_id`` in the input is ignored; subtasks always belong to this run's task.
        """
        title = _require_text(tool_input, "title")
        description = _require_text(tool_input, "description")
        agent_id = _require_int(tool_input, "agent_id")
        if agent_id not in self._worker_ids:
            raise ToolInputError(f"Invalid agent_id: {agent_id}")

        subtask_id = await self._subtasks.create(self.task_id, title, description, agent_id)
        logger.info("Task %s: created subtask %s '%s' (agent %s)", self.task_id, subtask_id, title, agent_id)
        return f"Successfully created subtask: '{title}'"

    async def _run_tool(self, call: ToolUseBlock) -> ToolResult:
        if call.name != CREATE_SUBTASK:
            logger.warning("Task %s: model requested unknown tool '%s'", self.task_id, call.name)
            return ToolResult(tool_use_id=call.id, content=f"Unknown tool: {call.name}", is_error=True)
        try:
            content = await self.execute_create_subtask(call.input)
        except ToolInputError as exc:
            logger.warning("Task %s: create_subtask rejected: %s", self.task_id, exc)
            return ToolResult(tool_use_id=call.id, content=f"Tool execution error: {exc}", is_error=True)
        except SQLAlchemyError as exc:
            logger.error("Task %s: failed to store subtask: %s", self.task_id, exc)
            return ToolResult(
                tool_use_id=call.id,
                content=f"Tool execution error: Failed to create subtask: {exc}",
                is_error=True,
            )
        return ToolResult(tool_use_id=call.id, content=content)

    # ── Progress ──────────────────────────────────────────────────────

    async def emit_progress(
        self,
        status: str,
        message: str,
        progress: float,
        current_step: str | None = None,
    ) -> None:
        """Publish ``task-planning-progress``. A UI that cannot receive it does not stop the run."""
        payload = PlanningProgress(
            task_id=self.task_id,
            status=status,
            message=message,
            progress=progress,
            current_step=current_step,
        )
        try:
            await self._events.emit(PLANNING_PROGRESS, payload.model_dump())
        except EventDeliveryError as exc:
            logger.warning("Task %s: progress event not delivered: %s", self.task_id, exc)

    # ── AI planning ───────────────────────────────────────────────────

    def _parse_response(self, raw: str) -> ChatResponse:
        try:
            return ChatResponse.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            raise PlanningProtocolError(f"Failed to parse model response: {exc}") from exc

    async def plan_task(self, task_title: str, task_description: str | None = None) -> PlanningResult:
        """Let the model create subtasks through ``create_subtask`` calls.

        Raises:
            PlanningError: protocol violation or iteration cap reached.
            ProviderConfigError / ProviderRequestError: provider unreachable or misconfigured.
        """
        await self.emit_progress("analyzing", "Initializing AI planning agent...", 0.1, "Initialization")

        system_prompt = self.build_system_prompt(task_title, task_description)
        tools = self.tool_schemas()
        model = await self._gateway.resolve_model(self.planner.model_name)
        conversation: list[ChatMessage] = [ChatMessage(role="user", content=INITIAL_REQUEST)]
        subtasks_created = 0
        iterations = 0

        await self.emit_progress("planning", "AI agent analyzing task...", 0.2, "Analysis")

        while True:
            iterations += 1
            if iterations > self.max_iterations:
                raise MaxIterationsExceededError(
                    f"Planning exceeded maximum iterations ({self.max_iterations})"
                )

            raw = await self._gateway.complete(
                model,
                conversation,
                system=system_prompt,
                max_tokens=self.max_tokens,
                tools=tools,
            )
            response = self._parse_response(raw)
            logger.debug("Task %s: turn %d stop_reason=%s", self.task_id, iterations, response.stop_reason)

            if response.stop_reason == "end_turn":
                break
            if response.stop_reason != "tool_use":
                raise PlanningProtocolError(f"Unexpected stop reason: {response.stop_reason}")

            calls = response.tool_calls
            if not calls:
                raise PlanningProtocolError("Agent requested tool_use but provided no tool calls")

            results: list[ToolResult] = []
            for call in calls:
                result = await self._run_tool(call)
                results.append(result)
                if result.is_error:
                    continue
                subtasks_created += 1
                await self.emit_progress(
                    "creating",
                    f"Created subtask {subtasks_created} of estimated 3-7...",
                    0.2 + min(0.6, 0.6 * subtasks_created / _EXPECTED_SUBTASKS),
                    "Subtask Creation",
                )

            conversation.append(
                ChatMessage(role="assistant", content=[block.model_dump() for block in response.content])
            )
            conversation.append(ChatMessage(role="user", content=[r.to_block() for r in results]))

        await self.emit_progress("finalizing", "Planning complete, generating summary...", 0.9, "Finalization")
        logger.info("Task %s: AI planning created %d subtasks in %d turns", self.task_id, subtasks_created, iterations)
        return PlanningResult(
            success=True,
            subtasks_created=subtasks_created,
            message=f"Successfully created {subtasks_created} subtasks using AI planning agent",
        )

    # ── Fallback ──────────────────────────────────────────────────────

    async def fallback_planning(self) -> PlanningResult:
        """Write :data:`FALLBACK_STEPS`, assigning workers round-robin."""
        if not self.workers:
            raise FallbackPlanningError("No agents available for fallback planning")

        logger.warning("Task %s: using fallback planning (AI agent unavailable)", self.task_id)
        total = len(FALLBACK_STEPS)
        subtasks_created = 0
        for index, (title, description) in enumerate(FALLBACK_STEPS):
            agent = self.workers[index % len(self.workers)]
            try:
                await self.execute_create_subtask(
                    {"title": title, "description": description, "agent_id": agent.id}
                )
            except ToolInputError as exc:
                raise FallbackPlanningError(str(exc)) from exc
            except SQLAlchemyError as exc:
                raise FallbackPlanningError(f"Failed to create subtask: {exc}") from exc
            subtasks_created += 1
            await self.emit_progress(
                "fallback_creating",
                f"Fallback: Created subtask {subtasks_created}/{total}",
                0.3 + 0.5 * subtasks_created / total,
                "Fallback Planning",
            )

        return PlanningResult(
            success=True,
            subtasks_created=subtasks_created,
            message=f"Created {subtasks_created} subtasks using fallback planning (AI agent unavailable)",
        )

    async def plan_task_with_fallback(
        self,
        task_title: str,
        task_description: str | None = None,
    ) -> PlanningResult:
        try:
            return await self.plan_task(task_title, task_description)
        except Exception as exc:
            logger.error("Task %s: AI planning failed: %s", self.task_id, exc, exc_info=True)

        await self.emit_progress("fallback", "AI planning unavailable, using fallback...", 0.3, "Fallback")
        return await self.fallback_planning()
