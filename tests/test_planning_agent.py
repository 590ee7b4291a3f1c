"""Tests for the planning agent's tool-use loop and fallback plan.

The chat backend is scripted: each call to ``complete`` pops the next
response (a dict is returned as JSON, an exception is raised).
"""

from __future__ import annotations

import json
import logging

import pytest
import pytest_asyncio
from sqlalchemy import text as sa_text

from infra.chat import ChatGatewayError
from orcascore.agents.models import PlanningProgress
from orcascore.agents.planning_agent import (
    FALLBACK_STEPS,
    INITIAL_REQUEST,
    FallbackPlanningError,
    MaxIterationsExceededError,
    PlanningAgent,
    PlanningAgentNotFoundError,
    PlanningProtocolError,
)
from orcascore.core.events import PLANNING_PROGRESS
from orcascore.core.repository import AgentRepository, SubtaskRepository

RESOLVED = "claude-sonnet-4-5-20250929"


class ScriptedGateway:
    def __init__(self, responses=(), repeat=None):
        self.responses = list(responses)
        self.repeat = repeat
        self.requests = []
        self.resolved = []

    async def resolve_model(self, friendly_name):
        self.resolved.append(friendly_name)
        return RESOLVED

    async def complete(self, model, messages, system=None, max_tokens=4096, tools=None):
        self.requests.append(
            {"model": model, "messages": list(messages), "system": system, "max_tokens": max_tokens, "tools": tools}
        )
        item = self.responses.pop(0) if self.responses else self.repeat
        if isinstance(item, Exception):
            raise item
        return json.dumps(item)


def tool_use(*calls):
    return {
        "content": [{"type": "text", "text": "Creating subtasks."}]
        + [
            {"type": "tool_use", "id": call_id, "name": "create_subtask", "input": payload}
            for call_id, payload in calls
        ],
        "stop_reason": "tool_use",
        "usage": {"input_tokens": 100, "output_tokens": 50},
    }


def end_turn(text="Done."):
    return {"content": [{"type": "text", "text": text}], "stop_reason": "end_turn"}


@pytest_asyncio.fixture
async def workers(db):
    repo = AgentRepository(db)
    writer = await repo.create_agent("Writer", "claude-haiku-4-5", "You write clear drafts.")
    reviewer = await repo.create_agent("Reviewer", "claude-sonnet-4-5", "You review drafts.")
    return [writer, reviewer]


@pytest.fixture
def progress(bus):
    received = []

    async def listener(event):
        if event.name == PLANNING_PROGRESS:
            received.append(PlanningProgress(**event.payload))

    bus.subscribe(listener)
    return received


async def _agent(db, bus, gateway, task_id=42, **kwargs):
    return await PlanningAgent.load(db, task_id, gateway, bus, **kwargs)


class TestLoad:
    @pytest.mark.asyncio
    async def test_missing_planning_agent(self, empty_db, bus):
        with pytest.raises(PlanningAgentNotFoundError, match="Planning agent not found in database"):
            await PlanningAgent.load(empty_db, 1, ScriptedGateway(), bus)

    @pytest.mark.asyncio
    async def test_loads_planner_and_workers(self, db, bus, workers):
        agent = await _agent(db, bus, ScriptedGateway())
        assert agent.planner.system_role == "planning"
        assert [w.name for w in agent.workers] == ["Writer", "Reviewer"]


class TestSystemPrompt:
    @pytest.mark.asyncio
    async def test_contains_task_and_agents(self, db, bus, workers):
        agent = await _agent(db, bus, ScriptedGateway())
        prompt = agent.build_system_prompt("Launch newsletter", "Monthly product update")
        assert prompt.startswith(agent.planner.agent_prompt)
        assert "**Task ID**: 42" in prompt
        assert "**Title**: Launch newsletter" in prompt
        assert "**Description**: Monthly product update" in prompt
        writer = workers[0]
        assert f"**Agent ID {writer.id}: Writer (Model: claude-haiku-4-5)**\nYou write clear drafts.\n" in prompt
        assert prompt.rstrip().endswith("based on their capabilities.")

    @pytest.mark.asyncio
    async def test_missing_description(self, db, bus, workers):
        agent = await _agent(db, bus, ScriptedGateway())
        assert "**Description**: No description provided" in agent.build_system_prompt("T", None)


class TestPlanTask:
    @pytest.mark.asyncio
    async def test_end_turn_without_tool_calls(self, db, bus, workers, progress):
        gateway = ScriptedGateway([end_turn()])
        result = await (await _agent(db, bus, gateway)).plan_task("Write blog post")

        assert result.success is True
        assert result.subtasks_created == 0
        assert result.message == "Successfully created 0 subtasks using AI planning agent"
        assert await SubtaskRepository(db).list_for_task(42) == []
        assert [p.status for p in progress] == ["analyzing", "planning", "finalizing"]

    @pytest.mark.asyncio
    async def test_first_request_shape(self, db, bus, workers):
        gateway = ScriptedGateway([end_turn()])
        await (await _agent(db, bus, gateway)).plan_task("Write blog post", "About pelicans")

        [request] = gateway.requests
        assert gateway.resolved == ["claude-sonnet-4-5"]
        assert request["model"] == RESOLVED
        assert request["max_tokens"] == 4096
        assert request["tools"][0]["name"] == "create_subtask"
        assert "About pelicans" in request["system"]
        assert len(request["messages"]) == 1
        assert request["messages"][0].role == "user"
        assert request["messages"][0].content == INITIAL_REQUEST

    @pytest.mark.asyncio
    async def test_creates_subtasks_and_reports_progress(self, db, bus, workers, progress):
        writer, reviewer = workers
        gateway = ScriptedGateway([
            tool_use(
                ("call_1", {"task_id": 999, "title": "Draft", "description": "Write the draft", "agent_id": writer.id}),
                ("call_2", {"task_id": 42, "title": "Review", "description": "Review the draft", "agent_id": reviewer.id}),
            ),
            end_turn(),
        ])
        result = await (await _agent(db, bus, gateway)).plan_task("Write blog post")

        assert result.subtasks_created == 2
        assert result.message == "Successfully created 2 subtasks using AI planning agent"
        rows = await SubtaskRepository(db).list_for_task(42)
        assert [(r.title, r.agent_id, r.completed) for r in rows] == [
            ("Draft", writer.id, False),
            ("Review", reviewer.id, False),
        ]
        assert await SubtaskRepository(db).list_for_task(999) == []

        creating = [p for p in progress if p.status == "creating"]
        assert [p.progress for p in creating] == pytest.approx([0.32, 0.44])
        assert all(p.current_step == "Subtask Creation" for p in creating)
        assert progress[-1].status == "finalizing"
        assert progress[-1].progress == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_tool_results_follow_call_order(self, db, bus, workers):
        writer = workers[0]
        gateway = ScriptedGateway([
            tool_use(
                ("call_a", {"title": "Bad", "description": "Unknown agent", "agent_id": 999}),
                ("call_b", {"title": "Good", "description": "Known agent", "agent_id": writer.id}),
                ("call_c", {"description": "No title", "agent_id": writer.id}),
            ),
            end_turn(),
        ])
        result = await (await _agent(db, bus, gateway)).plan_task("Plan")

        assert result.subtasks_created == 1
        second = gateway.requests[1]["messages"]
        assert [m.role for m in second] == ["user", "assistant", "user"]
        assert [b["type"] for b in second[1].content] == ["text", "tool_use", "tool_use", "tool_use"]
        assert second[2].content == [
            {"type": "tool_result", "tool_use_id": "call_a",
             "content": "Tool execution error: Invalid agent_id: 999", "is_error": True},
            {"type": "tool_result", "tool_use_id": "call_b",
             "content": "Successfully created subtask: 'Good'"},
            {"type": "tool_result", "tool_use_id": "call_c",
             "content": "Tool execution error: Missing title", "is_error": True},
        ]

    @pytest.mark.asyncio
    async def test_unknown_tool(self, db, bus, workers):
        response = {
            "content": [{"type": "tool_use", "id": "t1", "name": "delete_task", "input": {}}],
            "stop_reason": "tool_use",
        }
        gateway = ScriptedGateway([response, end_turn()])
        await (await _agent(db, bus, gateway)).plan_task("Plan")
        [result] = gateway.requests[1]["messages"][2].content
        assert result == {"type": "tool_result", "tool_use_id": "t1", "content": "Unknown tool: delete_task", "is_error": True}

    @pytest.mark.asyncio
    async def test_iteration_cap(self, db, bus, workers):
        writer = workers[0]
        loop_forever = tool_use(("c", {"title": "Again", "description": "More", "agent_id": writer.id}))
        gateway = ScriptedGateway(repeat=loop_forever)
        agent = await _agent(db, bus, gateway)

        with pytest.raises(MaxIterationsExceededError, match=r"Planning exceeded maximum iterations \(20\)"):
            await agent.plan_task("Endless")
        assert len(gateway.requests) == 20

    @pytest.mark.asyncio
    async def test_custom_iteration_cap(self, db, bus, workers):
        writer = workers[0]
        loop_forever = tool_use(("c", {"title": "Again", "description": "More", "agent_id": writer.id}))
        gateway = ScriptedGateway(repeat=loop_forever)
        with pytest.raises(MaxIterationsExceededError):
            await (await _agent(db, bus, gateway, max_iterations=3)).plan_task("Endless")
        assert len(gateway.requests) == 3

    @pytest.mark.asyncio
    async def test_unexpected_stop_reason(self, db, bus, workers):
        gateway = ScriptedGateway([{"content": [], "stop_reason": "max_tokens"}])
        with pytest.raises(PlanningProtocolError, match="Unexpected stop reason: max_tokens"):
            await (await _agent(db, bus, gateway)).plan_task("Plan")

    @pytest.mark.asyncio
    async def test_tool_use_without_calls(self, db, bus, workers):
        gateway = ScriptedGateway([{"content": [{"type": "text", "text": "hmm"}], "stop_reason": "tool_use"}])
        with pytest.raises(PlanningProtocolError, match="Agent requested tool_use but provided no tool calls"):
            await (await _agent(db, bus, gateway)).plan_task("Plan")

    @pytest.mark.asyncio
    async def test_malformed_response(self, db, bus, workers):
        gateway = ScriptedGateway([{"unexpected": True}])
        with pytest.raises(PlanningProtocolError, match="Failed to parse"):
            await (await _agent(db, bus, gateway)).plan_task("Plan")

    @pytest.mark.asyncio
    async def test_undeliverable_progress_does_not_abort(self, db, bus, workers):
        async def closed_window(event):
            raise ConnectionError("window closed")

        bus.subscribe(closed_window)
        gateway = ScriptedGateway([
            tool_use(("c1", {"title": "Draft", "description": "Write", "agent_id": workers[0].id})),
            end_turn(),
        ])
        result = await (await _agent(db, bus, gateway)).plan_task("Plan")
        assert result.subtasks_created == 1


class TestFallback:
    @pytest.mark.asyncio
    async def test_transport_failure_uses_fallback(self, db, bus, workers, progress):
        writer, reviewer = workers
        gateway = ScriptedGateway([ChatGatewayError("Request failed: connection refused")])
        result = await (await _agent(db, bus, gateway)).plan_task_with_fallback("Ship release")

        assert result.success is True
        assert result.subtasks_created == 3
        assert result.message == "Created 3 subtasks using fallback planning (AI agent unavailable)"
        rows = await SubtaskRepository(db).list_for_task(42)
        assert [(r.title, r.description) for r in rows] == list(FALLBACK_STEPS)
        assert [r.agent_id for r in rows] == [writer.id, reviewer.id, writer.id]

        statuses = [p.status for p in progress]
        assert "fallback" in statuses
        fallback = [p for p in progress if p.status == "fallback_creating"]
        assert [p.progress for p in fallback] == pytest.approx([0.3 + 0.5 / 3, 0.3 + 1.0 / 3, 0.8])
        assert all(p.current_step == "Fallback Planning" for p in fallback)

    @pytest.mark.asyncio
    async def test_single_worker_gets_every_step(self, db, bus):
        solo = await AgentRepository(db).create_agent("Solo", "claude-haiku-4-5", "Does everything.")
        gateway = ScriptedGateway([ChatGatewayError("API error (500): boom", status_code=500)])
        result = await (await _agent(db, bus, gateway)).plan_task_with_fallback("Ship")
        assert result.subtasks_created == 3
        rows = await SubtaskRepository(db).list_for_task(42)
        assert {r.agent_id for r in rows} == {solo.id}

    @pytest.mark.asyncio
    async def test_iteration_cap_falls_back(self, db, bus, workers):
        loop_forever = tool_use(("c", {"title": "Again", "description": "More", "agent_id": workers[0].id}))
        gateway = ScriptedGateway(repeat=loop_forever)
        result = await (await _agent(db, bus, gateway, max_iterations=2)).plan_task_with_fallback("Endless")
        assert result.subtasks_created == 3
        assert "fallback" in result.message
        # Subtasks from the aborted AI run are kept
        assert len(await SubtaskRepository(db).list_for_task(42)) == 5

    @pytest.mark.asyncio
    async def test_empty_worker_pool(self, db, bus):
        gateway = ScriptedGateway([ChatGatewayError("Request failed: offline")])
        agent = await _agent(db, bus, gateway)
        with pytest.raises(FallbackPlanningError, match="No agents available for fallback planning"):
            await agent.plan_task_with_fallback("Nothing to assign")
        assert await SubtaskRepository(db).list_for_task(42) == []

    @pytest.mark.asyncio
    async def test_ai_success_skips_fallback(self, db, bus, workers, progress):
        gateway = ScriptedGateway([end_turn()])
        result = await (await _agent(db, bus, gateway)).plan_task_with_fallback("Plan")
        assert "AI planning agent" in result.message
        assert "fallback" not in [p.status for p in progress]


async def _reject_subtask_title(db, title):
    async with db.write() as conn:
        await conn.execute(sa_text(
            "CREATE TRIGGER reject_title BEFORE INSERT ON subtasks "
            f"WHEN NEW.title = '{title}' BEGIN SELECT RAISE(ABORT, 'disk I/O error'); END"
        ))


class TestStorageFailures:
    @pytest.mark.asyncio
    async def test_failed_insert_becomes_error_result(self, db, bus, workers):
        await _reject_subtask_title(db, "Bad")
        writer = workers[0]
        gateway = ScriptedGateway([
            tool_use(
                ("call_a", {"title": "Bad", "description": "Rejected by storage", "agent_id": writer.id}),
                ("call_b", {"title": "Good", "description": "Stored", "agent_id": writer.id}),
            ),
            end_turn(),
        ])
        result = await (await _agent(db, bus, gateway)).plan_task("Plan")

        assert result.subtasks_created == 1
        first, second = gateway.requests[1]["messages"][2].content
        assert first["tool_use_id"] == "call_a"
        assert first["is_error"] is True
        assert first["content"].startswith("Tool execution error: Failed to create subtask: ")
        assert "disk I/O error" in first["content"]
        assert second == {"type": "tool_result", "tool_use_id": "call_b",
                          "content": "Successfully created subtask: 'Good'"}
        rows = await SubtaskRepository(db).list_for_task(42)
        assert [r.title for r in rows] == ["Good"]

    @pytest.mark.asyncio
    async def test_failed_fallback_insert(self, db, bus, workers):
        await _reject_subtask_title(db, FALLBACK_STEPS[1][0])
        gateway = ScriptedGateway([ChatGatewayError("Request failed: offline")])
        with pytest.raises(FallbackPlanningError, match="Failed to create subtask"):
            await (await _agent(db, bus, gateway)).plan_task_with_fallback("Ship")

    @pytest.mark.asyncio
    async def test_ai_failure_logged_with_traceback(self, db, bus, workers, caplog):
        gateway = ScriptedGateway([ChatGatewayError("Request failed: offline")])
        with caplog.at_level(logging.ERROR, logger="orcascore"):
            await (await _agent(db, bus, gateway)).plan_task_with_fallback("Ship")
        [record] = [r for r in caplog.records if "AI planning failed" in r.getMessage()]
        assert record.exc_info is not None
        assert record.exc_info[0] is ChatGatewayError
