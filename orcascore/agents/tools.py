"""Tool definitions offered to the planning model (Messages API tool-use format)."""

from __future__ import annotations

from typing import Any

CREATE_SUBTASK = "create_subtask"


def create_subtask_schema() -> dict[str, Any]:
    return {
        "name": CREATE_SUBTASK,
        "description": "Create a new subtask for the task being planned",
        "input_schema": {
            "type": "object",
            "properties": {
                "task_id": {
                    "type": "number",
                    "description": "The ID of the parent task (will be auto-filled)",
                },
                "title": {
                    "type": "string",
                    "description": "Clear, action-oriented title for the subtask",
                },
                "description": {
                    "type": "string",
                    "description": "Detailed description of subtask scope, deliverables, and expectations",
                },
                "agent_id": {
                    "type": "number",
                    "description": "ID of the agent best suited for this subtask",
                },
            },
            "required": ["task_id", "title", "description", "agent_id"],
        },
    }


def planning_tools() -> list[dict[str, Any]]:
    """The complete tool list; ``create_subtask`` is the only state-changing action."""
    return [create_subtask_schema()]
