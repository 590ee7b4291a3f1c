"""Wire and result types of the planning agent."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


ContentBlock = Annotated[TextBlock | ToolUseBlock, Field(discriminator="type")]


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class ChatResponse(BaseModel):
    """The parts of a Messages API response the planning loop acts on."""

    content: list[ContentBlock]
    stop_reason: str
    usage: Usage | None = None

    @property
    def tool_calls(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]


class ToolResult(BaseModel):
    """Outcome of one tool call, sent back to the model in the next user turn."""

    tool_use_id: str
    content: str
    is_error: bool = False

    def to_block(self) -> dict[str, Any]:
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            block["is_error"] = True
        return block


class PlanningResult(BaseModel):
    success: bool
    subtasks_created: int
    message: str


class PlanningProgress(BaseModel):
    """Payload of ``task-planning-progress``."""

    task_id: int
    status: str
    message: str
    progress: float
    current_step: str | None = None

    @field_validator("progress")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return min(1.0, max(0.0, value))


class PlanningComplete(BaseModel):
    """Payload of ``task-planning-complete``."""

    task_id: int
    success: bool
    message: str
    subtasks_created: int | None = None
    error: str | None = None
