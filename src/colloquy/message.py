from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field


def new_id() -> str:
    return uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ToolCall(BaseModel):
    """A tool invocation requested by the model.

    ``arguments`` is the JSON-encoded argument string exactly as streamed.
    """

    id: str
    name: str
    arguments: str = ""

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": self.arguments,
            },
        }


class ToolCallExecution(BaseModel):
    id: str = Field(default_factory=new_id)
    tool_call_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    result: str | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status is not ExecutionStatus.PENDING


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    role: MessageRole
    content: str = ""
    timestamp: datetime = Field(default_factory=utc_now)

    def to_wire(self) -> dict:
        """Render the message in the chat-completions request shape."""
        return {"role": MessageRole(self.role).value, "content": self.content}


class SystemMessage(Message):
    role: Literal["system"] = "system"


class UserMessage(Message):
    role: Literal["user"] = "user"


class ToolResultMessage(Message):
    role: Literal["tool"] = "tool"
    tool_call_id: str
    name: str

    def to_wire(self) -> dict:
        return {
            "role": "tool",
            "content": self.content,
            "tool_call_id": self.tool_call_id,
            "name": self.name,
        }


class AssistantMessage(Message):
    role: Literal["assistant"] = "assistant"
    reasoning_content: str | None = None
    reasoning_duration_ms: int | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_executions: list[ToolCallExecution] = Field(default_factory=list)
    usage: Usage | None = None
    error: str | None = None
    incomplete: bool = False
    can_retry: bool = False
    provider: str | None = None
    model: str | None = None

    def to_wire(self) -> dict:
        wire = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            wire["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        return wire

    def execution_for(self, tool_call_id: str) -> ToolCallExecution | None:
        for execution in self.tool_call_executions:
            if execution.tool_call_id == tool_call_id:
                return execution
        return None

    @property
    def awaiting_tools(self) -> bool:
        """True while any execution is still pending."""
        return any(not e.is_terminal for e in self.tool_call_executions)


AnyMessage = Annotated[
    Union[SystemMessage, UserMessage, ToolResultMessage, AssistantMessage],
    Field(discriminator="role"),
]
