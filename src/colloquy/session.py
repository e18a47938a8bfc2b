from datetime import datetime

from pydantic import BaseModel, Field

from colloquy.errors import MessageNotFoundError
from colloquy.message import AnyMessage, AssistantMessage, new_id, utc_now

DEFAULT_SESSION_NAME = "New Conversation"


class Session(BaseModel):
    session_id: str = Field(default_factory=new_id)
    name: str = DEFAULT_SESSION_NAME
    transcript: list[AnyMessage] = Field(default_factory=list)
    system_prompt: str | None = None
    agent_id: str | None = None
    tool_ids: list[str] | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def touch(self) -> None:
        self.updated_at = utc_now()

    def index_of(self, message_id: str) -> int:
        for i, message in enumerate(self.transcript):
            if message.id == message_id:
                return i
        raise MessageNotFoundError(message_id)

    def last_assistant(self) -> tuple[int, AssistantMessage] | None:
        """Return the position and value of the most recent assistant message."""
        for i in range(len(self.transcript) - 1, -1, -1):
            message = self.transcript[i]
            if isinstance(message, AssistantMessage):
                return i, message
        return None

    @property
    def has_default_name(self) -> bool:
        return self.name == DEFAULT_SESSION_NAME
