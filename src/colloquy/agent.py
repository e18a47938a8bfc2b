from pydantic import BaseModel, Field

from colloquy.message import new_id
from colloquy.tools import Tool


class Agent(BaseModel):
    """
    A named configuration of system prompt and tools. Sessions bind to an
    agent through ``Session.agent_id``; while bound, the agent's tools are
    offered to the model and its system prompt is used unless the session
    sets its own.

    Args:
        name: Display name of the agent.
        system_prompt: System prompt sent at the start of every turn.
        tools: Tools the model may call while this agent is active.
        description: Short free-form description.
    """

    id: str = Field(default_factory=new_id)
    name: str
    system_prompt: str = ""
    description: str = ""
    tools: list[Tool] = Field(default_factory=list)

    @property
    def tool_registry(self) -> dict[str, Tool]:
        return {t.name: t for t in self.tools}
