from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from colloquy.agent import Agent
    from colloquy.message import ToolCall
    from colloquy.session import Session


@dataclass
class ToolContext:
    """Runtime context injected into tools that declare a ``context`` parameter.

    The ToolRunner builds one per tool call from the latest persisted
    session, just before dispatching the call.

    Args:
        session: The session whose assistant message requested the call.
        tool_call: The tool call being executed.
        agent: The agent bound to the session, if any.
    """

    session: Session
    tool_call: ToolCall
    agent: Agent | None = None
