class ColloquyError(Exception):
    """Base class for errors raised by colloquy."""


class SessionNotFoundError(ColloquyError, KeyError):
    def __init__(self, session_id: str):
        super().__init__(f"Session '{session_id}' not found")
        self.session_id = session_id

    def __str__(self) -> str:
        return self.args[0]


class MessageNotFoundError(ColloquyError, LookupError):
    def __init__(self, message_id: str):
        super().__init__(f"Message '{message_id}' not found")
        self.message_id = message_id


class ToolCallNotFoundError(ColloquyError, LookupError):
    def __init__(self, tool_call_id: str):
        super().__init__(f"No execution found for tool call '{tool_call_id}'")
        self.tool_call_id = tool_call_id


class InvalidMutationError(ColloquyError, ValueError):
    """Raised when a history operation does not apply to the target message,
    e.g. editing an assistant message."""


class TurnInProgressError(ColloquyError, RuntimeError):
    """Raised when a turn is requested while another is in flight for the
    same session."""

    def __init__(self, session_id: str):
        super().__init__(f"A turn is already in flight for session '{session_id}'")
        self.session_id = session_id


class ConversationHeldError(ColloquyError, RuntimeError):
    """Raised when a new turn is requested while the latest assistant
    message still has pending tool executions."""

    def __init__(self, session_id: str, pending: list[str]):
        super().__init__(
            f"Session '{session_id}' is waiting on tool calls: {', '.join(pending)}"
        )
        self.session_id = session_id
        self.pending = pending
