"""Tool execution gate.

After a turn commits an assistant message with pending tool executions the
conversation is held.  Callers resolve each execution through
:meth:`ToolExecutionGate.resolve`; once every execution of the most recent
assistant message is terminal the gate appends the tool-result messages and
reports that it released, so the caller can open the follow-up turn.
"""

import logging
from dataclasses import dataclass, field

from colloquy.errors import ToolCallNotFoundError
from colloquy.message import (
    AssistantMessage,
    ExecutionStatus,
    ToolCallExecution,
    ToolResultMessage,
    utc_now,
)
from colloquy.session import Session
from colloquy.store import SessionStore

logger = logging.getLogger(__name__)


def format_tool_error(error: str) -> str:
    return f"Error: {error}"


@dataclass(frozen=True)
class ToolOutcome:
    """Outcome of one tool execution, as reported by an external actor."""

    status: ExecutionStatus
    result: str | None = None
    error: str | None = None

    def __post_init__(self):
        if self.status is ExecutionStatus.PENDING:
            raise ValueError("A tool outcome must be completed or failed")

    @classmethod
    def completed(cls, result: str) -> "ToolOutcome":
        return cls(status=ExecutionStatus.COMPLETED, result=result)

    @classmethod
    def failed(cls, error: str) -> "ToolOutcome":
        return cls(status=ExecutionStatus.FAILED, error=error)


@dataclass
class Resolution:
    """What a single :meth:`ToolExecutionGate.resolve` call did.

    Args:
        session: The session as persisted after the call.
        execution: The execution record for the resolved tool call.
        changed: False when the execution was already terminal.
        released: True when this call completed the set and appended the
            tool-result messages; a follow-up turn is due.
        tool_results: The messages appended on release.
    """

    session: Session
    execution: ToolCallExecution
    changed: bool
    released: bool = False
    tool_results: list[ToolResultMessage] = field(default_factory=list)


def _owner_of(session: Session, tool_call_id: str) -> tuple[int, AssistantMessage]:
    for i in range(len(session.transcript) - 1, -1, -1):
        message = session.transcript[i]
        if isinstance(message, AssistantMessage) and message.execution_for(tool_call_id):
            return i, message
    raise ToolCallNotFoundError(tool_call_id)


def pending_tool_calls(session: Session) -> list[str]:
    """Ids of unresolved tool calls on the most recent assistant message."""
    latest = session.last_assistant()
    if latest is None:
        return []
    _, message = latest
    return [e.tool_call_id for e in message.tool_call_executions if not e.is_terminal]


class ToolExecutionGate:
    """Holds a conversation open until every tool call has an outcome.

    Args:
        store: Session store; every resolution is persisted immediately.
    """

    def __init__(self, store: SessionStore):
        self.store = store

    async def resolve(
        self, session_id: str, tool_call_id: str, outcome: ToolOutcome,
    ) -> Resolution:
        """Record *outcome* for *tool_call_id* and release the gate if the
        set is complete.

        Resolving an execution that is already terminal changes nothing
        and never emits a second tool-result message.  On release only the
        calls that still lack a tool-result message get one, so a batch
        partly rewound by a retry is completed in place.

        Raises:
            ToolCallNotFoundError: If no assistant message has an execution
                for *tool_call_id*.
        """
        changed = False

        def record(session: Session):
            nonlocal changed
            _, owner = _owner_of(session, tool_call_id)
            execution = owner.execution_for(tool_call_id)
            if execution.is_terminal:
                logger.info(
                    f"Tool call {tool_call_id} already {execution.status.value}; ignoring"
                )
                return False
            execution.status = outcome.status
            execution.result = outcome.result
            execution.error = outcome.error
            execution.timestamp = utc_now()
            changed = True

        session = await self.store.update(session_id, record)
        _, owner = _owner_of(session, tool_call_id)
        execution = owner.execution_for(tool_call_id)
        logger.info(
            f"Tool call {tool_call_id} resolved as {execution.status.value} "
            f"in session {session_id}"
        )

        appended: list[ToolResultMessage] = []

        def release(session: Session):
            position, owner = _owner_of(session, tool_call_id)
            latest = session.last_assistant()
            if latest is None or latest[0] != position:
                return False
            if owner.awaiting_tools:
                return False
            appended.extend(self._tool_results(owner, self._answered(session, position)))
            if not appended:
                return False
            session.transcript.extend(appended)

        if changed:
            session = await self.store.update(session_id, release)
        if appended:
            logger.info(
                f"Appended {len(appended)} tool results in session "
                f"{session_id}; releasing"
            )
        return Resolution(
            session=session,
            execution=execution,
            changed=changed,
            released=bool(appended),
            tool_results=appended,
        )

    @staticmethod
    def _answered(session: Session, position: int) -> set[str]:
        return {
            m.tool_call_id for m in session.transcript[position + 1:]
            if isinstance(m, ToolResultMessage)
        }

    @staticmethod
    def _tool_results(owner: AssistantMessage, answered: set[str]) -> list[ToolResultMessage]:
        """Tool-result messages, in tool-call order, for calls without one."""
        results = []
        for tc in owner.tool_calls:
            execution = owner.execution_for(tc.id)
            if execution is None or tc.id in answered:
                continue
            if execution.status is ExecutionStatus.FAILED:
                content = format_tool_error(execution.error or "")
            else:
                content = execution.result or ""
            results.append(ToolResultMessage(
                content=content, tool_call_id=tc.id, name=tc.name,
            ))
        return results
