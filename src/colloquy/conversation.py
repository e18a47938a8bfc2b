import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

from colloquy.agent import Agent
from colloquy.config import Settings, build_provider, build_store
from colloquy.errors import (
    ConversationHeldError,
    InvalidMutationError,
    TurnInProgressError,
)
from colloquy.events import StreamEvent, TurnCompleteEvent
from colloquy.gate import ToolExecutionGate, ToolOutcome, pending_tool_calls
from colloquy.message import (
    AssistantMessage,
    ExecutionStatus,
    ToolResultMessage,
    UserMessage,
    utc_now,
)
from colloquy.provider import ModelProvider
from colloquy.runner import ToolRunner
from colloquy.session import DEFAULT_SESSION_NAME, Session
from colloquy.store import SessionStore
from colloquy.title import TitleGenerator
from colloquy.tools import Tool
from colloquy.turn import Turn, TurnResult

logger = logging.getLogger(__name__)

Listener = Callable[[StreamEvent], Any]


class Conversation:
    """Entry point for sending, editing, retrying and resolving tool calls.

    Every operation that talks to the model goes through the same
    :class:`Turn`, and at most one turn is in flight per session.  History
    mutations always work on the latest persisted session.

    Args:
        store: Session repository.
        provider: Model endpoint.
        model: Model name sent with every turn.
        agents: Agents sessions may bind to through ``agent_id``.
        tools: Tools available to sessions without an agent, selected per
            session by ``Session.tool_ids`` (tool names).
        default_system_prompt: Used when neither the session nor its
            agent has a system prompt.
        title_generator: Optional; names new sessions in the background.
        auto_run_tools: When True, pending tool calls are executed with the
            registered tools and the conversation continues on its own.
        max_auto_turns: Upper bound on automatic follow-up turns per
            operation when ``auto_run_tools`` is on.
        indicator_delay: Seconds before a turn emits its "responding"
            indicator.
    """

    def __init__(
        self,
        store: SessionStore,
        provider: ModelProvider,
        model: str,
        agents: list[Agent] | None = None,
        tools: list[Tool] | None = None,
        default_system_prompt: str = "",
        title_generator: TitleGenerator | None = None,
        auto_run_tools: bool = False,
        max_auto_turns: int = 10,
        indicator_delay: float = 0.5,
    ):
        self.store = store
        self.provider = provider
        self.model = model
        self.agents: dict[str, Agent] = {a.id: a for a in agents or []}
        self.tools: dict[str, Tool] = {t.name: t for t in tools or []}
        self.default_system_prompt = default_system_prompt
        self.title_generator = title_generator
        self.gate = ToolExecutionGate(store)
        self.tool_runner = ToolRunner(self.gate) if auto_run_tools else None
        self.max_auto_turns = max_auto_turns
        self.indicator_delay = indicator_delay

        self._active: dict[str, Turn] = {}
        self._operations: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._listeners: list[Listener] = []
        self._background: set[asyncio.Task] = set()

    @classmethod
    async def from_settings(
        cls,
        settings: Settings,
        agents: list[Agent] | None = None,
        tools: list[Tool] | None = None,
        auto_run_tools: bool = False,
    ) -> "Conversation":
        provider = build_provider(settings)
        title_generator = None
        if settings.title_model:
            title_generator = TitleGenerator(provider, settings.title_model)
        return cls(
            store=await build_store(settings),
            provider=provider,
            model=settings.model,
            agents=agents,
            tools=tools,
            default_system_prompt=settings.system_prompt,
            title_generator=title_generator,
            auto_run_tools=auto_run_tools,
            max_auto_turns=settings.max_auto_turns,
            indicator_delay=settings.indicator_delay,
        )

    # ------------------------------------------------------------------
    # Sessions and listeners
    # ------------------------------------------------------------------

    async def create_session(
        self,
        agent_id: str | None = None,
        tool_ids: list[str] | None = None,
        system_prompt: str | None = None,
    ) -> Session:
        session = Session(
            agent_id=agent_id,
            tool_ids=None if agent_id else tool_ids,
            system_prompt=system_prompt,
        )
        await self.store.save_session(session)
        logger.info(f"Created session {session.session_id}")
        return session

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Receive every event of every turn.  Returns an unsubscribe
        callable."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def is_busy(self, session_id: str) -> bool:
        """True while an operation that opens turns holds the session."""
        lock = self._operations.get(session_id)
        return lock is not None and lock.locked()

    def cancel(self, session_id: str) -> bool:
        """Fire the cancellation token of the session's in-flight turn."""
        turn = self._active.get(session_id)
        if turn is None or turn.closed:
            return False
        logger.info(f"Cancelling turn for session {session_id}")
        turn.cancel()
        return True

    async def wait_for_background(self) -> None:
        """Wait for pending side activities such as title generation."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def send(self, session_id: str, content: str) -> TurnResult:
        """Append a user message and run a turn.

        Raises:
            TurnInProgressError: If a turn is already in flight.
            ConversationHeldError: If tool calls are still pending.
        """
        if self.is_busy(session_id):
            raise TurnInProgressError(session_id)

        def append(session: Session):
            pending = pending_tool_calls(session)
            if pending:
                raise ConversationHeldError(session_id, pending)
            session.transcript.append(UserMessage(content=content))

        # No await between the busy check and taking the lock.
        async with self._operations[session_id]:
            session = await self.store.update(session_id, append)
            self._schedule_title(session, content)
            return await self._drive(session_id)

    async def retry(self, session_id: str, message_id: str) -> TurnResult | None:
        """Regenerate from just before an assistant message.

        Retrying a tool-result message only rewinds history to before it
        and puts the matching executions back to pending; the tool is not
        re-run and no turn is opened.  Returns ``None`` in that case.
        """
        await self._settle(session_id)
        rewound_tool = False

        def truncate(session: Session):
            nonlocal rewound_tool
            position = session.index_of(message_id)
            target = session.transcript[position]
            if isinstance(target, ToolResultMessage):
                rewound_tool = True
                _reopen_executions(session, position)
            elif not isinstance(target, AssistantMessage):
                raise InvalidMutationError(
                    f"Only assistant or tool messages can be retried, not '{target.role}'"
                )
            del session.transcript[position:]

        async with self._operations[session_id]:
            await self.store.update(session_id, truncate)
            if rewound_tool:
                logger.info(f"Rewound session {session_id} to before tool result {message_id}")
                return None
            return await self._drive(session_id)

    async def edit(self, session_id: str, message_id: str, new_content: str) -> TurnResult:
        """Replace a user message, dropping everything after it, and run a
        turn."""
        await self._settle(session_id)

        def truncate(session: Session):
            position = session.index_of(message_id)
            target = session.transcript[position]
            if not isinstance(target, UserMessage):
                raise InvalidMutationError(
                    f"Only user messages can be edited, not '{target.role}'"
                )
            del session.transcript[position:]

        async with self._operations[session_id]:
            await self.store.update(session_id, truncate)
            session = await self.store.update(
                session_id,
                lambda s: s.transcript.append(UserMessage(content=new_content)),
            )
            self._schedule_title(session, new_content)
            return await self._drive(session_id)

    async def delete_message(self, session_id: str, message_id: str) -> Session:
        """Remove exactly one message."""

        def remove(session: Session):
            del session.transcript[session.index_of(message_id)]

        return await self.store.update(session_id, remove)

    async def resolve_tool_call(
        self, session_id: str, tool_call_id: str, outcome: ToolOutcome,
    ) -> TurnResult | None:
        """Report a tool outcome.  When it completes the set of pending
        calls, the follow-up turn runs and its result is returned."""
        resolution = await self.gate.resolve(session_id, tool_call_id, outcome)
        if not resolution.released:
            return None
        async with self._operations[session_id]:
            return await self._drive(session_id)

    # ------------------------------------------------------------------
    # Turn driving
    # ------------------------------------------------------------------

    async def _drive(self, session_id: str) -> TurnResult:
        result = await self._run_turn(session_id)
        for _ in range(self.max_auto_turns):
            if self.tool_runner is None or not result.awaiting_tools:
                return result
            session = result.session
            resolution = await self.tool_runner.run(
                session, result.message,
                self._tool_registry(session), self._agent_for(session),
            )
            if resolution is None or not resolution.released:
                return result
            result = await self._run_turn(session_id)
        if result.awaiting_tools:
            logger.warning(
                f"Stopped automatic tool execution for session {session_id} "
                f"after {self.max_auto_turns} turns"
            )
        return result

    async def _run_turn(self, session_id: str) -> TurnResult:
        active = self._active.get(session_id)
        if active is not None and not active.closed:
            raise TurnInProgressError(session_id)
        session = await self.store.load_session(session_id)
        turn = Turn(
            session_id=session_id,
            store=self.store,
            provider=self.provider,
            model=self.model,
            system_prompt=self._system_prompt_for(session),
            tools=[t.model_dump() for t in self._tool_registry(session).values()],
            indicator_delay=self.indicator_delay,
        )
        self._active[session_id] = turn
        try:
            result = None
            async for event in turn.iter():
                await self._publish(event)
                if isinstance(event, TurnCompleteEvent):
                    result = event.result
            return result
        finally:
            if self._active.get(session_id) is turn:
                del self._active[session_id]

    async def _settle(self, session_id: str) -> None:
        turn = self._active.get(session_id)
        if turn is not None and not turn.closed:
            turn.cancel()
            await turn.wait_closed()

    async def _publish(self, event: StreamEvent) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(f"Event listener {listener!r} failed")

    def _agent_for(self, session: Session) -> Agent | None:
        if not session.agent_id:
            return None
        agent = self.agents.get(session.agent_id)
        if agent is None:
            logger.warning(
                f"Session {session.session_id} is bound to unknown agent {session.agent_id}"
            )
        return agent

    def _tool_registry(self, session: Session) -> dict[str, Tool]:
        agent = self._agent_for(session)
        if agent is not None:
            return agent.tool_registry
        selected = session.tool_ids or []
        return {name: t for name, t in self.tools.items() if name in selected}

    def _system_prompt_for(self, session: Session) -> str:
        if session.system_prompt and session.system_prompt.strip():
            return session.system_prompt
        agent = self._agent_for(session)
        if agent is not None and agent.system_prompt.strip():
            return agent.system_prompt
        return self.default_system_prompt

    # ------------------------------------------------------------------
    # Title generation
    # ------------------------------------------------------------------

    def _schedule_title(self, session: Session, content: str) -> None:
        if (
            self.title_generator is None
            or not session.has_default_name
            or not content.strip()
        ):
            return
        task = asyncio.create_task(self._generate_title(session.session_id, content))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _generate_title(self, session_id: str, content: str) -> None:
        try:
            title = await self.title_generator.generate_title(content)
            if not title or title == DEFAULT_SESSION_NAME:
                return

            def apply(session: Session):
                # A title set in the meantime wins.
                if not session.has_default_name:
                    return False
                session.name = title

            await self.store.update(session_id, apply)
            logger.info(f"Session {session_id} titled '{title}'")
        except Exception as exc:
            logger.warning(f"Title generation failed for session {session_id}: {exc}")


def _reopen_executions(session: Session, position: int) -> None:
    """Set executions back to pending for tool results at or after
    *position*, so the gate waits for a fresh outcome."""
    removed = {
        m.tool_call_id for m in session.transcript[position:]
        if isinstance(m, ToolResultMessage)
    }
    for message in session.transcript[:position]:
        if not isinstance(message, AssistantMessage):
            continue
        for execution in message.tool_call_executions:
            if execution.tool_call_id in removed:
                execution.status = ExecutionStatus.PENDING
                execution.result = None
                execution.error = None
                execution.timestamp = utc_now()
