import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from colloquy.cancellation import CancellationToken
from colloquy.events import (
    FragmentEvent,
    RespondingIndicatorEvent,
    StreamEvent,
    TurnCompleteEvent,
    TurnStateEvent,
)
from colloquy.instrumentation import (
    completion_span,
    record_error,
    record_outcome,
    record_usage,
    turn_span,
)
from colloquy.message import (
    AnyMessage,
    AssistantMessage,
    MessageRole,
    SystemMessage,
    ToolCallExecution,
)
from colloquy.provider import ModelProvider
from colloquy.session import Session
from colloquy.store import SessionStore
from colloquy.streaming import Fragment, FragmentAccumulator

logger = logging.getLogger(__name__)

UNKNOWN_ERROR = "Unknown error occurred"

_EXHAUSTED = object()


async def _next_fragment(stream: AsyncIterator[Fragment]):
    try:
        return await anext(stream)
    except StopAsyncIteration:
        return _EXHAUSTED


class TurnState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"


@dataclass
class TurnResult:
    """The terminal outcome of one turn.

    Args:
        session_id: Session the turn ran against.
        state: One of the terminal states.
        message: The committed assistant message, or ``None`` when the
            turn committed nothing (empty response, or abort with no
            content).
        session: The session as persisted after the commit.
    """

    session_id: str
    state: TurnState
    message: AssistantMessage | None = None
    session: Session | None = None

    @property
    def awaiting_tools(self) -> bool:
        return self.message is not None and self.message.awaiting_tools


@dataclass
class TurnContext:
    """Draft state owned by exactly one turn. Never persisted."""

    session_id: str
    accumulator: FragmentAccumulator
    state: TurnState = TurnState.IDLE
    first_fragment_seen: bool = False
    indicator_shown: bool = False
    fault: Exception | None = field(default=None, repr=False)


def build_outbound_messages(
    transcript: list[AnyMessage], system_prompt: str | None,
) -> list[dict]:
    """Assemble the request message list for a turn.

    Persisted system messages are dropped and the system prompt, when not
    blank, is prepended, so exactly one system message is ever sent.
    """
    history = [m for m in transcript if m.role != MessageRole.SYSTEM]
    messages = [m.to_wire() for m in history]
    if system_prompt and system_prompt.strip():
        messages.insert(0, SystemMessage(content=system_prompt).to_wire())
    return messages


class Turn:
    """Drives one request/response cycle with the model.

    ``idle -> streaming -> {completed, aborted, errored}``.  The turn reads
    the latest persisted session, streams fragments from the provider, and
    commits at most one assistant message when it terminates.  Provider
    faults never escape: they become an error message with ``can_retry``
    set.

    ``run()`` drains ``iter()``.  ``iter()`` is the streaming entry point.

    Args:
        session_id: Session to run against.
        store: Session store the result is committed to.
        provider: Model endpoint.
        model: Model name sent to the provider.
        system_prompt: Prompt prepended to the outbound messages.
        tools: OpenAI function schemas offered to the model.
        cancel_token: Shared stop signal; a fresh one is created if omitted.
        indicator_delay: Seconds without a first fragment before a
            :class:`RespondingIndicatorEvent` is emitted.
        clock: Monotonic clock used for reasoning duration.
    """

    def __init__(
        self,
        session_id: str,
        store: SessionStore,
        provider: ModelProvider,
        model: str,
        system_prompt: str | None = None,
        tools: list[dict] | None = None,
        cancel_token: CancellationToken | None = None,
        indicator_delay: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_id = session_id
        self.store = store
        self.provider = provider
        self.model = model
        self.system_prompt = system_prompt
        self.tools = tools or None
        self.cancel_token = cancel_token or CancellationToken()
        self.indicator_delay = indicator_delay
        self._ctx = TurnContext(
            session_id=session_id,
            accumulator=FragmentAccumulator(clock=clock),
        )
        self._done = asyncio.Event()

    @property
    def state(self) -> TurnState:
        return self._ctx.state

    @property
    def closed(self) -> bool:
        return self._done.is_set()

    def cancel(self) -> None:
        self.cancel_token.cancel()

    async def wait_closed(self) -> None:
        """Block until the turn reached a terminal state."""
        await self._done.wait()

    async def run(self) -> TurnResult:
        """Run the turn to completion and return its result."""
        result: TurnResult | None = None
        async for event in self.iter():
            if isinstance(event, TurnCompleteEvent):
                result = event.result
        if result is None:
            raise RuntimeError("iter() ended without emitting TurnCompleteEvent")
        return result

    async def iter(self) -> AsyncIterator[StreamEvent]:
        """Run the turn, yielding events as fragments arrive."""
        if self._ctx.state is not TurnState.IDLE:
            raise RuntimeError("A Turn can only be run once")
        try:
            session = await self.store.load_session(self.session_id)
            messages = build_outbound_messages(session.transcript, self.system_prompt)

            async with turn_span(self.session_id, self.model) as span:
                self._ctx.state = TurnState.STREAMING
                logger.info(
                    f"Turn started for session {self.session_id} "
                    f"({len(messages)} messages, model={self.model})"
                )
                yield TurnStateEvent(session_id=self.session_id, state=self.state.value)

                try:
                    async with completion_span(self.provider.name, self.model) as cspan:
                        async for event in self._consume(messages):
                            yield event
                        record_usage(cspan, self._ctx.accumulator.usage)
                except Exception as e:
                    logger.error(f"Turn for session {self.session_id} failed: {e}")
                    self._ctx.fault = e
                    record_error(span, e)

                state, message = self._terminal()
                self._ctx.state = state
                record_outcome(span, state.value)

            committed = None
            if message is not None:
                committed = await self.store.update(
                    self.session_id, lambda s: s.transcript.append(message),
                )
            logger.info(
                f"Turn for session {self.session_id} {state.value}"
                f"{'' if message else ' (nothing committed)'}"
            )
            yield TurnStateEvent(session_id=self.session_id, state=state.value)
            yield TurnCompleteEvent(
                session_id=self.session_id,
                result=TurnResult(
                    session_id=self.session_id,
                    state=state,
                    message=message,
                    session=committed,
                ),
            )
        finally:
            self._done.set()

    async def _consume(self, messages: list[dict]) -> AsyncIterator[StreamEvent]:
        """Fold the provider's fragments until exhaustion or cancellation.

        Each read races the cancellation token, so a stalled stream stops
        as soon as the token fires.
        """
        stream = self.provider.stream_turn(
            model=self.model, messages=messages,
            tools=self.tools, cancel_token=self.cancel_token,
        )
        cancelled = asyncio.ensure_future(self.cancel_token.wait())
        pending_read = None
        try:
            while not self.cancel_token.cancelled:
                pending_read = asyncio.ensure_future(_next_fragment(stream))
                waiting = {pending_read, cancelled}
                if not (self._ctx.first_fragment_seen or self._ctx.indicator_shown):
                    done, _ = await asyncio.wait(
                        waiting, timeout=self.indicator_delay,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    if not done:
                        self._ctx.indicator_shown = True
                        yield RespondingIndicatorEvent(session_id=self.session_id)
                done, _ = await asyncio.wait(
                    waiting, return_when=asyncio.FIRST_COMPLETED,
                )
                if pending_read not in done:
                    break
                fragment = pending_read.result()
                pending_read = None
                if fragment is _EXHAUSTED or self.cancel_token.cancelled:
                    break
                yield self._fold(fragment)
        finally:
            cancelled.cancel()
            if pending_read is not None:
                pending_read.cancel()
                await asyncio.gather(pending_read, return_exceptions=True)
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _fold(self, fragment: Fragment) -> FragmentEvent:
        ctx = self._ctx
        ctx.first_fragment_seen = True
        ctx.accumulator.feed(fragment)
        acc = ctx.accumulator
        return FragmentEvent(
            session_id=self.session_id,
            text_delta=fragment.text or "",
            reasoning_delta=fragment.reasoning_text or "",
            text=acc.text,
            reasoning_text=acc.reasoning_text,
            tool_calls=[tc.to_wire() for tc in acc.tool_calls.preview()],
        )

    def _terminal(self) -> tuple[TurnState, AssistantMessage | None]:
        acc = self._ctx.accumulator
        if self.cancel_token.cancelled:
            if not acc.has_partial_content:
                return TurnState.ABORTED, None
            return TurnState.ABORTED, self._draft(incomplete=True)

        if self._ctx.fault is not None:
            reason = str(self._ctx.fault) or UNKNOWN_ERROR
            return TurnState.ERRORED, AssistantMessage(
                content=f"Request failed: {reason}",
                error=reason,
                can_retry=True,
                provider=self.provider.name,
                model=self.model,
            )

        tool_calls = acc.tool_calls.freeze()
        if not acc.text and not tool_calls:
            return TurnState.COMPLETED, None
        message = self._draft()
        message.tool_calls = tool_calls
        message.tool_call_executions = [
            ToolCallExecution(tool_call_id=tc.id) for tc in tool_calls
        ]
        return TurnState.COMPLETED, message

    def _draft(self, incomplete: bool = False) -> AssistantMessage:
        acc = self._ctx.accumulator
        return AssistantMessage(
            content=acc.text,
            reasoning_content=acc.reasoning_text or None,
            reasoning_duration_ms=acc.reasoning_duration_ms,
            usage=acc.usage,
            incomplete=incomplete,
            provider=self.provider.name,
            model=self.model,
        )
