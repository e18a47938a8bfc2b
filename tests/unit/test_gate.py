import pytest

from colloquy.errors import ToolCallNotFoundError
from colloquy.gate import (
    ToolExecutionGate,
    ToolOutcome,
    format_tool_error,
    pending_tool_calls,
)
from colloquy.message import (
    AssistantMessage,
    ExecutionStatus,
    ToolCall,
    ToolCallExecution,
    ToolResultMessage,
    UserMessage,
)
from colloquy.session import Session


def _assistant_with_calls(*call_ids: str) -> AssistantMessage:
    return AssistantMessage(
        tool_calls=[
            ToolCall(id=cid, name="get_weather", arguments=f'{{"city":"{cid}"}}')
            for cid in call_ids
        ],
        tool_call_executions=[ToolCallExecution(tool_call_id=cid) for cid in call_ids],
    )


async def _held_session(store, *call_ids: str) -> Session:
    session = Session(session_id="s1", transcript=[
        UserMessage(content="Weather in Paris and Rome?"),
        _assistant_with_calls(*call_ids),
    ])
    await store.save_session(session)
    return session


def _tool_results(session: Session) -> list[ToolResultMessage]:
    return [m for m in session.transcript if isinstance(m, ToolResultMessage)]


# ---------------------------------------------------------------------------
# ToolOutcome
# ---------------------------------------------------------------------------

class TestToolOutcome:
    def test_constructors(self):
        assert ToolOutcome.completed("ok").status is ExecutionStatus.COMPLETED
        failed = ToolOutcome.failed("timeout")
        assert failed.status is ExecutionStatus.FAILED
        assert failed.error == "timeout"

    def test_pending_is_not_an_outcome(self):
        with pytest.raises(ValueError):
            ToolOutcome(status=ExecutionStatus.PENDING)


def test_format_tool_error():
    assert format_tool_error("timeout") == "Error: timeout"


# ---------------------------------------------------------------------------
# ToolExecutionGate.resolve
# ---------------------------------------------------------------------------

class TestResolve:
    @pytest.mark.asyncio
    async def test_partial_resolution_holds(self, store):
        await _held_session(store, "a", "b")
        gate = ToolExecutionGate(store)

        resolution = await gate.resolve("s1", "a", ToolOutcome.completed("Sunny"))

        assert resolution.changed
        assert not resolution.released
        assert resolution.execution.status is ExecutionStatus.COMPLETED
        session = await store.load_session("s1")
        assert _tool_results(session) == []
        assert pending_tool_calls(session) == ["b"]

    @pytest.mark.asyncio
    async def test_completing_the_set_releases_in_call_order(self, store):
        await _held_session(store, "a", "b")
        gate = ToolExecutionGate(store)

        await gate.resolve("s1", "b", ToolOutcome.failed("timeout"))
        resolution = await gate.resolve("s1", "a", ToolOutcome.completed("Sunny"))

        assert resolution.released
        results = _tool_results(await store.load_session("s1"))
        assert [(m.tool_call_id, m.content) for m in results] == [
            ("a", "Sunny"),
            ("b", "Error: timeout"),
        ]
        assert results[0].name == "get_weather"
        assert resolution.tool_results == results

    @pytest.mark.asyncio
    async def test_resolving_twice_changes_nothing(self, store):
        await _held_session(store, "a")
        gate = ToolExecutionGate(store)

        first = await gate.resolve("s1", "a", ToolOutcome.completed("Sunny"))
        second = await gate.resolve("s1", "a", ToolOutcome.failed("late"))

        assert first.released
        assert not second.changed
        assert not second.released
        session = await store.load_session("s1")
        assert len(_tool_results(session)) == 1
        execution = session.transcript[1].execution_for("a")
        assert execution.status is ExecutionStatus.COMPLETED
        assert execution.result == "Sunny"

    @pytest.mark.asyncio
    async def test_release_fills_only_missing_results(self, store):
        session = await _held_session(store, "a", "b")
        execution = session.transcript[1].execution_for("a")
        execution.status = ExecutionStatus.COMPLETED
        execution.result = "Sunny"
        session.transcript.append(
            ToolResultMessage(content="Sunny", tool_call_id="a", name="get_weather")
        )
        await store.save_session(session)

        resolution = await ToolExecutionGate(store).resolve(
            "s1", "b", ToolOutcome.completed("Cloudy"),
        )

        assert resolution.released
        assert [m.tool_call_id for m in resolution.tool_results] == ["b"]
        results = _tool_results(await store.load_session("s1"))
        assert [(m.tool_call_id, m.content) for m in results] == [
            ("a", "Sunny"),
            ("b", "Cloudy"),
        ]

    @pytest.mark.asyncio
    async def test_repeat_resolution_does_not_restore_deleted_result(self, store):
        await _held_session(store, "a")
        gate = ToolExecutionGate(store)
        await gate.resolve("s1", "a", ToolOutcome.completed("Sunny"))
        session = await store.load_session("s1")
        del session.transcript[2]
        await store.save_session(session)

        again = await gate.resolve("s1", "a", ToolOutcome.completed("Sunny"))

        assert not again.released
        assert _tool_results(await store.load_session("s1")) == []

    @pytest.mark.asyncio
    async def test_unknown_tool_call(self, store):
        await _held_session(store, "a")
        with pytest.raises(ToolCallNotFoundError):
            await ToolExecutionGate(store).resolve("s1", "zzz", ToolOutcome.completed("x"))

    @pytest.mark.asyncio
    async def test_superseded_message_is_recorded_but_not_released(self, store):
        session = await _held_session(store, "a")
        session.transcript.append(AssistantMessage(content="Later reply"))
        await store.save_session(session)

        resolution = await ToolExecutionGate(store).resolve(
            "s1", "a", ToolOutcome.completed("Sunny"),
        )

        assert resolution.changed
        assert not resolution.released
        assert _tool_results(await store.load_session("s1")) == []


# ---------------------------------------------------------------------------
# pending_tool_calls
# ---------------------------------------------------------------------------

def test_pending_tool_calls_only_looks_at_latest_assistant():
    older = _assistant_with_calls("old")
    session = Session(transcript=[older, UserMessage(content="hi"), AssistantMessage(content="ok")])
    assert pending_tool_calls(session) == []


def test_pending_tool_calls_empty_without_assistant():
    assert pending_tool_calls(Session()) == []
