import asyncio
from dataclasses import dataclass

import pytest

from colloquy.message import Usage
from colloquy.provider import ModelProvider
from colloquy.store import InMemorySessionStore
from colloquy.streaming import Fragment, ToolCallDelta
from colloquy.tools import tool


# ---------------------------------------------------------------------------
# Script items understood by MockProvider besides plain fragments
# ---------------------------------------------------------------------------

@dataclass
class Delay:
    """Sleep before delivering the next fragment."""
    seconds: float


@dataclass
class Stall:
    """Block until *release* is set, or forever when it is None."""
    release: asyncio.Event | None = None


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

class MockProvider(ModelProvider):
    """Provider that streams pre-queued fragment scripts. No network calls.

    Each entry of ``turns`` is consumed by one ``stream_turn`` call and is
    either an exception (raised before the first fragment) or a list of
    fragments, exceptions, :class:`Delay` and :class:`Stall` items.
    ``completions`` feeds ``complete`` the same way.
    """

    name = "mock"

    def __init__(self):
        self.turns: list = []
        self.completions: list = []
        self.call_log: list[dict] = []
        self.completion_log: list[dict] = []
        self.closed_streams = 0

    async def stream_turn(self, model, messages, tools=None, cancel_token=None):
        self.call_log.append({"model": model, "messages": messages, "tools": tools})
        script = self.turns.pop(0)
        if isinstance(script, Exception):
            raise script
        try:
            for item in script:
                if isinstance(item, Exception):
                    raise item
                if isinstance(item, Delay):
                    await asyncio.sleep(item.seconds)
                    continue
                if isinstance(item, Stall):
                    await (item.release or asyncio.Event()).wait()
                    continue
                yield item
        finally:
            self.closed_streams += 1

    async def complete(self, model, messages, max_tokens=None, temperature=None):
        self.completion_log.append({
            "model": model, "messages": messages,
            "max_tokens": max_tokens, "temperature": temperature,
        })
        item = self.completions.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, Stall):
            await item.release.wait()
            return self.completions.pop(0)
        return item


# ---------------------------------------------------------------------------
# Fragment builder helpers
# ---------------------------------------------------------------------------

def text(content: str) -> Fragment:
    return Fragment(text=content)


def reasoning(content: str) -> Fragment:
    return Fragment(reasoning_text=content)


def usage(prompt: int, completion: int) -> Fragment:
    return Fragment(usage=Usage(
        prompt_tokens=prompt, completion_tokens=completion,
        total_tokens=prompt + completion,
    ))


def tool_delta(index=None, id=None, name=None, arguments=None) -> Fragment:
    """Fragment carrying a single tool-call delta."""
    return Fragment(tool_call_deltas=[
        ToolCallDelta(index=index, id=id, name=name, arguments=arguments),
    ])


def weather_call(call_id: str, city: str, index: int = 0) -> list[Fragment]:
    """A get_weather call streamed in three pieces, addressed by index."""
    return [
        tool_delta(index=index, id=call_id, name="get_weather", arguments=""),
        tool_delta(index=index, arguments='{"city":'),
        tool_delta(index=index, arguments=f'"{city}"}}'),
    ]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@tool
def get_weather(city: str):
    """Look up the current weather.

    Args:
        city: City name.
    """
    return f"Sunny in {city}"


@pytest.fixture
def mock_provider():
    return MockProvider()


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def weather_tool():
    return get_weather


@pytest.fixture
def sample_tool():
    @tool
    def greet(name: str):
        """Say hello."""
        return f"Hello {name}"
    return greet


@pytest.fixture
def sample_async_tool():
    @tool
    async def async_greet(name: str):
        """Async greeting."""
        return f"Hello async {name}"
    return async_greet
