"""Streaming events emitted while a turn runs.

Everything except :class:`TurnCompleteEvent` is non-authoritative UI
state: it may be dropped or overwritten and is never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class StreamEvent:
    """Base for all streaming events."""

    session_id: str = ""


@dataclass
class TurnStateEvent(StreamEvent):
    """The turn moved to a new state (``streaming``, ``completed``, ...)."""

    state: str = ""


@dataclass
class RespondingIndicatorEvent(StreamEvent):
    """No fragment has arrived yet after the indicator delay; show a
    provisional "assistant is responding" marker."""


@dataclass
class FragmentEvent(StreamEvent):
    """Incremental preview after one fragment was folded in."""

    text_delta: str = ""
    reasoning_delta: str = ""
    text: str = ""
    reasoning_text: str = ""
    tool_calls: list[dict] = field(default_factory=list)


@dataclass
class TurnCompleteEvent(StreamEvent):
    """Final event of a turn; always the last event yielded."""

    result: Any = None
