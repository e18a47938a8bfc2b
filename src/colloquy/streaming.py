"""Streaming primitives for provider responses.

Providers yield :class:`Fragment` objects.  The :class:`FragmentAccumulator`
folds them into the running text, reasoning text and usage of one turn, and
its :class:`ToolCallReconciler` reassembles tool calls whose arguments
arrive in pieces across many fragments.

Endpoints address argument continuations in two ways: some repeat the
tool-call id on every delta, others send id-less deltas keyed only by
index.  Both are folded into the same slots here.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Union
from uuid import uuid4

from colloquy.message import ToolCall, Usage

logger = logging.getLogger(__name__)


@dataclass
class ToolCallDelta:
    """One tool-call fragment as delivered by the endpoint."""

    index: int | None = None
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass
class Fragment:
    """Normalised streaming chunk from any provider."""

    text: str | None = None
    reasoning_text: str | None = None
    tool_call_deltas: list[ToolCallDelta] | None = None
    usage: Usage | None = None


@dataclass(frozen=True)
class NewToolCall:
    """A delta that opens a tool call: carries both an id and a name."""

    index: int | None
    id: str
    name: str
    arguments: str = ""


@dataclass(frozen=True)
class ArgumentContinuation:
    """A delta that only extends the argument string of an existing slot."""

    index: int | None
    id: str | None
    text: str = ""


ToolCallEvent = Union[NewToolCall, ArgumentContinuation]


def classify_delta(delta: ToolCallDelta) -> ToolCallEvent:
    if delta.id and delta.name:
        return NewToolCall(
            index=delta.index, id=delta.id, name=delta.name,
            arguments=delta.arguments or "",
        )
    return ArgumentContinuation(
        index=delta.index, id=delta.id or None, text=delta.arguments or "",
    )


@dataclass
class _Slot:
    id: str = ""
    name: str = ""
    arguments: str = ""

    @property
    def is_placeholder(self) -> bool:
        return not self.id or not self.name


class ToolCallReconciler:
    """Assembles tool calls from streaming deltas into ordered slots.

    Slot lookup: explicit index, then id match, then a new slot at the end.
    Argument strings only ever grow.
    """

    def __init__(self) -> None:
        self._slots: dict[int, _Slot] = {}

    def feed(self, delta: ToolCallDelta) -> None:
        event = classify_delta(delta)
        position = self._locate(event)
        slot = self._slots.get(position)

        if isinstance(event, NewToolCall):
            if slot is None:
                slot = self._slots[position] = _Slot(id=event.id, name=event.name)
            elif slot.is_placeholder:
                slot.id = event.id
                slot.name = event.name
            elif slot.id != event.id:
                # Index collision with a different call; keep both intact.
                logger.debug(
                    f"Tool call {event.id} collides with {slot.id} at slot "
                    f"{position}; appending"
                )
                position = self._next_position()
                slot = self._slots[position] = _Slot(id=event.id, name=event.name)
            slot.arguments += event.arguments
            return

        if slot is None:
            slot = self._slots[position] = _Slot(id=event.id or "")
        slot.arguments += event.text

    def _locate(self, event: ToolCallEvent) -> int:
        if event.index is not None:
            return event.index
        if event.id:
            for position, slot in self._slots.items():
                if slot.id == event.id:
                    return position
        return self._next_position()

    def _next_position(self) -> int:
        return max(self._slots) + 1 if self._slots else 0

    def preview(self) -> list[ToolCall]:
        """Working list in slot order, including calls still being built."""
        return [
            ToolCall(id=s.id, name=s.name, arguments=s.arguments)
            for _, s in sorted(self._slots.items())
        ]

    def freeze(self) -> list[ToolCall]:
        """Return completed tool calls in slot order.

        Calls whose argument string is blank were never really invoked
        and are dropped.
        """
        frozen = []
        for _, slot in sorted(self._slots.items()):
            if not slot.arguments.strip():
                continue
            frozen.append(ToolCall(
                id=slot.id or f"call_{uuid4().hex}",
                name=slot.name or "unknown",
                arguments=slot.arguments,
            ))
        return frozen


@dataclass
class FragmentAccumulator:
    """Running fold over the fragments of one turn."""

    clock: Callable[[], float] = time.monotonic
    text: str = ""
    reasoning_text: str = ""
    usage: Usage | None = None
    reasoning_duration_ms: int | None = None
    tool_calls: ToolCallReconciler = field(default_factory=ToolCallReconciler)
    _reasoning_started_at: float | None = field(default=None, init=False, repr=False)

    def feed(self, fragment: Fragment) -> None:
        if fragment.reasoning_text:
            if self._reasoning_started_at is None:
                self._reasoning_started_at = self.clock()
            self.reasoning_text += fragment.reasoning_text
        if fragment.text:
            if (
                self._reasoning_started_at is not None
                and self.reasoning_duration_ms is None
            ):
                elapsed = self.clock() - self._reasoning_started_at
                self.reasoning_duration_ms = int(elapsed * 1000)
            self.text += fragment.text
        if fragment.usage is not None:
            self.usage = fragment.usage
        for delta in fragment.tool_call_deltas or ():
            self.tool_calls.feed(delta)

    @property
    def has_partial_content(self) -> bool:
        """Whether a cancelled turn has anything worth keeping."""
        return bool(self.text.strip() or self.reasoning_text.strip())
