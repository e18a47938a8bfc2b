"""Server-Sent Events adapter for turn events."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import asdict

from colloquy.events import StreamEvent, TurnCompleteEvent


def _complete_payload(event: TurnCompleteEvent) -> dict:
    result = event.result
    if result is None:
        return {"session_id": event.session_id}
    message = result.message
    return {
        "session_id": event.session_id,
        "state": result.state.value,
        "message": message.model_dump(mode="json") if message is not None else None,
        "awaiting_tools": result.awaiting_tools,
    }


async def sse_generator(
    event_stream: AsyncIterator[StreamEvent],
) -> AsyncIterator[str]:
    """Convert a StreamEvent async iterator into SSE-formatted strings."""
    async for event in event_stream:
        event_type = type(event).__name__
        if isinstance(event, TurnCompleteEvent):
            data = json.dumps(_complete_payload(event))
        else:
            data = json.dumps(asdict(event))
        yield f"event: {event_type}\ndata: {data}\n\n"
    yield "event: done\ndata: {}\n\n"
