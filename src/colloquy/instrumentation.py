"""Optional OpenTelemetry instrumentation for colloquy.

Call ``colloquy.instrumentation.instrument()`` once at startup to enable tracing.
Requires ``opentelemetry-api`` to be installed; the library
works identically without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "colloquy") -> None:
    """Enable OpenTelemetry tracing for turns, completions and tool runs.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install colloquy[otel]``

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        from colloquy.instrumentation import instrument
        instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install colloquy[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured; spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("colloquy instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def _traced(name: str, attributes: dict, *, current: bool = False, client: bool = False):
    if _tracer is None:
        yield None
        return
    options = {"attributes": attributes}
    if client:
        from opentelemetry.trace import SpanKind
        options["kind"] = SpanKind.CLIENT
    start = _tracer.start_as_current_span if current else _tracer.start_span
    with start(name, **options) as span:
        yield span


def turn_span(session_id: str, model: str):
    """Span around one turn (``invoke_agent``).

    Not made current: a turn yields events while the span is open, and an
    attached context must not outlive a suspension point.
    """
    return _traced("invoke_agent turn", {
        "gen_ai.operation.name": "invoke_agent",
        "gen_ai.conversation.id": session_id,
        "gen_ai.request.model": model,
    })


def completion_span(system: str, model: str):
    """Span around the provider stream (``chat``)."""
    return _traced(f"chat {model}", {
        "gen_ai.operation.name": "chat",
        "gen_ai.provider.name": system,
        "gen_ai.request.model": model,
    }, client=True)


def tool_span(tool_name: str, call_id: str):
    """Span around an automated tool execution (``execute_tool``)."""
    return _traced(f"execute_tool {tool_name}", {
        "gen_ai.operation.name": "execute_tool",
        "gen_ai.tool.name": tool_name,
        "gen_ai.tool.call.id": call_id,
    }, current=True)


def record_usage(span, usage) -> None:
    """Set token-usage attributes on a span."""
    if span is None or usage is None:
        return
    span.set_attribute("gen_ai.usage.input_tokens", usage.prompt_tokens)
    span.set_attribute("gen_ai.usage.output_tokens", usage.completion_tokens)


def record_outcome(span, state: str) -> None:
    if span is None:
        return
    span.set_attribute("colloquy.turn.outcome", state)


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    Sets ``error.type`` per GenAI semantic conventions.
    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute(
        "error.type", type(exception).__qualname__
    )
