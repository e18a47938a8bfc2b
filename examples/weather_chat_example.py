"""Interactive chat with a weather agent.

Demonstrates:
- Loading Settings from COLLOQUY_* environment variables
- Streaming fragments to the terminal through Conversation.subscribe
- Automated tool execution, or resolving tool calls by hand with --manual
- Editing history with /retry and /edit

Usage (install with `pip install -e ".[examples]"`):
    uv run --env-file=.env examples/weather_chat_example.py --model gpt-4o-mini --trace
    COLLOQUY_PROVIDER=compatible COLLOQUY_BASE_URL=http://localhost:11434/v1 \\
        uv run examples/weather_chat_example.py --model llama3.1 --manual
"""

import argparse
import asyncio
import random

from colloquy.agent import Agent
from colloquy.config import Settings, configure_logging
from colloquy.conversation import Conversation
from colloquy.events import FragmentEvent, RespondingIndicatorEvent, TurnCompleteEvent
from colloquy.gate import ToolOutcome, pending_tool_calls
from colloquy.message import AssistantMessage, UserMessage
from colloquy.tools import LLMRecoverableError, tool


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from colloquy.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


@tool
def get_weather(city: str, unit: str = "celsius"):
    """Look up the current weather for a city.

    Args:
        city: City name, e.g. "Paris".
        unit: "celsius" or "fahrenheit".
    """
    if unit not in ("celsius", "fahrenheit"):
        raise LLMRecoverableError(f"Unknown unit '{unit}'; use celsius or fahrenheit")
    temp = random.randint(5, 30)
    if unit == "fahrenheit":
        temp = round(temp * 9 / 5 + 32)
    return {"city": city, "temperature": temp, "unit": unit, "sky": random.choice(["sunny", "cloudy", "rain"])}


def print_events(event):
    if isinstance(event, RespondingIndicatorEvent):
        print("...", end="", flush=True)
    elif isinstance(event, FragmentEvent) and event.text_delta:
        print(event.text_delta, end="", flush=True)
    elif isinstance(event, TurnCompleteEvent):
        print()


async def resolve_by_hand(conv: Conversation, session_id: str):
    """Ask the user for every pending tool result."""
    session = await conv.store.load_session(session_id)
    _, message = session.last_assistant()
    for call_id in pending_tool_calls(session):
        call = next(tc for tc in message.tool_calls if tc.id == call_id)
        answer = input(f"[tool] {call.name}({call.arguments}) result (prefix '!' to fail): ")
        if answer.startswith("!"):
            outcome = ToolOutcome.failed(answer[1:].strip() or "failed")
        else:
            outcome = ToolOutcome.completed(answer)
        await conv.resolve_tool_call(session_id, call_id, outcome)


async def main():
    parser = argparse.ArgumentParser(description="Weather chat")
    parser.add_argument("--model", default=None)
    parser.add_argument("--manual", action="store_true", help="Resolve tool calls by hand")
    parser.add_argument("--trace", action="store_true")
    args = parser.parse_args()

    settings = Settings.from_env()
    if args.model:
        settings.model = args.model
    configure_logging(settings.log_level)
    if args.trace:
        setup_tracing("weather-chat")

    agent = Agent(
        id="weather",
        name="Weather",
        system_prompt=(
            "You are a friendly weather assistant. Use get_weather whenever "
            "the user asks about current conditions."
        ),
        tools=[get_weather],
    )
    conv = await Conversation.from_settings(
        settings, agents=[agent], auto_run_tools=not args.manual,
    )
    conv.subscribe(print_events)
    session = await conv.create_session(agent_id="weather")
    sid = session.session_id

    print("Weather chat. Commands: /retry, /edit <text>, /quit\n")

    while True:
        try:
            user_input = input("You: ")
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            break

        if user_input == "/quit":
            break
        session = await conv.store.load_session(sid)
        if user_input == "/retry":
            latest = session.last_assistant()
            if latest is None:
                print("Nothing to retry.\n")
                continue
            await conv.retry(sid, latest[1].id)
        elif user_input.startswith("/edit "):
            users = [m for m in session.transcript if isinstance(m, UserMessage)]
            if not users:
                print("Nothing to edit.\n")
                continue
            await conv.edit(sid, users[-1].id, user_input[len("/edit "):])
        else:
            await conv.send(sid, user_input)

        while args.manual and pending_tool_calls(await conv.store.load_session(sid)):
            await resolve_by_hand(conv, sid)

        session = await conv.store.load_session(sid)
        last = session.transcript[-1] if session.transcript else None
        if isinstance(last, AssistantMessage) and last.error:
            print("(request failed; type /retry to try again)")
        print()

    await conv.wait_for_background()


if __name__ == "__main__":
    asyncio.run(main())
