import logging
import os
from collections.abc import AsyncIterator

from openai import AsyncOpenAI

from colloquy.cancellation import CancellationToken
from colloquy.message import Usage
from colloquy.streaming import Fragment, ToolCallDelta

logger = logging.getLogger(__name__)


class ModelProvider:
    """Opaque model endpoint.

    ``stream_turn`` yields the lazy fragment sequence for one turn;
    ``complete`` returns a whole non-streamed answer and is used for side
    activities such as title generation.
    """

    name: str = "custom"

    async def stream_turn(
            self,
            model: str,
            messages: list[dict],
            tools: list[dict] | None = None,
            cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[Fragment]:
        raise NotImplementedError
        yield  # pragma: no cover

    async def complete(
            self,
            model: str,
            messages: list[dict],
            max_tokens: int | None = None,
            temperature: float | None = None,
    ) -> str:
        raise NotImplementedError


def _reasoning_of(delta) -> str | None:
    # DeepSeek-style endpoints send ``reasoning_content``, aggregators
    # send ``reasoning``.
    for attr in ("reasoning_content", "reasoning"):
        value = getattr(delta, attr, None)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _usage_of(usage) -> Usage | None:
    if usage is None:
        return None
    return Usage(
        prompt_tokens=getattr(usage, "prompt_tokens", None) or 0,
        completion_tokens=getattr(usage, "completion_tokens", None) or 0,
        total_tokens=getattr(usage, "total_tokens", None) or 0,
    )


def fragment_from_chunk(chunk) -> Fragment | None:
    """Normalise one chat-completions stream chunk.

    Returns ``None`` for chunks that carry nothing (role-only deltas,
    empty keep-alives).
    """
    choices = getattr(chunk, "choices", None) or []
    delta = choices[0].delta if choices else None
    fragment = Fragment(usage=_usage_of(getattr(chunk, "usage", None)))
    if delta is not None:
        fragment.text = getattr(delta, "content", None) or None
        fragment.reasoning_text = _reasoning_of(delta)
        raw_calls = getattr(delta, "tool_calls", None) or []
        if raw_calls:
            fragment.tool_call_deltas = [
                ToolCallDelta(
                    index=getattr(tc, "index", None),
                    id=getattr(tc, "id", None),
                    name=getattr(tc.function, "name", None) if tc.function else None,
                    arguments=getattr(tc.function, "arguments", None) if tc.function else None,
                )
                for tc in raw_calls
            ]
    if (
        fragment.text is None
        and fragment.reasoning_text is None
        and fragment.tool_call_deltas is None
        and fragment.usage is None
    ):
        return None
    return fragment


class OpenAIProvider(ModelProvider):

    name = "OpenAI"

    def __init__(self, api_key: str | None = None):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        self.client = AsyncOpenAI(
            api_key=api_key,
            max_retries=5,
            timeout=600.0
        )

    async def stream_turn(
            self,
            model: str,
            messages: list[dict],
            tools: list[dict] | None = None,
            cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[Fragment]:
        kwargs = dict(
            model=model,
            messages=messages,
            stream=True,
            stream_options={"include_usage": True},
        )
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        stream = await self.client.chat.completions.create(**kwargs)
        try:
            async for chunk in stream:
                if cancel_token is not None and cancel_token.cancelled:
                    logger.debug("Stream cancelled; closing")
                    break
                fragment = fragment_from_chunk(chunk)
                if fragment is not None:
                    yield fragment
        finally:
            await stream.close()

    async def complete(
            self,
            model: str,
            messages: list[dict],
            max_tokens: int | None = None,
            temperature: float | None = None,
    ) -> str:
        kwargs = dict(model=model, messages=messages)
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if temperature is not None:
            kwargs["temperature"] = temperature
        response = await self.client.chat.completions.create(**kwargs)
        return response.choices[0].message.content or ""


class OpenRouter(OpenAIProvider):
    """OpenRouter aggregator.  Its continuation deltas may omit the
    tool-call id; the reconciler handles that by index."""

    name = "OpenRouter"

    def __init__(self, api_key: str | None = None):
        if not api_key:
            api_key = os.getenv("OPENROUTER_API_KEY")
        self.client = AsyncOpenAI(
            base_url="https://openrouter.ai/api/v1",
            api_key=api_key,
            max_retries=5,
            timeout=180.0
        )


class OpenAICompatibleProvider(OpenAIProvider):
    """Any endpoint speaking the OpenAI chat-completions protocol
    (vLLM, Ollama, LM Studio, DeepSeek, ...)."""

    def __init__(
            self,
            base_url: str,
            api_key: str | None = None,
            name: str = "OpenAI-compatible",
    ):
        self.base_url = base_url.rstrip("/")
        self.name = name
        self.client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key or "DUMMY",
        )
