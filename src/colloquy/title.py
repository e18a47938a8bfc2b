from __future__ import annotations

import logging
import re

from colloquy.provider import ModelProvider
from colloquy.session import DEFAULT_SESSION_NAME

logger = logging.getLogger(__name__)

_MAX_TITLE_LENGTH = 50
_PROMPT_INPUT_LIMIT = 500

_SYSTEM_PROMPT = (
    "You are a title generator that uses the user's conversation language. "
    "Generate very short, concise titles (2-5 words) capturing the main "
    "topic. Return only the title, no quotes or extra text."
)


def simple_title(text: str) -> str:
    """Derive a title from the first few meaningful words of *text*."""
    clean = re.sub(r"[^\w\s]", "", text.strip())[:100]
    words = [w for w in clean.split() if len(w) > 2][:4]
    if not words:
        return DEFAULT_SESSION_NAME
    return " ".join(w.capitalize() for w in words)[:_MAX_TITLE_LENGTH]


class TitleGenerator:
    """Summarises a first user message into a short session title.

    Args:
        provider: Endpoint used for the summary request.
        model: Model name, usually a small and cheap one.
    """

    def __init__(self, provider: ModelProvider, model: str):
        self.provider = provider
        self.model = model

    async def generate_title(self, text: str) -> str:
        prompt = (
            "Generate a very short title (2-5 words) that summarizes the "
            f'topic or main point:\n\n"{text[:_PROMPT_INPUT_LIMIT]}"'
        )
        try:
            raw = await self.provider.complete(
                self.model,
                [
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=20,
                temperature=0.3,
            )
        except Exception as exc:
            logger.warning("Failed to generate session title via LLM: %s", exc)
            return simple_title(text)

        title = re.sub(r"['\"]", "", (raw or "").strip())[:_MAX_TITLE_LENGTH]
        return title or simple_title(text)
