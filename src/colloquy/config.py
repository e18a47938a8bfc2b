import logging
import os

from pydantic import BaseModel

from colloquy.provider import (
    ModelProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    OpenRouter,
)
from colloquy.store import InMemorySessionStore, SessionStore, SQLiteSessionStore

LOG_FORMAT = '%(asctime)s:%(name)s:%(levelname)s:%(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def configure_logging(level: str | int = logging.INFO, log_file: str | None = None) -> None:
    """Install colloquy's log format on the ``colloquy`` logger.

    The library never configures logging on import; applications call this
    once at startup if they want it.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    root = logging.getLogger("colloquy")
    root.setLevel(level)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)


class Settings(BaseModel):
    """Runtime configuration.

    ``provider`` is one of ``openai``, ``openrouter`` or ``compatible``;
    ``compatible`` requires ``base_url``.  API keys are not stored here:
    providers read ``OPENAI_API_KEY`` / ``OPENROUTER_API_KEY`` themselves,
    and ``api_key`` is only used for ``compatible`` endpoints.
    """

    provider: str = "openai"
    base_url: str | None = None
    api_key: str | None = None
    model: str = "gpt-4o-mini"
    title_model: str | None = None
    system_prompt: str = ""
    db_path: str | None = None
    indicator_delay: float = 0.5
    max_auto_turns: int = 10
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        values = {
            "provider": os.getenv("COLLOQUY_PROVIDER"),
            "base_url": os.getenv("COLLOQUY_BASE_URL"),
            "api_key": os.getenv("COLLOQUY_API_KEY"),
            "model": os.getenv("COLLOQUY_MODEL"),
            "title_model": os.getenv("COLLOQUY_TITLE_MODEL"),
            "system_prompt": os.getenv("COLLOQUY_SYSTEM_PROMPT"),
            "db_path": os.getenv("COLLOQUY_DB_PATH"),
            "indicator_delay": os.getenv("COLLOQUY_INDICATOR_DELAY"),
            "max_auto_turns": os.getenv("COLLOQUY_MAX_AUTO_TURNS"),
            "log_level": os.getenv("COLLOQUY_LOG_LEVEL"),
        }
        return cls(**{k: v for k, v in values.items() if v is not None})


def build_provider(settings: Settings) -> ModelProvider:
    kind = settings.provider.lower()
    if kind == "openai":
        return OpenAIProvider()
    if kind == "openrouter":
        return OpenRouter()
    if kind == "compatible":
        if not settings.base_url:
            raise ValueError("COLLOQUY_BASE_URL is required for a compatible provider")
        return OpenAICompatibleProvider(
            base_url=settings.base_url, api_key=settings.api_key,
        )
    raise ValueError(f"Unknown provider '{settings.provider}'")


async def build_store(settings: Settings) -> SessionStore:
    """SQLite when ``db_path`` is set, otherwise in-memory."""
    if not settings.db_path:
        return InMemorySessionStore()
    store = SQLiteSessionStore(settings.db_path)
    await store.init()
    return store
