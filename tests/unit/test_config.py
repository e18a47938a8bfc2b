import logging

import pytest

from colloquy.config import LOG_FORMAT, Settings, build_provider, build_store, configure_logging
from colloquy.provider import OpenAICompatibleProvider, OpenAIProvider, OpenRouter
from colloquy.store import InMemorySessionStore, SQLiteSessionStore


@pytest.fixture
def clean_env(monkeypatch):
    for var in (
        "PROVIDER", "BASE_URL", "API_KEY", "MODEL", "TITLE_MODEL",
        "SYSTEM_PROMPT", "DB_PATH", "INDICATOR_DELAY", "MAX_AUTO_TURNS", "LOG_LEVEL",
    ):
        monkeypatch.delenv(f"COLLOQUY_{var}", raising=False)
    return monkeypatch


class TestSettingsFromEnv:
    def test_defaults(self, clean_env):
        settings = Settings.from_env()
        assert settings == Settings()
        assert settings.provider == "openai"
        assert settings.indicator_delay == 0.5

    def test_reads_and_coerces_variables(self, clean_env):
        clean_env.setenv("COLLOQUY_PROVIDER", "compatible")
        clean_env.setenv("COLLOQUY_BASE_URL", "http://localhost:11434/v1")
        clean_env.setenv("COLLOQUY_MODEL", "llama3")
        clean_env.setenv("COLLOQUY_INDICATOR_DELAY", "0.25")
        clean_env.setenv("COLLOQUY_MAX_AUTO_TURNS", "3")

        settings = Settings.from_env()

        assert settings.provider == "compatible"
        assert settings.base_url == "http://localhost:11434/v1"
        assert settings.model == "llama3"
        assert settings.indicator_delay == 0.25
        assert settings.max_auto_turns == 3


class TestBuildProvider:
    def test_openai(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert type(build_provider(Settings(provider="openai"))) is OpenAIProvider

    def test_openrouter(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "or-test")
        assert isinstance(build_provider(Settings(provider="OpenRouter")), OpenRouter)

    def test_compatible(self):
        provider = build_provider(Settings(
            provider="compatible", base_url="http://localhost:8000/v1/", api_key="k",
        ))
        assert isinstance(provider, OpenAICompatibleProvider)
        assert provider.base_url == "http://localhost:8000/v1"

    def test_compatible_requires_base_url(self):
        with pytest.raises(ValueError, match="BASE_URL"):
            build_provider(Settings(provider="compatible"))

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            build_provider(Settings(provider="carrier-pigeon"))


class TestBuildStore:
    @pytest.mark.asyncio
    async def test_in_memory_by_default(self):
        assert isinstance(await build_store(Settings()), InMemorySessionStore)

    @pytest.mark.asyncio
    async def test_sqlite_when_db_path_set(self, tmp_path):
        store = await build_store(Settings(db_path=str(tmp_path / "chat.db")))
        assert isinstance(store, SQLiteSessionStore)
        assert (tmp_path / "chat.db").exists()


def test_configure_logging_installs_format(tmp_path):
    logger = logging.getLogger("colloquy")
    before = list(logger.handlers)
    try:
        configure_logging("DEBUG", log_file=str(tmp_path / "colloquy.log"))
        added = [h for h in logger.handlers if h not in before]
        assert len(added) == 2
        assert logger.level == logging.DEBUG
        assert all(h.formatter._fmt == LOG_FORMAT for h in added)
    finally:
        for handler in logger.handlers[len(before):]:
            handler.close()
            logger.removeHandler(handler)
        logger.setLevel(logging.NOTSET)
