from datetime import UTC, datetime
from pathlib import Path

from pydantic_settings import BaseSettings


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime.

    Replaces the deprecated ``datetime.utcnow()`` while keeping datetimes
    naive so they stay compatible with SQLite (which doesn't store tz info).
    """
    return datetime.now(UTC).replace(tzinfo=None)


class Settings(BaseSettings):
    app_name: str = "StudyCards"
    database_url: str = f"sqlite+aiosqlite:///{Path(__file__).resolve().parent.parent / 'data' / 'studycards.db'}"
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "openai/gpt-4o-mini"
    openrouter_model_allowlist: list[str] = []
    openrouter_timeout_seconds: float = 30.0
    openrouter_max_retries: int = 2
    openrouter_retry_backoff_ms: int = 1000
    max_input_characters: int | None = None
    generation_timeout_seconds: float = 30.0
    source_text_min_length: int = 1000
    source_text_max_length: int = 5000
    mock_ai_service: bool = False
    mock_ai_delay_seconds: float = 1.0
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = False

    model_config = {"env_prefix": "STUDYCARDS_", "env_file": ".env"}


settings = Settings()
