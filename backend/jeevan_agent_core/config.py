"""
Runtime settings for the Jeevan backend, read from the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_BACKEND_DIR = Path(__file__).resolve().parents[1]


@dataclass(frozen=True)
class LLMConfig:
    """OpenAI-compatible chat completion endpoint."""
    api_key: str
    base_url: str
    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float
    retry_attempts: int
    retry_backoff_seconds: float

    @property
    def available(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class Settings:
    db_path: str
    log_level: str
    prompt_version: str
    llm: LLMConfig


def load_settings() -> Settings:
    """Build settings from the environment, loading a local .env first if present."""
    load_dotenv(_BACKEND_DIR / ".env")
    load_dotenv()
    return Settings(
        db_path=os.getenv("JEEVAN_DB_PATH", str(_BACKEND_DIR / "jeevan.sqlite")),
        log_level=os.getenv("JEEVAN_LOG_LEVEL", "INFO"),
        prompt_version=os.getenv("JEEVAN_PROMPT_VERSION", "1.0.0"),
        llm=LLMConfig(
            api_key=(os.getenv("OPENAI_API_KEY") or "").strip(),
            base_url=os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
            model=(os.getenv("JEEVAN_CHAT_MODEL") or "gpt-4o-mini").strip(),
            temperature=float(os.getenv("JEEVAN_LLM_TEMPERATURE", "0.3")),
            max_tokens=int(os.getenv("JEEVAN_LLM_MAX_TOKENS", "2000")),
            timeout_seconds=float(os.getenv("JEEVAN_LLM_TIMEOUT_SECONDS", "30")),
            retry_attempts=max(1, int(os.getenv("JEEVAN_LLM_RETRY_ATTEMPTS", "3"))),
            retry_backoff_seconds=float(os.getenv("JEEVAN_LLM_RETRY_BACKOFF_SECONDS", "2.0")),
        ),
    )
