from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    """Application settings loaded from environment variables.

    Keep all credentials and config centralized here.
    """

    def __init__(self) -> None:
        self.app_env: str = os.getenv("APP_ENV", "development")
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")
        self.google_api_key: Optional[str] = os.getenv("GOOGLE_API_KEY") or None
        self.gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
        self.temperature: float = float(os.getenv("MODEL_TEMPERATURE", "0.3"))
        self.top_p: float = float(os.getenv("MODEL_TOP_P", "0.9"))

        self.max_messages_in_context: int = int(os.getenv("MAX_MESSAGES_IN_CONTEXT", "15"))
        self.max_stored_messages: int = int(os.getenv("MAX_STORED_MESSAGES", "100"))
        self.history_key: str = os.getenv("HISTORY_KEY", "conversation_history")
        self.clear_command: str = os.getenv("CLEAR_COMMAND", "(clear requested)")
        self.reject_duplicates: bool = _env_bool("REJECT_DUPLICATE_MESSAGES", "true")

        self.store_backend: str = os.getenv("STORE_BACKEND", "memory").lower()
        self.store_dir: str = os.getenv("STORE_DIR", ".data/conversations")

        if self.max_messages_in_context < 1:
            raise ValueError("MAX_MESSAGES_IN_CONTEXT must be at least 1")
        if self.max_stored_messages <= self.max_messages_in_context:
            raise ValueError(
                "MAX_STORED_MESSAGES must be greater than MAX_MESSAGES_IN_CONTEXT"
            )

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() in {"dev", "development", "local"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
