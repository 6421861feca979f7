# order_agent/config.py
"""
Application settings (Pydantic Settings).

Everything tunable lives here and is read from the environment or from a
`.env` file next to the repository root. Modules import the shared
`settings` instance and read upper-case attributes from it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_env_path = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=_env_path, extra="ignore")

    # Reasoning service (orchestrator)
    OPENAI_API_KEY: str = ""
    LLM_ROUTER_MODEL: str = "gpt-4o-mini"
    LLM_TIMEOUT_SECONDS: float = 10.0

    # Messaging gateway (Evolution-style sendText API)
    GATEWAY_BASE_URL: str = ""
    GATEWAY_INSTANCE: str = ""
    GATEWAY_TOKEN: str = ""

    # Outbound delivery
    DELIVERY_MAX_ATTEMPTS: int = 3
    DELIVERY_TIMEOUT_SECONDS: float = 15.0
    DELIVERY_BASE_DELAY_MS: int = 1000
    DELIVERY_MAX_DELAY_MS: int = 10000
    DELIVERY_JITTER_RATIO: float = 0.3
    MESSAGE_CHUNK_MAX_CHARS: int = 240

    # Debounce + lifecycle sweeps
    DEBOUNCE_SECONDS: int = 8
    DEBOUNCE_SWEEP_INTERVAL_SECONDS: int = 2
    SESSION_IDLE_HOURS: int = 12
    EXPIRY_SWEEP_INTERVAL_MINUTES: int = 60

    # Order hand-off (best effort)
    ORDER_WEBHOOK_URL: str = ""

    # Misc
    SEED_DATA_PATH: Optional[str] = None
    RESTAURANT_TIMEZONE: str = "America/Sao_Paulo"
    LOG_LEVEL: str = "INFO"

    @field_validator("OPENAI_API_KEY", "GATEWAY_TOKEN", "GATEWAY_INSTANCE", mode="after")
    @classmethod
    def strip_tokens(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator("GATEWAY_BASE_URL", "ORDER_WEBHOOK_URL", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return (v or "").strip().rstrip("/")


settings = Settings()
