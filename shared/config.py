"""
Runtime configuration for the execution core.

Values come from the environment (optionally a local .env file) and are
frozen into an ExecutionSettings instance that is passed explicitly to
the components that need it.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-3.5-sonnet"


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip() or default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid numeric value for %s=%r; using default %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


class ExecutionSettings(BaseModel):
    """Frozen settings snapshot shared by one pipeline instance."""

    model_config = {"frozen": True}

    generation_base_url: str = Field(default=DEFAULT_BASE_URL)
    generation_api_key: str = Field(default="")
    generation_model: str = Field(default=DEFAULT_MODEL)
    generation_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    retry_temperature: float = Field(default=0.5, ge=0.0, le=2.0)
    request_timeout_seconds: float = Field(default=300.0, gt=0.0)
    generation_timeout_seconds: float = Field(default=270.0, gt=0.0)
    app_url: str = Field(default="http://localhost:3010")
    app_title: str = Field(default="Marketing AI Beta")
    max_context_tokens: int = Field(default=100_000, ge=1)
    max_knowledge_item_tokens: int = Field(default=20_000, ge=1)
    raw_output_cap_chars: int = Field(default=10_000, ge=1)
    knowledge_db_path: str = Field(default="knowledge.db")
    registry_db_path: str = Field(default="registry.db")

    @model_validator(mode="after")
    def clamp_generation_timeout(self) -> "ExecutionSettings":
        # The generation call must be abortable before the outer deadline.
        if self.generation_timeout_seconds >= self.request_timeout_seconds:
            clamped = round(self.request_timeout_seconds * 0.9, 3)
            logger.warning(
                "generation_timeout_seconds=%s is not below request_timeout_seconds=%s; clamping to %s",
                self.generation_timeout_seconds,
                self.request_timeout_seconds,
                clamped,
            )
            object.__setattr__(self, "generation_timeout_seconds", clamped)
        return self

    @classmethod
    def from_env(cls, load_dotenv_file: bool = True) -> "ExecutionSettings":
        if load_dotenv_file:
            load_dotenv(override=False)
        return cls(
            generation_base_url=_env_str("GENERATION_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
            generation_api_key=_env_str("GENERATION_API_KEY") or _env_str("OPENROUTER_API_KEY"),
            generation_model=_env_str("GENERATION_MODEL", DEFAULT_MODEL),
            generation_temperature=_env_float("GENERATION_TEMPERATURE", 0.7),
            retry_temperature=_env_float("GENERATION_RETRY_TEMPERATURE", 0.5),
            request_timeout_seconds=_env_float("EXECUTION_REQUEST_TIMEOUT_SECONDS", 300.0),
            generation_timeout_seconds=_env_float("GENERATION_TIMEOUT_SECONDS", 270.0),
            app_url=_env_str("APP_URL", "http://localhost:3010"),
            app_title=_env_str("APP_TITLE", "Marketing AI Beta"),
            max_context_tokens=_env_int("MAX_CONTEXT_TOKENS", 100_000),
            max_knowledge_item_tokens=_env_int("MAX_KNOWLEDGE_ITEM_TOKENS", 20_000),
            raw_output_cap_chars=_env_int("RAW_OUTPUT_CAP_CHARS", 10_000),
            knowledge_db_path=_env_str("KNOWLEDGE_DB_PATH", "knowledge.db"),
            registry_db_path=_env_str("REGISTRY_DB_PATH", "registry.db"),
        )
