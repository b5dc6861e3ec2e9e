"""Runtime configuration for the turn pipeline."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclasses.dataclass(frozen=True)
class PipelineSettings:
    """Tunables for retrieval, prompting, invocation and background work."""

    database_url: str | None = None
    default_model: str = "gpt-4"
    retrieval_top_k: int = 5
    history_limit: int = 10
    history_fetch_limit: int = 20
    prompt_char_budget: int = 12000
    model_max_attempts: int = 3
    model_retry_base_delay: float = 0.5
    model_retry_max_delay: float = 8.0
    turn_timeout_seconds: float = 60.0
    response_confidence: float = 0.95
    embedding_model: str = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"
    embedding_dim: int = 384
    worker_concurrency: int = 4
    work_max_attempts: int = 5
    max_message_length: int = 5000
    chat_rate_limit: str = "30/minute"
    agent_config_file: str | None = None

    def __post_init__(self) -> None:
        if not 0 < self.response_confidence <= 1:
            raise ValueError("response_confidence must be within (0, 1]")
        if self.model_max_attempts < 1:
            raise ValueError("model_max_attempts must be at least 1")
        if self.history_limit < 0:
            raise ValueError("history_limit cannot be negative")


@lru_cache(maxsize=1)
def get_settings() -> PipelineSettings:
    """Load settings from the environment with development defaults."""

    defaults = PipelineSettings()
    return PipelineSettings(
        database_url=os.getenv("DATABASE_URL") or None,
        default_model=os.getenv("DEFAULT_MODEL", defaults.default_model),
        retrieval_top_k=_env_int("RETRIEVAL_TOP_K", defaults.retrieval_top_k),
        history_limit=_env_int("HISTORY_LIMIT", defaults.history_limit),
        history_fetch_limit=_env_int(
            "HISTORY_FETCH_LIMIT", defaults.history_fetch_limit
        ),
        prompt_char_budget=_env_int("PROMPT_CHAR_BUDGET", defaults.prompt_char_budget),
        model_max_attempts=_env_int("MODEL_MAX_ATTEMPTS", defaults.model_max_attempts),
        model_retry_base_delay=_env_float(
            "MODEL_RETRY_BASE_DELAY", defaults.model_retry_base_delay
        ),
        model_retry_max_delay=_env_float(
            "MODEL_RETRY_MAX_DELAY", defaults.model_retry_max_delay
        ),
        turn_timeout_seconds=_env_float(
            "TURN_TIMEOUT_SECONDS", defaults.turn_timeout_seconds
        ),
        response_confidence=_env_float(
            "RESPONSE_CONFIDENCE", defaults.response_confidence
        ),
        embedding_model=os.getenv("EMBEDDING_MODEL", defaults.embedding_model),
        embedding_dim=_env_int("EMBEDDING_DIM", defaults.embedding_dim),
        worker_concurrency=_env_int("WORKER_CONCURRENCY", defaults.worker_concurrency),
        work_max_attempts=_env_int("WORK_MAX_ATTEMPTS", defaults.work_max_attempts),
        max_message_length=_env_int(
            "CHAT_MAX_MESSAGE_LENGTH", defaults.max_message_length
        ),
        chat_rate_limit=os.getenv("CHAT_RATE_LIMIT", defaults.chat_rate_limit),
        agent_config_file=os.getenv("AGENT_CONFIG_FILE") or None,
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()


__all__ = ["PipelineSettings", "get_settings", "reset_settings_cache"]
