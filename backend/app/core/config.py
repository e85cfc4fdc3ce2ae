from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


@dataclass(frozen=True)
class Settings:
    google_api_key: str | None
    openai_api_key: str | None
    generation_model_id: str
    default_judge_model_id: str
    images_per_llm_call: int
    default_llm_calls_per_run: int
    min_llm_calls_per_run: int
    max_llm_calls_per_run: int
    use_judges: bool
    run_max_age_seconds: float
    run_cleanup_interval_seconds: float
    request_timeout_seconds: float
    host: str = "127.0.0.1"
    port: int = 8000

    @property
    def default_images_per_run(self) -> int:
        return self.default_llm_calls_per_run * self.images_per_llm_call


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _parse_positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value <= 0:
        return default
    return value


def _parse_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        google_api_key=os.getenv("GOOGLE_GENERATIVE_AI_API_KEY"),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        generation_model_id=os.getenv("GENERATION_MODEL_ID", "gemini-2.5-flash-image"),
        default_judge_model_id=os.getenv("DEFAULT_JUDGE_MODEL_ID", "gemini-3-pro-preview"),
        images_per_llm_call=_parse_positive_int("IMAGES_PER_LLM_CALL", 1),
        default_llm_calls_per_run=_parse_positive_int("DEFAULT_LLM_CALLS_PER_RUN", 1),
        min_llm_calls_per_run=1,
        max_llm_calls_per_run=_parse_positive_int("MAX_LLM_CALLS_PER_RUN", 10),
        use_judges=_parse_bool("USE_JUDGES", False),
        run_max_age_seconds=_parse_float("RUN_MAX_AGE_SECONDS", 60 * 60.0),
        run_cleanup_interval_seconds=_parse_float("RUN_CLEANUP_INTERVAL_SECONDS", 60 * 60.0),
        request_timeout_seconds=_parse_float("REQUEST_TIMEOUT_SECONDS", 120.0),
        host=os.getenv("HOST", "127.0.0.1"),
        port=_parse_positive_int("PORT", 8000),
    )
