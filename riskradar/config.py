from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

PACKAGE_DIR = Path(__file__).parent
DATA_DIR = PACKAGE_DIR / "data"


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name) or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env(name) or default)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = _env(name)
    if not raw:
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


DEFAULT_RSS_FEEDS = [
    "https://www.supplychaindive.com/feeds/news/",
    "https://gcaptain.com/feed/",
]


class Settings(BaseModel):
    # Inference backend
    llm_provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "openai_compatible"))
    llm_model: str = Field(default_factory=lambda: _env("LLM_MODEL", "llama-4-scout-17b-16e-instruct"))
    llm_base_url: str = Field(default_factory=lambda: _env("OPENAI_BASE_URL", "https://api.cerebras.ai/v1"))
    llm_api_key: str = Field(default_factory=lambda: _env("OPENAI_API_KEY") or _env("CEREBRAS_API_KEY"))

    # Gateway
    model_concurrency: int = Field(default_factory=lambda: _env_int("RISKRADAR_MODEL_CONCURRENCY", 3))
    max_attempts: int = Field(default_factory=lambda: _env_int("RISKRADAR_MAX_ATTEMPTS", 3))
    temperature: float = 0.2
    max_tokens: int = 512
    backoff_base_seconds: float = 0.5
    backoff_cap_seconds: float = 5.0
    request_timeout_seconds: float = Field(default_factory=lambda: _env_float("RISKRADAR_REQUEST_TIMEOUT", 60.0))
    requests_per_minute: int = Field(default_factory=lambda: _env_int("RISKRADAR_REQUESTS_PER_MINUTE", 0))
    cache_enabled: bool = Field(default_factory=lambda: _env_bool("RISKRADAR_CACHE", True))

    # Enrichment pipeline
    batch_size: int = Field(default_factory=lambda: _env_int("RISKRADAR_BATCH_SIZE", 5))
    batch_parallelism: int = 2
    batch_cooldown_seconds: float = 1.0
    relevance_threshold: float = 0.1
    min_risk_score: int = 20
    impact_base_usd: float = 200_000.0

    # Geocoding
    geocoder_url: str = Field(
        default_factory=lambda: _env("RISKRADAR_GEOCODER_URL", "https://nominatim.openstreetmap.org/search")
    )
    geocode_interval_seconds: float = 1.0
    user_agent: str = "SupplyChainRiskRadar/1.0 (+https://riskradar.local)"

    # Event sources
    news_api_key: str = Field(default_factory=lambda: _env("NEWS_API_KEY"))
    news_api_url: str = "https://newsapi.org/v2/everything"
    news_query: str = "supply chain"
    rss_feeds: list[str] = Field(default_factory=lambda: _env_list("RISKRADAR_RSS_FEEDS", DEFAULT_RSS_FEEDS))
    simulated_event_limit: int = Field(default_factory=lambda: _env_int("RISKRADAR_SIMULATED_EVENT_LIMIT", 20))

    # Storage
    database_path: Path = Field(
        default_factory=lambda: Path(_env("RISKRADAR_DB") or DATA_DIR / "riskradar.db")
    )
    supplier_fixture: Path = Field(default_factory=lambda: DATA_DIR / "suppliers.json")

    # Benchmark
    use_real_benchmark: bool = Field(default_factory=lambda: _env_bool("USE_REAL_BENCHMARK"))
    benchmark_model: str = Field(default_factory=lambda: _env("BENCHMARK_MODEL", "gpt-3.5-turbo"))
    benchmark_api_key: str = Field(default_factory=lambda: _env("BENCHMARK_OPENAI_API_KEY"))
    primary_price_per_event: float = 0.002
    alternative_price_per_event: float = 0.015


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
