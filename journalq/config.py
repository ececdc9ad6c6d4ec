"""Configuration with sensible defaults for LITE MODE (no external services)."""

from dataclasses import dataclass, field
from os import getenv


def _parse_bool(value: str, default: bool = True) -> bool:
    """Parse boolean from environment variable."""
    if not value:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(value: str, default: float) -> float:
    """Parse float from environment variable."""
    try:
        return float(value) if value else default
    except ValueError:
        return default


def _parse_int(value: str, default: int) -> int:
    """Parse int from environment variable."""
    try:
        return int(value) if value else default
    except ValueError:
        return default


def _parse_floats(value: str, default: tuple[float, ...]) -> tuple[float, ...]:
    """Parse a comma separated list of floats, e.g. "0.25,0.2,0.15"."""
    if not value:
        return default
    try:
        parsed = tuple(float(v) for v in value.split(",") if v.strip())
    except ValueError:
        return default
    return parsed or default


@dataclass(slots=True, frozen=True)
class Config:
    # ==================== Completion service ====================
    # Provider: auto, openai, claude, bedrock, disabled
    llm_provider: str = field(default_factory=lambda: getenv("LLM_PROVIDER", "auto"))
    llm_model: str = field(default_factory=lambda: getenv("LLM_MODEL", ""))
    llm_temperature: float = field(
        default_factory=lambda: _parse_float(getenv("LLM_TEMPERATURE", ""), 0.2)
    )
    llm_timeout: int = field(default_factory=lambda: _parse_int(getenv("LLM_TIMEOUT", ""), 60))
    openai_api_key: str = field(default_factory=lambda: getenv("OPENAI_API_KEY", ""))
    anthropic_api_key: str = field(default_factory=lambda: getenv("ANTHROPIC_API_KEY", ""))

    # ==================== AWS (optional - empty = LITE MODE) ====================
    aws_region: str = field(default_factory=lambda: getenv("AWS_REGION", "us-east-1"))
    bedrock_model: str = field(
        default_factory=lambda: getenv("BEDROCK_MODEL", "us.amazon.nova-lite-v1:0")
    )
    titan_embed_model: str = field(
        default_factory=lambda: getenv("TITAN_EMBED_MODEL", "amazon.titan-embed-text-v2:0")
    )

    # ==================== Embeddings ====================
    # Provider: auto, openai, titan, disabled
    embedding_provider: str = field(default_factory=lambda: getenv("EMBEDDING_PROVIDER", "auto"))
    openai_embed_model: str = field(
        default_factory=lambda: getenv("OPENAI_EMBED_MODEL", "text-embedding-3-small")
    )
    embed_dimensions: int = field(
        default_factory=lambda: _parse_int(getenv("EMBED_DIMENSIONS", ""), 1536)
    )

    # ==================== Retrieval store (optional - empty = in-memory) ====================
    supabase_url: str = field(default_factory=lambda: getenv("SUPABASE_URL", ""))
    supabase_service_key: str = field(
        default_factory=lambda: getenv("SUPABASE_SERVICE_ROLE_KEY", "")
    )
    store_timeout: int = field(default_factory=lambda: _parse_int(getenv("STORE_TIMEOUT", ""), 30))
    # JSON list of entries served by the in-memory store when Supabase is not configured
    journal_data_file: str = field(
        default_factory=lambda: getenv("JOURNAL_DATA_FILE", "journal_entries.json")
    )

    # ==================== Result cache (optional - empty = in-memory fallback) ====================
    redis_url: str = field(default_factory=lambda: getenv("REDIS_URL", ""))
    cache_ttl: int = field(default_factory=lambda: _parse_int(getenv("RESULT_CACHE_TTL", ""), 900))
    enable_result_cache: bool = field(
        default_factory=lambda: _parse_bool(getenv("ENABLE_RESULT_CACHE", ""), True)
    )

    # ==================== Budget ====================
    max_latency_ms: int = field(
        default_factory=lambda: _parse_int(getenv("QUERY_MAX_LATENCY_MS", ""), 8000)
    )
    max_parallel: int = field(default_factory=lambda: _parse_int(getenv("QUERY_MAX_PARALLEL", ""), 3))

    # ==================== Planner ====================
    similarity_threshold: float = field(
        default_factory=lambda: _parse_float(getenv("PLAN_SIMILARITY_THRESHOLD", ""), 0.7)
    )
    max_results: int = field(default_factory=lambda: _parse_int(getenv("PLAN_MAX_RESULTS", ""), 10))

    # ==================== Fallback ladder ====================
    ladder_thresholds: tuple[float, ...] = field(
        default_factory=lambda: _parse_floats(getenv("LADDER_THRESHOLDS", ""), (0.25, 0.20, 0.15))
    )
    trailing_window_days: int = field(
        default_factory=lambda: _parse_int(getenv("TRAILING_WINDOW_DAYS", ""), 30)
    )
    recent_entries_limit: int = field(
        default_factory=lambda: _parse_int(getenv("RECENT_ENTRIES_LIMIT", ""), 30)
    )

    # ==================== Consolidator ====================
    consolidator_max_rows: int = field(
        default_factory=lambda: _parse_int(getenv("CONSOLIDATOR_MAX_ROWS", ""), 200)
    )
    consolidator_max_snippets: int = field(
        default_factory=lambda: _parse_int(getenv("CONSOLIDATOR_MAX_SNIPPETS", ""), 20)
    )
    consolidator_max_tokens: int = field(
        default_factory=lambda: _parse_int(getenv("CONSOLIDATOR_MAX_TOKENS", ""), 1500)
    )
    history_turns: int = field(default_factory=lambda: _parse_int(getenv("HISTORY_TURNS", ""), 6))

    # ==================== Feature Flags ====================
    enable_query_analytics: bool = field(
        default_factory=lambda: _parse_bool(getenv("ENABLE_QUERY_ANALYTICS", ""), True)
    )

    def is_supabase_available(self) -> bool:
        """Check if the hosted retrieval store is configured."""
        return bool(self.supabase_url and self.supabase_service_key)

    def is_llm_configured(self) -> bool:
        """Check if any completion provider key is present (Bedrock is detected at runtime)."""
        if self.llm_provider == "disabled":
            return False
        return bool(self.openai_api_key or self.anthropic_api_key)

    def get_ladder_config(self) -> dict:
        """Get fallback ladder settings for the execution engine."""
        return {
            "thresholds": self.ladder_thresholds,
            "trailing_window_days": self.trailing_window_days,
            "recent_entries_limit": self.recent_entries_limit,
        }
