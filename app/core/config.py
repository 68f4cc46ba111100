"""Configuration management for the AI orchestration core."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # OpenAI configuration (required)
    OPENAI_API_KEY: str = Field(..., description="OpenAI API key")

    # Supabase configuration (usage store)
    SUPABASE_URL: str | None = Field(default=None, description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str | None = Field(
        default=None, description="Supabase service role key"
    )

    # Environment
    AI_CORE_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")

    # Model tiers
    MODEL_MINI: str = Field(default="gpt-4o-mini", description="Cheap model for planning/execution")
    MODEL_ESCALATION: str = Field(default="gpt-4o", description="Model used when the plan escalates")
    EMBEDDING_MODEL: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )

    # LLM client
    MAX_TOKENS_PLANNER: int = Field(default=4000, description="Max output tokens for the planner")
    MAX_TOKENS_EXECUTOR: int = Field(default=8000, description="Max output tokens for the executor")
    ENABLE_PROMPT_CACHING: bool = Field(default=False, description="Tag prompts for provider caching")
    LLM_MAX_RETRIES: int = Field(default=3, description="Attempts per LLM call")
    LLM_TIMEOUT_MS: int = Field(default=120_000, description="Per-call LLM timeout in ms")
    CIRCUIT_BREAKER_THRESHOLD: int = Field(
        default=5, description="Failures before the circuit breaker opens"
    )
    CIRCUIT_BREAKER_RESET_MS: int = Field(
        default=60_000, description="Cool-down before an open breaker is retried"
    )

    # Retrieval
    RETRIEVAL_FINAL_K: int = Field(default=8, description="Chunks kept after fusion in the executor")
    CONTEXT_TOKEN_LIMIT: int = Field(default=4000, description="Token budget for packed RAG context")

    # Quotas
    DAILY_TOKEN_QUOTA_PER_USER: int = Field(default=100_000, description="Daily tokens per user")
    DAILY_TOKEN_QUOTA_PER_TENANT: int = Field(
        default=2_000_000, description="Daily tokens per tenant"
    )
    MAX_COST_PER_REQUEST_CENTS: float = Field(default=50, description="Per-request cost cap (cents)")
    MAX_TOKENS_PER_REQUEST: int = Field(default=16_000, description="Per-request token cap")
    DISABLE_QUOTA_ENFORCEMENT: bool = Field(default=False, description="Skip quota preflight")
    QUOTA_SOFT_FAIL: bool = Field(
        default=False, description="Allow requests when the quota store errors"
    )
    MAX_BATCH_SIZE: int = Field(default=10, ge=1, description="Max items per /ai/batch request")

    # Usage metering
    ENABLE_USAGE_TRACKING: bool = Field(default=True, description="Persist usage rows")
    USAGE_SAMPLING_RATE: float = Field(default=1.0, description="Fraction of usage rows recorded")
    USAGE_SOFT_FAIL: bool = Field(
        default=False, description="Swallow usage persistence failures"
    )

    # Web search
    WEBSEARCH_ENABLED: bool = Field(default=True, description="Enable the web search tool")
    WEBSEARCH_PROVIDER: str = Field(default="openai", description="openai, tavily or serpapi")
    WEBSEARCH_MODEL: str = Field(default="gpt-4o-mini", description="Model for OpenAI web search")
    WEBSEARCH_MAX_RESULTS: int = Field(default=8, description="Results per web search")
    WEBSEARCH_RATE_LIMIT: int = Field(default=100, description="Searches per minute per tenant")
    WEBSEARCH_CACHE_TTL_SEC: int = Field(default=300, description="Search cache TTL in seconds")
    WEBSEARCH_BLOCKLIST: str = Field(default="", description="Comma-separated blocked hosts")
    WEBSEARCH_ALLOWLIST: str = Field(default="", description="Comma-separated allowed hosts")
    TAVILY_API_KEY: str | None = Field(default=None, description="Tavily API key")
    SERPAPI_API_KEY: str | None = Field(default=None, description="SerpAPI API key")

    # Policy
    POLICY_RECENT_MONTHS: int = Field(default=9, description="Recency window for web claims")
    POLICY_REQUIRE_SOURCES: bool = Field(default=True, description="Require a Sources section")
    POLICY_STRICT_NUMBERS: bool = Field(
        default=True, description="Ground financial numbers in the finance model"
    )
    POLICY_BLOCK_PII_IN_OUTPUT: bool = Field(default=True, description="Flag PII in model output")
    CITATION_FALLBACK_ALL_SOURCES: bool = Field(
        default=False, description="Return all candidate sources when nothing is cited"
    )

    @property
    def websearch_blocklist(self) -> list[str]:
        return [s.strip().lower() for s in self.WEBSEARCH_BLOCKLIST.split(",") if s.strip()]

    @property
    def websearch_allowlist(self) -> list[str]:
        return [s.strip().lower() for s in self.WEBSEARCH_ALLOWLIST.split(",") if s.strip()]


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
