"""Configuration management for the Levi agent context core."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # Environment
    LEVI_ENV: str = Field(default="dev", description="Environment: dev, test, staging, prod")
    LOG_LEVEL: str | None = Field(
        default=None, description="Explicit log level name; overrides the LEVI_ENV default"
    )

    # OpenRouter (embeddings + chat completions). Optional at load time so the
    # service can boot without it; callers raise ConfigError when it's missing.
    OPENROUTER_API_KEY: str | None = Field(default=None, description="OpenRouter API key")
    OPENROUTER_BASE_URL: str = Field(
        default="https://openrouter.ai/api/v1", description="OpenRouter API base URL"
    )
    OPENROUTER_REFERER: str = Field(
        default="https://levelset.io", description="HTTP-Referer attribution header"
    )
    OPENROUTER_APP_TITLE: str = Field(
        default="Levelset Levi", description="X-Title attribution header"
    )

    # Embedding configuration
    EMBEDDING_MODEL: str = Field(
        default="openai/text-embedding-3-small", description="Embedding model (OpenRouter id)"
    )
    EMBEDDING_DIM: int = Field(default=1536, description="Embedding vector dimension")

    # PageIndex (Tier 3 document reasoning)
    PAGEINDEX_API_KEY: str | None = Field(default=None, description="PageIndex API key")
    PAGEINDEX_API_URL: str = Field(
        default="https://api.pageindex.ai", description="PageIndex API base URL"
    )

    # Model routing
    LLM_PRIMARY_MODEL: str = Field(
        default="minimax/minimax-m2.5", description="Primary chat model"
    )
    LLM_ESCALATION_MODEL: str = Field(
        default="anthropic/claude-sonnet-4.5", description="Backup model used after a primary failure"
    )

    # Deadlines for external calls (seconds)
    LLM_TIMEOUT_SECONDS: float = Field(default=60.0, description="Chat completion timeout")
    EMBEDDING_TIMEOUT_SECONDS: float = Field(default=15.0, description="Embedding request timeout")
    PAGEINDEX_TIMEOUT_SECONDS: float = Field(default=30.0, description="PageIndex query timeout")
    SEARCH_TIMEOUT_SECONDS: float = Field(default=10.0, description="Supabase search/lookup timeout")

    # Tenant cache
    CACHE_CLEANUP_INTERVAL_SECONDS: float = Field(
        default=300.0, description="Interval between expired-entry sweeps"
    )
    CONTEXT_CACHE_TTL_SECONDS: float = Field(
        default=1800.0, description="TTL for the cached core context (Tier 1)"
    )

    # Retrieval tuning
    RETRIEVAL_SIMILARITY_THRESHOLD: float = Field(
        default=0.65, description="Minimum similarity for Tier 2 chunks"
    )
    RETRIEVAL_MAX_CHUNKS: int = Field(default=5, description="Max Tier 2 chunks")
    PAGEINDEX_TRIGGER_THRESHOLD: float = Field(
        default=0.75, description="Chunk similarity that triggers a Tier 3 query"
    )


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
