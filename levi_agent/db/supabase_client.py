"""Shared Supabase service client for retrieval reads."""

from functools import lru_cache

from supabase import Client, create_client

from levi_agent.core.config import get_settings
from levi_agent.core.errors import ConfigError, UpstreamError
from levi_agent.core.logging import get_logger

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """
    Get the service-role Supabase client, created once per process.

    Failures are not cached, so a later call retries.

    Raises:
        ConfigError: If SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY is blank
        UpstreamError: If the client can't be created from the settings
    """
    settings = get_settings()
    if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
        raise ConfigError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must both be set")

    try:
        client = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    except Exception as e:
        raise UpstreamError("Supabase", f"client initialization failed: {e}") from e

    logger.info(f"Supabase client ready for {settings.SUPABASE_URL}")
    return client
