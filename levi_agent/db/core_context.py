"""Database reads for the condensed domain summaries (Tier 1 core context)."""

from typing import Any

from supabase import Client

from levi_agent.core.logging import get_logger
from levi_agent.db.supabase_client import get_supabase

logger = get_logger(__name__)

CORE_CONTEXT_TABLE = "levi_core_context"


def list_active_core_context(supabase: Client | None = None) -> list[dict[str, Any]]:
    """
    List active core context rows ordered by context_key.

    Args:
        supabase: Optional client (defaults to the shared service client)

    Returns:
        Rows with context_key and content (empty list if none)

    Raises:
        Exception: If database query fails
    """
    supabase = supabase or get_supabase()

    try:
        response = (
            supabase.table(CORE_CONTEXT_TABLE)
            .select("context_key, content")
            .eq("active", True)
            .order("context_key")
            .execute()
        )
        return response.data or []

    except Exception as e:
        logger.error(f"Failed to list core context rows: {e}")
        raise


def build_core_context(rows: list[dict[str, Any]]) -> str:
    """Join row contents with blank lines, skipping empty ones."""
    return "\n\n".join(row["content"] for row in rows if row.get("content"))
