"""Database reads for document digests indexed in PageIndex."""

from supabase import Client

from levi_agent.core.logging import get_logger
from levi_agent.db.supabase_client import get_supabase

logger = get_logger(__name__)

GLOBAL_DIGESTS_TABLE = "global_document_digests"
TENANT_DIGESTS_TABLE = "document_digests"


def get_pageindex_tree_ids(
    table: str,
    digest_ids: list[str],
    supabase: Client | None = None,
) -> list[str]:
    """
    Get PageIndex tree ids for indexed digests.

    Only digests flagged pageindex_indexed with a non-null tree id count.

    Args:
        table: GLOBAL_DIGESTS_TABLE or TENANT_DIGESTS_TABLE
        digest_ids: Digest ids linked from retrieved chunks
        supabase: Optional client (defaults to the shared service client)

    Returns:
        Tree ids in row order (empty list if none resolve)

    Raises:
        Exception: If database query fails
    """
    if not digest_ids:
        return []

    supabase = supabase or get_supabase()

    try:
        response = (
            supabase.table(table)
            .select("pageindex_tree_id")
            .in_("id", digest_ids)
            .eq("pageindex_indexed", True)
            .not_.is_("pageindex_tree_id", "null")
            .execute()
        )
        return [row["pageindex_tree_id"] for row in response.data or [] if row.get("pageindex_tree_id")]

    except Exception as e:
        logger.error(f"Failed to look up PageIndex tree ids in {table}: {e}")
        raise
