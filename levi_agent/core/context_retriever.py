"""3-tier context retriever for Levi AI.

Tier 1 (core context, always present):
    Condensed domain summaries from levi_core_context, cached per org via
    TenantCache.

Tier 2 (semantic chunks, query-specific):
    pgvector similarity search against context_chunks. Returns the top few
    chunks from global, core-context and org documents.

Tier 3 (PageIndex reasoning, conditional):
    If Tier 2 returns high-similarity chunks linked to documents that are
    indexed in PageIndex, one combined PageIndex query adds document-level
    reasoning.

Tier 1 and Tier 2 run in parallel; Tier 3 waits for Tier 2. Any tier can
fail without failing the others, so retrieve_context() always returns a
RetrievedContext.

Usage:
    retriever = ContextRetriever(cache, EmbeddingClient(), PageIndexClient())
    context = await retriever.retrieve_context("What is our uniform policy?", org_id)
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field

from supabase import Client

from levi_agent.core.config import Settings, get_settings
from levi_agent.core.embeddings import ContextChunk, EmbeddingClient
from levi_agent.core.logging import get_logger, log_with_context
from levi_agent.core.pageindex import DeepReasoningService
from levi_agent.core.tenant_cache import TenantCache
from levi_agent.db.core_context import build_core_context, list_active_core_context
from levi_agent.db.document_digests import (
    GLOBAL_DIGESTS_TABLE,
    TENANT_DIGESTS_TABLE,
    get_pageindex_tree_ids,
)
from levi_agent.db.supabase_client import get_supabase

logger = get_logger(__name__)

CORE_CONTEXT_CACHE_KEY = "context:core"


# =============================================================================
# Result Model
# =============================================================================


@dataclass(frozen=True)
class RetrievedContext:
    """Aggregated context for one user message."""

    core_context: str
    semantic_chunks: tuple[str, ...] = ()
    document_context: str | None = None
    total_tokens: int = 0


@dataclass
class _SemanticResult:
    chunks: list[str] = field(default_factory=list)
    trigger_page_index: bool = False
    document_ids: list[str] = field(default_factory=list)


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token."""
    return math.ceil(len(text) / 4)


def render_chunk(chunk: ContextChunk) -> str:
    prefix = f"**{chunk.heading}**\n" if chunk.heading else ""
    return prefix + chunk.content


# =============================================================================
# Retriever
# =============================================================================


class ContextRetriever:
    """Runs the three retrieval tiers for a single message."""

    def __init__(
        self,
        cache: TenantCache,
        embeddings: EmbeddingClient,
        deep_reasoning: DeepReasoningService | None = None,
        supabase: Client | None = None,
        settings: Settings | None = None,
    ):
        self.cache = cache
        self.embeddings = embeddings
        self.deep_reasoning = deep_reasoning
        self.settings = settings or get_settings()
        self._supabase = supabase

    async def retrieve_context(self, message: str, tenant_id: str) -> RetrievedContext:
        """
        Retrieve context for a user message across all 3 tiers.

        Args:
            message: The user's message
            tenant_id: Org the conversation belongs to

        Returns:
            RetrievedContext (never raises on tier failures)
        """
        core_context, semantic = await asyncio.gather(
            self._load_core_context(tenant_id),
            self._search_relevant_chunks(message, tenant_id),
        )

        document_context: str | None = None
        if semantic.trigger_page_index:
            document_context = await self._query_document_context(semantic.document_ids, message)

        total_tokens = estimate_tokens(core_context)
        for chunk in semantic.chunks:
            total_tokens += estimate_tokens(chunk)
        if document_context:
            total_tokens += estimate_tokens(document_context)

        log_with_context(
            logger,
            logging.DEBUG,
            "Context retrieved",
            tenant_id=tenant_id,
            chunks=len(semantic.chunks),
            document_context=document_context is not None,
            total_tokens=total_tokens,
        )

        return RetrievedContext(
            core_context=core_context,
            semantic_chunks=tuple(semantic.chunks),
            document_context=document_context,
            total_tokens=total_tokens,
        )

    # =========================================================================
    # Tier 1: Core Context
    # =========================================================================

    async def _load_core_context(self, tenant_id: str) -> str:
        # Content is global, but the cache entry is org-scoped
        try:
            return await self.cache.get_or_fetch(
                tenant_id,
                CORE_CONTEXT_CACHE_KEY,
                self.settings.CONTEXT_CACHE_TTL_SECONDS,
                self._fetch_core_context,
            )
        except Exception as e:
            logger.warning(f"Core context load failed for tenant {tenant_id}: {e}")
            return ""

    async def _fetch_core_context(self) -> str:
        supabase = self._supabase or get_supabase()
        rows = await asyncio.wait_for(
            asyncio.to_thread(list_active_core_context, supabase),
            timeout=self.settings.SEARCH_TIMEOUT_SECONDS,
        )
        if not rows:
            logger.warning("No core context found")
            return ""
        return build_core_context(rows)

    # =========================================================================
    # Tier 2: Semantic Search
    # =========================================================================

    async def _search_relevant_chunks(self, message: str, tenant_id: str) -> _SemanticResult:
        try:
            query_embedding = await self.embeddings.generate_embedding(message)
            results = await self.embeddings.search_similar_chunks(
                query_embedding,
                tenant_id,
                limit=self.settings.RETRIEVAL_MAX_CHUNKS,
                threshold=self.settings.RETRIEVAL_SIMILARITY_THRESHOLD,
            )
        except Exception as e:
            logger.error(f"Semantic search failed for tenant {tenant_id}: {e}")
            return _SemanticResult()

        if not results:
            return _SemanticResult()

        # High-similarity hits on linked documents warrant a PageIndex query
        trigger = self.settings.PAGEINDEX_TRIGGER_THRESHOLD
        high_similarity = [r for r in results if r.similarity >= trigger and r.linked_document_id]

        return _SemanticResult(
            chunks=[render_chunk(r) for r in results],
            trigger_page_index=bool(high_similarity),
            document_ids=list(dict.fromkeys(r.linked_document_id for r in high_similarity)),
        )

    # =========================================================================
    # Tier 3: PageIndex Query
    # =========================================================================

    async def _query_document_context(self, document_ids: list[str], message: str) -> str | None:
        if self.deep_reasoning is None or not document_ids:
            return None

        try:
            if not self.deep_reasoning.is_available():
                logger.debug("PageIndex not configured; skipping document reasoning")
                return None

            tree_ids = await self._resolve_tree_ids(document_ids)
            if not tree_ids:
                return None

            answer = await self.deep_reasoning.query(tree_ids, message)
            return answer or None

        except Exception as e:
            logger.error(f"PageIndex query failed: {e}")
            return None

    async def _resolve_tree_ids(self, document_ids: list[str]) -> list[str]:
        """Look up PageIndex tree ids in both the global and org digest tables."""
        supabase = self._supabase or get_supabase()
        timeout = self.settings.SEARCH_TIMEOUT_SECONDS

        global_ids, tenant_ids = await asyncio.gather(
            asyncio.wait_for(
                asyncio.to_thread(get_pageindex_tree_ids, GLOBAL_DIGESTS_TABLE, document_ids, supabase),
                timeout=timeout,
            ),
            asyncio.wait_for(
                asyncio.to_thread(get_pageindex_tree_ids, TENANT_DIGESTS_TABLE, document_ids, supabase),
                timeout=timeout,
            ),
        )
        return list(dict.fromkeys(global_ids + tenant_ids))
