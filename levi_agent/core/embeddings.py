"""Embedding generation and pgvector similarity search for the agent.

Embeddings come from text-embedding-3-small (1536 dimensions) through the
OpenRouter gateway. Similarity search runs against the context_chunks table
via an ordered list of search strategies; the first one that answers wins.
"""

import asyncio
from collections.abc import Callable
from typing import Any

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from supabase import Client

from levi_agent.core.config import Settings, get_settings
from levi_agent.core.errors import ConfigError, UpstreamError, ValidationError
from levi_agent.core.logging import get_logger
from levi_agent.db.supabase_client import get_supabase

logger = get_logger(__name__)

GLOBAL_SOURCE_TYPES = ("global_document", "core_context")
TENANT_SOURCE_TYPE = "org_document"


class ContextChunk(BaseModel):
    """A retrieved chunk with its similarity score and source linkage."""

    model_config = ConfigDict(frozen=True)

    id: str
    heading: str | None = None
    content: str
    token_count: int = 0
    similarity: float = Field(ge=0.0, le=1.0)
    source_type: str
    linked_document_id: str | None = None

    @field_validator("similarity", mode="before")
    @classmethod
    def _clamp_similarity(cls, value: Any) -> Any:
        # 1 - cosine distance can drift a hair outside [0, 1]
        if isinstance(value, (int, float)):
            return min(max(float(value), 0.0), 1.0)
        return value

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ContextChunk":
        """Bind a raw search row; the linked document is whichever digest id is set."""
        return cls.model_validate(
            {
                "id": row.get("id"),
                "heading": row.get("heading"),
                "content": row.get("content"),
                "token_count": row.get("token_count") or 0,
                "similarity": row.get("similarity"),
                "source_type": row.get("source_type"),
                "linked_document_id": row.get("global_document_digest_id")
                or row.get("document_digest_id"),
            }
        )


# =============================================================================
# Search strategies
# =============================================================================

SearchStrategy = Callable[[Client, list[float], str | None, int, float], Any]


def _vector_literal(embedding: list[float]) -> str:
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"


def _sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_similarity_sql(
    query_embedding: list[float],
    tenant_id: str | None,
    limit: int,
    threshold: float,
) -> str:
    """Build the raw pgvector query equivalent to the match_context_chunks RPC."""
    vector = _vector_literal(query_embedding)
    global_types = ", ".join(_sql_literal(t) for t in GLOBAL_SOURCE_TYPES)

    if tenant_id:
        scope_filter = (
            f"AND (source_type IN ({global_types}) "
            f"OR (source_type = {_sql_literal(TENANT_SOURCE_TYPE)} AND org_id = {_sql_literal(tenant_id)}))"
        )
    else:
        scope_filter = f"AND source_type IN ({global_types})"

    return f"""
    SELECT
      id,
      heading,
      content,
      token_count,
      source_type,
      global_document_digest_id,
      document_digest_id,
      1 - (embedding <=> '{vector}'::vector) AS similarity
    FROM context_chunks
    WHERE embedding IS NOT NULL
      {scope_filter}
      AND 1 - (embedding <=> '{vector}'::vector) >= {float(threshold)}
    ORDER BY similarity DESC
    LIMIT {int(limit)}
    """


def match_context_chunks_rpc(
    supabase: Client,
    query_embedding: list[float],
    tenant_id: str | None,
    limit: int,
    threshold: float,
) -> Any:
    """Pre-aggregated similarity lookup (preferred)."""
    response = supabase.rpc(
        "match_context_chunks",
        {
            "query_embedding": _vector_literal(query_embedding),
            "match_threshold": threshold,
            "match_count": limit,
            "p_org_id": tenant_id,
        },
    ).execute()
    return response.data


def exec_sql_search(
    supabase: Client,
    query_embedding: list[float],
    tenant_id: str | None,
    limit: int,
    threshold: float,
) -> Any:
    """Raw SQL fallback for databases without the match RPC."""
    query = build_similarity_sql(query_embedding, tenant_id, limit, threshold)
    response = supabase.rpc("exec_sql", {"query": query}).execute()
    return response.data


DEFAULT_SEARCH_STRATEGIES: list[tuple[str, SearchStrategy]] = [
    ("match_context_chunks", match_context_chunks_rpc),
    ("exec_sql", exec_sql_search),
]


def bind_chunks(rows: Any) -> list[ContextChunk]:
    """
    Validate raw rows into ContextChunks.

    Rows that don't fit the schema are dropped.

    Raises:
        UpstreamError: If the payload isn't a list of rows
    """
    if rows is None:
        return []
    if not isinstance(rows, list):
        raise UpstreamError("similarity search", f"expected a list of rows, got {type(rows).__name__}")

    chunks = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        try:
            chunks.append(ContextChunk.from_row(row))
        except PydanticValidationError as e:
            logger.debug(f"Dropping malformed chunk row {row.get('id')}: {e.error_count()} errors")
    return chunks


def rank_chunks(chunks: list[ContextChunk], limit: int, threshold: float) -> list[ContextChunk]:
    """Keep chunks at or above threshold, best first, at most limit."""
    kept = [c for c in chunks if c.similarity >= threshold]
    kept.sort(key=lambda c: c.similarity, reverse=True)
    return kept[: max(limit, 0)]


# =============================================================================
# Client
# =============================================================================


class EmbeddingClient:
    """Generates query embeddings and runs tenant-scoped similarity search."""

    def __init__(
        self,
        settings: Settings | None = None,
        supabase: Client | None = None,
        strategies: list[tuple[str, SearchStrategy]] | None = None,
    ):
        self.settings = settings or get_settings()
        self.strategies = strategies if strategies is not None else list(DEFAULT_SEARCH_STRATEGIES)
        self._supabase = supabase
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        """Get (lazily) the OpenAI-compatible client pointed at OpenRouter."""
        if not self.settings.OPENROUTER_API_KEY:
            raise ConfigError("OPENROUTER_API_KEY is not configured (required for embeddings)")

        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.OPENROUTER_API_KEY,
                base_url=self.settings.OPENROUTER_BASE_URL,
                timeout=self.settings.EMBEDDING_TIMEOUT_SECONDS,
                default_headers={
                    "HTTP-Referer": self.settings.OPENROUTER_REFERER,
                    "X-Title": self.settings.OPENROUTER_APP_TITLE,
                },
            )
        return self._client

    async def generate_embedding(self, text: str) -> list[float]:
        """
        Generate an embedding vector for a single text string.

        Args:
            text: Text to embed

        Returns:
            Embedding vector of EMBEDDING_DIM floats

        Raises:
            ConfigError: If OPENROUTER_API_KEY is missing
            UpstreamError: If the API call fails or returns an unusable body
            ValidationError: If the vector has the wrong dimension
        """
        client = self._get_client()
        expected_dim = self.settings.EMBEDDING_DIM

        try:
            response = await client.embeddings.create(
                model=self.settings.EMBEDDING_MODEL,
                input=text,
            )
        except openai.APIError as e:
            raise UpstreamError(
                "OpenRouter embeddings", str(e), getattr(e, "status_code", None)
            ) from e

        try:
            embedding = [float(x) for x in response.data[0].embedding]
        except (AttributeError, IndexError, TypeError, ValueError) as e:
            raise UpstreamError("OpenRouter embeddings", "response contained no embedding") from e

        if len(embedding) != expected_dim:
            raise ValidationError(
                f"Embedding dimension mismatch: expected {expected_dim}, got {len(embedding)}"
            )

        logger.debug(
            f"Generated embedding using {self.settings.EMBEDDING_MODEL}",
            extra={"extra_data": {"model": self.settings.EMBEDDING_MODEL, "chars": len(text)}},
        )
        return embedding

    async def search_similar_chunks(
        self,
        query_embedding: list[float],
        tenant_id: str | None,
        limit: int = 5,
        threshold: float = 0.7,
    ) -> list[ContextChunk]:
        """
        Search for similar chunks using pgvector cosine similarity.

        Returns global documents and core context chunks, plus the tenant's
        own documents when tenant_id is given. Strategies are tried in order;
        if every one fails the result is empty rather than an error.

        Args:
            query_embedding: Embedding of the user's message
            tenant_id: Org whose documents to include (None = global only)
            limit: Maximum number of results
            threshold: Minimum similarity score 0-1

        Returns:
            Chunks with similarity >= threshold, best first, at most limit
        """
        try:
            supabase = self._supabase or get_supabase()
        except Exception as e:
            logger.error(f"Similarity search unavailable: {e}")
            return []

        for name, strategy in self.strategies:
            try:
                rows = await asyncio.wait_for(
                    asyncio.to_thread(strategy, supabase, query_embedding, tenant_id, limit, threshold),
                    timeout=self.settings.SEARCH_TIMEOUT_SECONDS,
                )
                chunks = bind_chunks(rows)
            except Exception as e:
                logger.warning(f"Similarity search strategy '{name}' failed: {e}")
                continue

            ranked = rank_chunks(chunks, limit, threshold)
            logger.debug(f"Similarity search via '{name}' returned {len(ranked)} chunks")
            return ranked

        logger.error("All similarity search strategies failed; returning no chunks")
        return []
