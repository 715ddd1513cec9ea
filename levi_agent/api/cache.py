"""Tenant cache admin endpoints.

Lets services that mutate org data (ratings, infractions, team changes)
drop the matching cache entries, and exposes hit/miss counters.
"""

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from levi_agent.core.logging import get_logger
from levi_agent.core.tenant_cache import CacheScope, TenantCache

logger = get_logger(__name__)

router = APIRouter(prefix="/cache", tags=["cache"])


class InvalidateRequest(BaseModel):
    """Invalidate by scope, by single key, or (neither) the whole org bucket."""

    org_id: str = Field(..., min_length=1)
    scope: CacheScope | None = None
    key: str | None = None


class InvalidateResponse(BaseModel):
    org_id: str
    scope: CacheScope | None = None
    key: str | None = None
    removed: int


def _get_cache(request: Request) -> TenantCache:
    return request.app.state.tenant_cache


@router.get("/stats")
async def get_cache_stats(request: Request) -> dict[str, int]:
    """
    Get tenant cache statistics.

    Returns:
        hits, misses, sets, evictions, total_tenants, total_entries, hit_rate (percent)
    """
    return _get_cache(request).get_stats()


@router.post("/invalidate", response_model=InvalidateResponse)
async def invalidate_cache(body: InvalidateRequest, request: Request) -> InvalidateResponse:
    """
    Invalidate cached entries for an org.

    A scope takes precedence over a key. With neither, every entry for the
    org is dropped.

    Args:
        body: Invalidation request

    Returns:
        What was invalidated and how many entries were removed
    """
    cache = _get_cache(request)

    if body.scope is not None:
        removed = cache.invalidate_by_scope(body.org_id, body.scope)
        key = None
    else:
        removed = cache.invalidate(body.org_id, body.key)
        key = body.key

    logger.info(
        f"Invalidated {removed} cache entries for org {body.org_id}",
        extra={"tenant_id": body.org_id},
    )
    return InvalidateResponse(org_id=body.org_id, scope=body.scope, key=key, removed=removed)
