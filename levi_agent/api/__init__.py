"""API router for v1 endpoints."""

from fastapi import APIRouter

from levi_agent.api import cache

router = APIRouter()

# Tenant cache stats and invalidation
router.include_router(cache.router)
