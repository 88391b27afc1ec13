"""
Clawstrate - API Dependencies
=============================

Shared dependencies for FastAPI endpoints.
"""

import hmac
from functools import partial
from typing import Annotated, Optional

from fastapi import Depends, Header, Request
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from clawstrate.core.cache import invalidate_api_caches
from clawstrate.core.config import settings
from clawstrate.core.database import get_db
from clawstrate.core.locks import LockManager
from clawstrate.core.pipeline import PipelineExecutor, StageRegistry, StageRunner
from clawstrate.core.pipeline.executor import CacheInvalidator


# ==========================================================================
# Scheduler Authentication
# ==========================================================================

class UnauthorizedError(Exception):
    """Trigger did not carry the shared scheduler secret."""


def is_authorized(authorization: Optional[str], secret: str) -> bool:
    """Constant-time check of ``Authorization: Bearer <secret>``."""
    if not secret or not authorization:
        return False
    return hmac.compare_digest(authorization.encode(), f"Bearer {secret}".encode())


async def verify_cron_secret(
    authorization: Annotated[Optional[str], Header()] = None,
) -> None:
    """
    Reject triggers without the shared secret.

    Raises:
        UnauthorizedError: Rendered as 401 {"error": "Unauthorized"}
    """
    if not is_authorized(authorization, settings.CRON_SECRET):
        raise UnauthorizedError()


async def get_trigger_type(
    x_trigger_type: Annotated[Optional[str], Header()] = None,
) -> str:
    """Trigger origin recorded on the run (``cron`` unless the caller says otherwise)."""
    return x_trigger_type or "cron"


# ==========================================================================
# Shared Clients
# ==========================================================================

def get_redis(request: Request) -> Redis:
    return request.app.state.redis


def get_stage_registry(request: Request) -> StageRegistry:
    return request.app.state.stages


def get_lock_manager(redis: Annotated[Redis, Depends(get_redis)]) -> LockManager:
    return LockManager(redis)


def get_cache_invalidator(redis: Annotated[Redis, Depends(get_redis)]) -> CacheInvalidator:
    return partial(invalidate_api_caches, redis)


# ==========================================================================
# Executors
# ==========================================================================

def get_pipeline_executor(
    db: Annotated[AsyncSession, Depends(get_db)],
    lock_manager: Annotated[LockManager, Depends(get_lock_manager)],
    stages: Annotated[StageRegistry, Depends(get_stage_registry)],
    invalidate_caches: Annotated[CacheInvalidator, Depends(get_cache_invalidator)],
) -> PipelineExecutor:
    return PipelineExecutor(
        db,
        lock_manager,
        stages,
        invalidate_caches,
        split_jobs=settings.PIPELINE_SPLIT_JOBS,
        max_budget_seconds=settings.PIPELINE_MAX_BUDGET_SECONDS,
        heavy_stage_min_budget_seconds=settings.PIPELINE_HEAVY_STAGE_MIN_BUDGET_SECONDS,
    )


def get_stage_runner(
    db: Annotated[AsyncSession, Depends(get_db)],
    lock_manager: Annotated[LockManager, Depends(get_lock_manager)],
    stages: Annotated[StageRegistry, Depends(get_stage_registry)],
    invalidate_caches: Annotated[CacheInvalidator, Depends(get_cache_invalidator)],
) -> StageRunner:
    return StageRunner(
        db,
        lock_manager,
        stages,
        invalidate_caches,
        split_jobs=settings.PIPELINE_SPLIT_JOBS,
    )


# ==========================================================================
# Type Aliases for Dependency Injection
# ==========================================================================

DbSession = Annotated[AsyncSession, Depends(get_db)]
TriggerType = Annotated[str, Depends(get_trigger_type)]
Pipeline = Annotated[PipelineExecutor, Depends(get_pipeline_executor)]
Runner = Annotated[StageRunner, Depends(get_stage_runner)]
