"""
Clawstrate - Pydantic Schemas
=============================

Response schemas for the read-only API surface. Trigger responses are
built from RunReport and are not modelled here.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class CamelSchema(BaseSchema):
    """Schema serialized with camelCase keys, like the trigger responses."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


# ==========================================================================
# Pipeline Status
# ==========================================================================

class StageRunResponse(CamelSchema):
    """Stage row within a run."""

    stage: str
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class RunResponse(CamelSchema):
    """Recent run with its stage rows."""

    id: UUID
    trigger_type: str
    source: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    stages: list[StageRunResponse] = []


class LatestStageResponse(CamelSchema):
    """Most recent successful execution of a stage."""

    stage: str
    pipeline_run_id: UUID
    completed_at: datetime
    duration_ms: Optional[int] = None
    result: Optional[dict[str, Any]] = None
    minutes_since_last_completed: int


class ScheduleResponse(CamelSchema):
    """Registry entry: cadence and lock settings for one job."""

    name: str
    cron: str
    route: str
    lock_resource: str
    lock_ttl_seconds: int
    description: str = ""


class PipelineStatusSummary(CamelSchema):
    total_runs: int
    recent_failures: int
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    last_failure_error: Optional[str] = None


class PipelineStatusResponse(CamelSchema):
    """Monitoring view over the run ledger."""

    health: str  # healthy, degraded, critical
    summary: PipelineStatusSummary
    latest_by_stage: dict[str, Optional[LatestStageResponse]]
    runs: list[RunResponse]
    schedules: list[ScheduleResponse]


# ==========================================================================
# Common Response Schemas
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    redis: str
