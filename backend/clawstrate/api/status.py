"""
Pipeline status API.

Read-only monitoring view over the run ledger and the cadence registry.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter

from clawstrate.api.deps import DbSession
from clawstrate.core.config import settings
from clawstrate.core.models import PipelineRun, PipelineRunStatus
from clawstrate.core.pipeline import PIPELINE_STAGE_ORDER, SCHEDULES, RunLedger
from clawstrate.core.schemas import (
    LatestStageResponse,
    PipelineStatusResponse,
    PipelineStatusSummary,
    RunResponse,
    ScheduleResponse,
    StageRunResponse,
)

router = APIRouter(prefix=f"{settings.API_V1_PREFIX}/pipeline-status", tags=["status"])

RECENT_RUN_LIMIT = 10
CRITICAL_FAILURE_COUNT = 8


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def health_verdict(recent_failures: int) -> str:
    if recent_failures == 0:
        return "healthy"
    if recent_failures >= CRITICAL_FAILURE_COUNT:
        return "critical"
    return "degraded"


def _run_response(run: PipelineRun) -> RunResponse:
    started_at = as_utc(run.started_at)
    completed_at = as_utc(run.completed_at)
    duration_ms = None
    if completed_at is not None:
        duration_ms = int((completed_at - started_at).total_seconds() * 1000)

    return RunResponse(
        id=run.id,
        trigger_type=run.trigger_type,
        source=run.source,
        status=run.status,
        started_at=started_at,
        completed_at=completed_at,
        duration_ms=duration_ms,
        error=run.error,
        stages=[
            StageRunResponse(
                stage=s.stage,
                status=s.status,
                started_at=as_utc(s.started_at),
                completed_at=as_utc(s.completed_at),
                duration_ms=s.duration_ms,
                result=s.result,
                error=s.error,
            )
            for s in run.stages
        ],
    )


@router.get("", response_model=PipelineStatusResponse)
async def get_pipeline_status(db: DbSession) -> PipelineStatusResponse:
    """Recent runs, latest success per stage, overall health and the schedule table."""
    ledger = RunLedger(db)
    now = datetime.now(timezone.utc)

    runs = [_run_response(r) for r in await ledger.recent_runs(RECENT_RUN_LIMIT)]

    latest_rows = await ledger.latest_completed_stages()
    latest_by_stage: dict[str, Optional[LatestStageResponse]] = {}
    for stage in PIPELINE_STAGE_ORDER:
        row = latest_rows.get(stage.value)
        if row is None:
            latest_by_stage[stage.value] = None
            continue
        completed_at = as_utc(row.completed_at)
        latest_by_stage[stage.value] = LatestStageResponse(
            stage=row.stage,
            pipeline_run_id=row.pipeline_run_id,
            completed_at=completed_at,
            duration_ms=row.duration_ms,
            result=row.result,
            minutes_since_last_completed=max(0, int((now - completed_at).total_seconds() // 60)),
        )

    failures = [r for r in runs if r.status == PipelineRunStatus.FAILED.value]
    last_success = next(
        (r for r in runs if r.status == PipelineRunStatus.COMPLETED.value), None
    )
    last_failure = failures[0] if failures else None

    return PipelineStatusResponse(
        health=health_verdict(len(failures)),
        summary=PipelineStatusSummary(
            total_runs=len(runs),
            recent_failures=len(failures),
            last_success=last_success.started_at if last_success else None,
            last_failure=last_failure.started_at if last_failure else None,
            last_failure_error=last_failure.error if last_failure else None,
        ),
        latest_by_stage=latest_by_stage,
        runs=runs,
        schedules=[ScheduleResponse(**s.to_dict()) for s in SCHEDULES.values()],
    )
