"""
Run/stage ledger.

Durable records of pipeline runs and their stages. Every write commits
immediately so that a stage's record is persisted before the next stage
starts. Writes to a (run, stage) pair that may already exist are single
INSERT ... ON CONFLICT statements against the unique constraint, never
read-then-write.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from clawstrate.core.models import (
    PipelineRun,
    PipelineRunStatus,
    PipelineStageRun,
    StageRunStatus,
    utcnow,
)

logger = structlog.get_logger()

_STAGE_CONFLICT_TARGET = ["pipeline_run_id", "stage"]


class RunLedger:
    """Insert/update operations for PipelineRun and PipelineStageRun."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _insert(self, model):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise NotImplementedError(f"Upsert not supported for dialect '{dialect}'")

    # ======================================================================
    # Runs
    # ======================================================================

    async def start_run(
        self,
        trigger_type: str,
        source: str,
        stage_order: Sequence[str],
        standalone: bool = False,
    ) -> PipelineRun:
        """Insert a run in ``started`` status."""
        metadata: dict[str, Any] = {"stageOrder": [str(s) for s in stage_order]}
        if standalone:
            metadata["standalone"] = True

        run = PipelineRun(
            id=uuid4(),
            trigger_type=trigger_type,
            source=source,
            status=PipelineRunStatus.STARTED.value,
            started_at=utcnow(),
            run_metadata=metadata,
        )
        self.db.add(run)
        await self.db.commit()

        logger.info(
            "pipeline_run_started",
            run_id=str(run.id),
            source=source,
            trigger_type=trigger_type,
        )
        return run

    async def finish_run(
        self,
        run_id: UUID,
        status: PipelineRunStatus,
        error: Optional[str] = None,
    ) -> None:
        """Write the run's terminal status."""
        await self.db.execute(
            update(PipelineRun)
            .where(PipelineRun.id == run_id)
            .values(
                status=PipelineRunStatus(status).value,
                completed_at=utcnow(),
                error=error,
            )
        )
        await self.db.commit()

        logger.info(
            "pipeline_run_finished",
            run_id=str(run_id),
            status=PipelineRunStatus(status).value,
            error=error,
        )

    # ======================================================================
    # Stages
    # ======================================================================

    async def start_stage(
        self,
        run_id: UUID,
        stage: str,
        started_at: Optional[datetime] = None,
    ) -> None:
        """Pre-register a stage as ``started``; a no-op if the pair exists."""
        stmt = (
            self._insert(PipelineStageRun)
            .values(
                id=uuid4(),
                pipeline_run_id=run_id,
                stage=str(stage),
                status=StageRunStatus.STARTED.value,
                started_at=started_at or utcnow(),
            )
            .on_conflict_do_nothing(index_elements=_STAGE_CONFLICT_TARGET)
        )
        await self.db.execute(stmt)
        await self.db.commit()

    async def upsert_stage(
        self,
        run_id: UUID,
        stage: str,
        status: StageRunStatus,
        duration_ms: Optional[int] = None,
        result: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        """Insert a stage row or update the existing one for this run."""
        now = utcnow()
        values = {
            "status": StageRunStatus(status).value,
            "completed_at": now,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }
        stmt = self._insert(PipelineStageRun).values(
            id=uuid4(),
            pipeline_run_id=run_id,
            stage=str(stage),
            started_at=now,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=_STAGE_CONFLICT_TARGET,
            set_=values,
        )
        await self.db.execute(stmt)
        await self.db.commit()

    async def skip_stage(self, run_id: UUID, stage: str, reason: str) -> None:
        """Record a stage as skipped with zero duration."""
        await self.upsert_stage(
            run_id,
            stage,
            StageRunStatus.SKIPPED,
            duration_ms=0,
            result={"reason": reason},
        )
        logger.info("stage_skipped", run_id=str(run_id), stage=str(stage), reason=reason)

    async def complete_stage(
        self,
        run_id: UUID,
        stage: str,
        duration_ms: int,
        result: dict[str, Any],
    ) -> None:
        await self._finish_stage(
            run_id,
            stage,
            status=StageRunStatus.COMPLETED.value,
            completed_at=utcnow(),
            duration_ms=duration_ms,
            result=result,
        )

    async def fail_stage(
        self,
        run_id: UUID,
        stage: str,
        duration_ms: int,
        error: str,
    ) -> None:
        await self._finish_stage(
            run_id,
            stage,
            status=StageRunStatus.FAILED.value,
            completed_at=utcnow(),
            duration_ms=duration_ms,
            error=error,
        )

    async def _finish_stage(self, run_id: UUID, stage: str, **values: Any) -> None:
        await self.db.execute(
            update(PipelineStageRun)
            .where(
                and_(
                    PipelineStageRun.pipeline_run_id == run_id,
                    PipelineStageRun.stage == str(stage),
                )
            )
            .values(**values)
        )
        await self.db.commit()

    # ======================================================================
    # Reads (monitoring)
    # ======================================================================

    async def get_run(self, run_id: UUID) -> Optional[PipelineRun]:
        result = await self.db.execute(
            select(PipelineRun)
            .where(PipelineRun.id == run_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_stage_runs(self, run_id: UUID) -> list[PipelineStageRun]:
        result = await self.db.execute(
            select(PipelineStageRun)
            .where(PipelineStageRun.pipeline_run_id == run_id)
            .order_by(PipelineStageRun.started_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def recent_runs(self, limit: int = 10) -> list[PipelineRun]:
        result = await self.db.execute(
            select(PipelineRun)
            .order_by(PipelineRun.started_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def latest_completed_stages(
        self,
        limit: int = 300,
    ) -> dict[str, PipelineStageRun]:
        """Most recent completed row per stage name."""
        result = await self.db.execute(
            select(PipelineStageRun)
            .where(
                PipelineStageRun.status == StageRunStatus.COMPLETED.value,
                PipelineStageRun.completed_at.is_not(None),
            )
            .order_by(PipelineStageRun.completed_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        latest: dict[str, PipelineStageRun] = {}
        for row in result.scalars().all():
            latest.setdefault(row.stage, row)
        return latest
