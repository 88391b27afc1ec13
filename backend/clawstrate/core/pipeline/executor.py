"""
Pipeline executors.

PipelineExecutor runs the fixed stage sequence as one locked unit.
StageRunner runs exactly one stage under that stage's own lock, for
deployments that schedule stages independently (split mode).

Both record every invocation that gets past the lock in the run ledger and
report a RunReport that the HTTP layer turns into a response.
"""

import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clawstrate.core.locks import LockManager
from clawstrate.core.models import PipelineRunStatus, PipelineStageName, StageRunStatus
from clawstrate.core.pipeline.ledger import RunLedger
from clawstrate.core.pipeline.registry import (
    HEAVY_STAGES,
    NO_CACHE_INVALIDATION,
    PIPELINE_LOCK,
    PIPELINE_STAGE_ORDER,
    get_schedule,
)
from clawstrate.core.pipeline.stages import StageRegistry, has_recoverable_errors

logger = structlog.get_logger()

CacheInvalidator = Callable[[], Awaitable[Any]]

# Skip reasons recorded in the stage result
REASON_ALREADY_RUNNING = "already running"
REASON_SPLIT_DISABLED = "split_jobs_disabled"
REASON_UPSTREAM_FAILED = "upstream stage failed"
REASON_DELEGATED = "delegated_to_split_schedule"
REASON_TIME_BUDGET = "time_budget"

UNKNOWN_ERROR = "unknown_error"


def error_message(exc: BaseException) -> str:
    return str(exc) or UNKNOWN_ERROR


def _elapsed_ms(started: float, clock: Callable[[], float]) -> int:
    return max(0, int((clock() - started) * 1000))


# ==========================================================================
# Reports
# ==========================================================================

@dataclass
class StageOutcome:
    """How one stage resolved within a run."""
    stage: str
    status: StageRunStatus
    duration_ms: int
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "stage": self.stage,
            "status": StageRunStatus(self.status).value,
            "durationMs": self.duration_ms,
        }
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class RunReport:
    """Result of one trigger, shaped for the HTTP response."""
    status: str
    http_status: int = 200
    run_id: Optional[UUID] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    stages: Optional[list[StageOutcome]] = None
    result: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def skipped(cls, reason: str) -> "RunReport":
        return cls(status="skipped", reason=reason)

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = dict(self.result)
        body["status"] = self.status
        if self.reason is not None:
            body["reason"] = self.reason
        if self.run_id is not None:
            body["runId"] = str(self.run_id)
        if self.error is not None:
            body["error"] = self.error
        if self.stages is not None:
            body["stages"] = [s.to_dict() for s in self.stages]
        return body


# ==========================================================================
# Shared base
# ==========================================================================

class _LedgerExecutor:
    def __init__(
        self,
        db: AsyncSession,
        lock_manager: LockManager,
        stages: StageRegistry,
        invalidate_caches: CacheInvalidator,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.ledger = RunLedger(db)
        self.lock_manager = lock_manager
        self.stages = stages
        self.invalidate_caches = invalidate_caches
        self.clock = clock

    async def _mark_run_failed(
        self,
        run_id: UUID,
        message: str,
        in_flight: Optional[str] = None,
        unreached: Sequence[str] = (),
    ) -> None:
        """
        Outer recovery path after an orchestrator failure.

        Best-effort: the stage that was running is marked ``failed`` with the
        orchestrator error, stages never reached are skipped as downstream of
        that failure, and the run is closed as ``failed``. A write failure
        here is logged, not raised.
        """
        try:
            await self.db.rollback()
            if in_flight is not None:
                await self.ledger.upsert_stage(
                    run_id, in_flight, StageRunStatus.FAILED, error=message,
                )
            for stage in unreached:
                await self.ledger.skip_stage(run_id, stage, REASON_UPSTREAM_FAILED)
            await self.ledger.finish_run(run_id, PipelineRunStatus.FAILED, error=message)
        except SQLAlchemyError as e:
            logger.error(
                "pipeline_run_fail_write_failed",
                run_id=str(run_id),
                error=str(e),
            )


# ==========================================================================
# Full pipeline
# ==========================================================================

@dataclass
class _RunFlags:
    dependency_failed: bool = False
    had_recoverable_errors: bool = False
    budget_exhausted: bool = False


class PipelineExecutor(_LedgerExecutor):
    """
    Full-pipeline executor.

    Runs ingest → enrich → analyze → aggregate → coordination → briefing
    strictly in order under the ``pipeline`` lock. A stage failure marks
    every later stage ``skipped`` and drives the run to ``failed``;
    recoverable errors reported by a successful stage downgrade the run to
    ``completed_with_errors``. Failed stages are never retried.
    """

    def __init__(
        self,
        db: AsyncSession,
        lock_manager: LockManager,
        stages: StageRegistry,
        invalidate_caches: CacheInvalidator,
        split_jobs: bool = False,
        max_budget_seconds: Optional[float] = None,
        heavy_stage_min_budget_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(db, lock_manager, stages, invalidate_caches, clock)
        self.split_jobs = split_jobs
        self.max_budget_seconds = max_budget_seconds
        self.heavy_stage_min_budget_seconds = heavy_stage_min_budget_seconds

    @property
    def stage_order(self) -> tuple[PipelineStageName, ...]:
        return PIPELINE_STAGE_ORDER

    async def run(self, trigger_type: str = "cron") -> RunReport:
        schedule = get_schedule(PIPELINE_LOCK)
        async with self.lock_manager.hold(
            schedule.lock_resource, schedule.lock_ttl_seconds
        ) as handle:
            if handle is None:
                return RunReport.skipped(REASON_ALREADY_RUNNING)
            return await self._run_locked(trigger_type)

    async def _run_locked(self, trigger_type: str) -> RunReport:
        run = await self.ledger.start_run(
            trigger_type=trigger_type,
            source=PIPELINE_LOCK,
            stage_order=[s.value for s in self.stage_order],
        )
        run_id = run.id
        outcomes: list[StageOutcome] = []
        flags = _RunFlags()
        pipeline_started = self.clock()

        try:
            for stage in self.stage_order:
                outcomes.append(
                    await self._resolve_stage(run_id, stage, flags, pipeline_started)
                )

            await self.invalidate_caches()

            if flags.dependency_failed:
                status = PipelineRunStatus.FAILED
            elif flags.had_recoverable_errors:
                status = PipelineRunStatus.COMPLETED_WITH_ERRORS
            else:
                status = PipelineRunStatus.COMPLETED

            first_failure = next(
                (o for o in outcomes if o.status == StageRunStatus.FAILED), None
            )
            run_error = first_failure.error if (flags.dependency_failed and first_failure) else None

            await self.ledger.finish_run(run_id, status, error=run_error)

            return RunReport(
                status=status.value,
                run_id=run_id,
                stages=outcomes,
            )
        except Exception as e:
            message = error_message(e)
            logger.error("pipeline_run_crashed", run_id=str(run_id), error=message, exc_info=e)

            # Stages without an outcome: the first was in flight, the rest never ran
            pending = [s.value for s in self.stage_order[len(outcomes):]]
            in_flight = pending[0] if pending else None
            unreached = pending[1:]
            await self._mark_run_failed(run_id, message, in_flight, unreached)

            if in_flight is not None:
                outcomes.append(StageOutcome(
                    stage=in_flight,
                    status=StageRunStatus.FAILED,
                    duration_ms=0,
                    error=message,
                ))
            outcomes.extend(
                StageOutcome(
                    stage=stage,
                    status=StageRunStatus.SKIPPED,
                    duration_ms=0,
                    result={"reason": REASON_UPSTREAM_FAILED},
                )
                for stage in unreached
            )
            return RunReport(
                status="error",
                http_status=500,
                run_id=run_id,
                error=message,
                stages=outcomes,
            )

    def _skip_reason(
        self,
        stage: PipelineStageName,
        flags: _RunFlags,
        pipeline_started: float,
    ) -> Optional[str]:
        if self.split_jobs and stage in HEAVY_STAGES:
            return REASON_DELEGATED

        if (
            not flags.budget_exhausted
            and stage in HEAVY_STAGES
            and self.max_budget_seconds is not None
            and self.heavy_stage_min_budget_seconds is not None
        ):
            remaining = self.max_budget_seconds - (self.clock() - pipeline_started)
            if remaining < self.heavy_stage_min_budget_seconds:
                flags.budget_exhausted = True
                logger.info(
                    "pipeline_time_budget_exhausted",
                    stage=stage.value,
                    remaining_seconds=round(remaining),
                )

        if flags.dependency_failed:
            return REASON_UPSTREAM_FAILED
        if flags.budget_exhausted:
            return REASON_TIME_BUDGET
        return None

    async def _resolve_stage(
        self,
        run_id: UUID,
        stage: PipelineStageName,
        flags: _RunFlags,
        pipeline_started: float,
    ) -> StageOutcome:
        reason = self._skip_reason(stage, flags, pipeline_started)
        if reason is not None:
            await self.ledger.skip_stage(run_id, stage.value, reason)
            return StageOutcome(
                stage=stage.value,
                status=StageRunStatus.SKIPPED,
                duration_ms=0,
                result={"reason": reason},
            )

        await self.ledger.start_stage(run_id, stage.value)
        started = self.clock()

        try:
            result = await self.stages.execute(stage)
        except Exception as e:
            duration_ms = _elapsed_ms(started, self.clock)
            message = error_message(e)
            flags.dependency_failed = True
            logger.warning(
                "stage_failed",
                run_id=str(run_id),
                stage=stage.value,
                duration_ms=duration_ms,
                error=message,
            )
            await self.ledger.fail_stage(run_id, stage.value, duration_ms, message)
            return StageOutcome(
                stage=stage.value,
                status=StageRunStatus.FAILED,
                duration_ms=duration_ms,
                error=message,
            )

        duration_ms = _elapsed_ms(started, self.clock)
        if has_recoverable_errors(result):
            flags.had_recoverable_errors = True

        await self.ledger.complete_stage(run_id, stage.value, duration_ms, result)
        logger.info(
            "stage_completed",
            run_id=str(run_id),
            stage=stage.value,
            duration_ms=duration_ms,
        )
        return StageOutcome(
            stage=stage.value,
            status=StageRunStatus.COMPLETED,
            duration_ms=duration_ms,
            result=result,
        )


# ==========================================================================
# Standalone stage
# ==========================================================================

class StageRunner(_LedgerExecutor):
    """
    Standalone-stage executor.

    Runs one stage under its own lock with its own run and stage rows.
    Stage failures come back as a 500 report carrying the run id and the
    message; they never propagate to the caller.
    """

    def __init__(
        self,
        db: AsyncSession,
        lock_manager: LockManager,
        stages: StageRegistry,
        invalidate_caches: CacheInvalidator,
        split_jobs: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(db, lock_manager, stages, invalidate_caches, clock)
        self.split_jobs = split_jobs

    async def run(
        self,
        stage: PipelineStageName,
        trigger_type: str = "cron",
    ) -> RunReport:
        stage = PipelineStageName(stage)
        if not self.split_jobs:
            return RunReport.skipped(REASON_SPLIT_DISABLED)

        schedule = get_schedule(stage)
        async with self.lock_manager.hold(
            schedule.lock_resource, schedule.lock_ttl_seconds
        ) as handle:
            if handle is None:
                return RunReport.skipped(REASON_ALREADY_RUNNING)
            return await self._run_locked(stage, trigger_type)

    async def _run_locked(self, stage: PipelineStageName, trigger_type: str) -> RunReport:
        run = await self.ledger.start_run(
            trigger_type=trigger_type,
            source=stage.value,
            stage_order=[stage.value],
            standalone=True,
        )
        run_id = run.id
        stage_recorded = False

        try:
            await self.ledger.start_stage(run_id, stage.value)
            started = self.clock()

            try:
                result = await self.stages.execute(stage)
            except Exception as e:
                duration_ms = _elapsed_ms(started, self.clock)
                message = error_message(e)
                logger.warning(
                    "standalone_stage_failed",
                    run_id=str(run_id),
                    stage=stage.value,
                    duration_ms=duration_ms,
                    error=message,
                )
                await self.ledger.fail_stage(run_id, stage.value, duration_ms, message)
                stage_recorded = True
                await self.ledger.finish_run(run_id, PipelineRunStatus.FAILED, error=message)
                return RunReport(
                    status="error",
                    http_status=500,
                    run_id=run_id,
                    error=message,
                )

            duration_ms = _elapsed_ms(started, self.clock)
            if stage not in NO_CACHE_INVALIDATION:
                await self.invalidate_caches()

            await self.ledger.complete_stage(run_id, stage.value, duration_ms, result)
            stage_recorded = True
            run_status = (
                PipelineRunStatus.COMPLETED_WITH_ERRORS
                if has_recoverable_errors(result)
                else PipelineRunStatus.COMPLETED
            )
            await self.ledger.finish_run(run_id, run_status)

            logger.info(
                "standalone_stage_completed",
                run_id=str(run_id),
                stage=stage.value,
                duration_ms=duration_ms,
                status=run_status.value,
            )
            return RunReport(
                status=PipelineRunStatus.COMPLETED.value,
                run_id=run_id,
                result=result,
            )
        except Exception as e:
            message = error_message(e)
            logger.error(
                "standalone_run_crashed",
                run_id=str(run_id),
                stage=stage.value,
                error=message,
                exc_info=e,
            )
            await self._mark_run_failed(
                run_id, message, in_flight=None if stage_recorded else stage.value,
            )
            return RunReport(
                status="error",
                http_status=500,
                run_id=run_id,
                error=message,
            )
