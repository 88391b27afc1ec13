"""
Clawstrate - Run Ledger Tests
=============================

Tests for PipelineRun / PipelineStageRun persistence.
"""

import pytest
from sqlalchemy import func, select

from clawstrate.core.models import (
    PipelineRunStatus,
    PipelineStageRun,
    StageRunStatus,
)
from clawstrate.core.pipeline import RunLedger


async def count_stage_rows(db_session) -> int:
    result = await db_session.execute(select(func.count()).select_from(PipelineStageRun))
    return result.scalar_one()


class TestRuns:
    """Tests for run rows."""

    @pytest.mark.asyncio
    async def test_start_run_records_stage_order(self, db_session):
        ledger = RunLedger(db_session)

        run = await ledger.start_run("cron", "pipeline", ["ingest", "enrich"])

        stored = await ledger.get_run(run.id)
        assert stored.status == PipelineRunStatus.STARTED.value
        assert stored.trigger_type == "cron"
        assert stored.source == "pipeline"
        assert stored.run_metadata == {"stageOrder": ["ingest", "enrich"]}
        assert stored.completed_at is None

    @pytest.mark.asyncio
    async def test_standalone_run_metadata(self, db_session):
        ledger = RunLedger(db_session)

        run = await ledger.start_run("manual", "enrich", ["enrich"], standalone=True)

        stored = await ledger.get_run(run.id)
        assert stored.run_metadata == {"stageOrder": ["enrich"], "standalone": True}
        assert stored.trigger_type == "manual"

    @pytest.mark.asyncio
    async def test_finish_run_sets_terminal_fields(self, db_session):
        ledger = RunLedger(db_session)
        run = await ledger.start_run("cron", "pipeline", ["ingest"])

        await ledger.finish_run(run.id, PipelineRunStatus.FAILED, error="boom")

        stored = await ledger.get_run(run.id)
        assert stored.status == "failed"
        assert stored.error == "boom"
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_recent_runs_newest_first(self, db_session):
        ledger = RunLedger(db_session)
        first = await ledger.start_run("cron", "pipeline", ["ingest"])
        second = await ledger.start_run("cron", "pipeline", ["ingest"])

        runs = await ledger.recent_runs(limit=1)

        assert [r.id for r in runs] == [second.id]
        assert first.id != second.id


class TestStageUpsert:
    """Tests for the (run, stage) uniqueness guarantee."""

    @pytest.mark.asyncio
    async def test_start_stage_is_noop_on_conflict(self, db_session):
        ledger = RunLedger(db_session)
        run = await ledger.start_run("cron", "pipeline", ["ingest"])

        await ledger.start_stage(run.id, "ingest")
        await ledger.complete_stage(run.id, "ingest", 42, {"posts": 3})
        await ledger.start_stage(run.id, "ingest")

        rows = await ledger.get_stage_runs(run.id)
        assert len(rows) == 1
        # The second start did not reset the completed row
        assert rows[0].status == StageRunStatus.COMPLETED.value
        assert rows[0].duration_ms == 42
        assert rows[0].result == {"posts": 3}

    @pytest.mark.asyncio
    async def test_upsert_updates_existing_row(self, db_session):
        ledger = RunLedger(db_session)
        run = await ledger.start_run("cron", "pipeline", ["analyze"])

        await ledger.start_stage(run.id, "analyze")
        await ledger.upsert_stage(run.id, "analyze", StageRunStatus.FAILED, 10, error="first")
        await ledger.upsert_stage(run.id, "analyze", StageRunStatus.COMPLETED, 20, {"ok": True})

        rows = await ledger.get_stage_runs(run.id)
        assert len(rows) == 1
        assert rows[0].status == "completed"
        assert rows[0].duration_ms == 20
        assert rows[0].result == {"ok": True}
        assert rows[0].error is None
        assert await count_stage_rows(db_session) == 1

    @pytest.mark.asyncio
    async def test_skip_stage_records_reason(self, db_session):
        ledger = RunLedger(db_session)
        run = await ledger.start_run("cron", "pipeline", ["briefing"])

        await ledger.skip_stage(run.id, "briefing", "upstream stage failed")
        await ledger.skip_stage(run.id, "briefing", "upstream stage failed")

        rows = await ledger.get_stage_runs(run.id)
        assert len(rows) == 1
        assert rows[0].status == StageRunStatus.SKIPPED.value
        assert rows[0].duration_ms == 0
        assert rows[0].result == {"reason": "upstream stage failed"}
        assert rows[0].completed_at is not None

    @pytest.mark.asyncio
    async def test_same_stage_in_different_runs(self, db_session):
        ledger = RunLedger(db_session)
        run_a = await ledger.start_run("cron", "pipeline", ["ingest"])
        run_b = await ledger.start_run("cron", "pipeline", ["ingest"])

        await ledger.start_stage(run_a.id, "ingest")
        await ledger.start_stage(run_b.id, "ingest")

        assert await count_stage_rows(db_session) == 2

    @pytest.mark.asyncio
    async def test_fail_stage(self, db_session):
        ledger = RunLedger(db_session)
        run = await ledger.start_run("cron", "pipeline", ["enrich"])
        await ledger.start_stage(run.id, "enrich")

        await ledger.fail_stage(run.id, "enrich", 7, "classifier down")

        rows = await ledger.get_stage_runs(run.id)
        assert rows[0].status == "failed"
        assert rows[0].error == "classifier down"
        assert rows[0].duration_ms == 7


class TestLatestCompleted:
    """Tests for the monitoring read."""

    @pytest.mark.asyncio
    async def test_latest_completed_per_stage(self, db_session):
        ledger = RunLedger(db_session)
        old = await ledger.start_run("cron", "pipeline", ["ingest"])
        new = await ledger.start_run("cron", "pipeline", ["ingest"])

        await ledger.upsert_stage(old.id, "ingest", StageRunStatus.COMPLETED, 5, {"n": 1})
        await ledger.upsert_stage(new.id, "ingest", StageRunStatus.COMPLETED, 6, {"n": 2})
        await ledger.upsert_stage(new.id, "enrich", StageRunStatus.FAILED, 1, error="x")

        latest = await ledger.latest_completed_stages()

        assert set(latest) == {"ingest"}
        assert latest["ingest"].pipeline_run_id == new.id
        assert latest["ingest"].result == {"n": 2}
