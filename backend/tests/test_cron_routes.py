"""
Clawstrate - Cron Route Tests
=============================

Tests for scheduler-triggered endpoints.
"""

from uuid import UUID

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from clawstrate.core.config import settings
from clawstrate.core.locks import LockHandle
from clawstrate.core.models import PipelineRun
from clawstrate.core.pipeline import RunLedger

STAGE_ROUTES = ["ingest", "enrich", "analyze", "aggregate", "coordination", "briefing"]


@pytest.fixture
def split_mode(monkeypatch):
    monkeypatch.setattr(settings, "PIPELINE_SPLIT_JOBS", True)


@pytest.fixture
def release_calls(monkeypatch) -> list[str]:
    """Record every lock release while still performing it."""
    calls: list[str] = []
    original = LockHandle.release

    async def counting_release(self):
        calls.append(self.key)
        return await original(self)

    monkeypatch.setattr(LockHandle, "release", counting_release)
    return calls


async def count_runs(db_session) -> int:
    result = await db_session.execute(select(func.count()).select_from(PipelineRun))
    return result.scalar_one()


# ==========================================================================
# Authentication
# ==========================================================================

class TestCronAuth:
    """Tests for the shared-secret check."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["pipeline", *STAGE_ROUTES])
    async def test_missing_header(self, client: AsyncClient, fake_redis, db_session, path):
        response = await client.post(f"/api/cron/{path}")

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}
        assert fake_redis.set_calls == []
        assert await count_runs(db_session) == 0

    @pytest.mark.asyncio
    async def test_wrong_secret(self, client: AsyncClient, fake_redis):
        response = await client.get(
            "/api/cron/pipeline",
            headers={"Authorization": "Bearer not-the-secret"},
        )

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}
        assert fake_redis.set_calls == []

    @pytest.mark.asyncio
    async def test_secret_without_bearer_prefix(self, client: AsyncClient):
        response = await client.get(
            "/api/cron/pipeline",
            headers={"Authorization": settings.CRON_SECRET},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unconfigured_secret_rejects_everything(self, client: AsyncClient, monkeypatch):
        monkeypatch.setattr(settings, "CRON_SECRET", "")

        response = await client.get("/api/cron/pipeline", headers={"Authorization": "Bearer "})

        assert response.status_code == 401


# ==========================================================================
# Full pipeline route
# ==========================================================================

class TestPipelineRoute:
    """Tests for /api/cron/pipeline."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["GET", "POST"])
    async def test_runs_pipeline(self, client: AsyncClient, auth_headers, method, db_session):
        response = await client.request(method, "/api/cron/pipeline", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert [s["stage"] for s in data["stages"]] == STAGE_ROUTES
        assert all("durationMs" in s for s in data["stages"])

        run = await RunLedger(db_session).get_run(UUID(data["runId"]))
        assert run.trigger_type == "cron"

    @pytest.mark.asyncio
    async def test_already_running(self, client: AsyncClient, auth_headers, fake_redis, stage_mocks):
        fake_redis.store["lock:pipeline"] = "other-holder"

        response = await client.post("/api/cron/pipeline", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"status": "skipped", "reason": "already running"}
        stage_mocks["ingest"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stage_failure_reported(self, client: AsyncClient, auth_headers, stage_mocks, release_calls):
        stage_mocks["aggregate"].side_effect = RuntimeError("aggregation query timed out")

        response = await client.post("/api/cron/pipeline", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "failed"
        by_stage = {s["stage"]: s for s in data["stages"]}
        assert by_stage["aggregate"]["error"] == "aggregation query timed out"
        assert by_stage["briefing"]["result"] == {"reason": "upstream stage failed"}
        assert release_calls == ["lock:pipeline"]

    @pytest.mark.asyncio
    async def test_manual_trigger_type(self, client: AsyncClient, auth_headers, db_session):
        response = await client.post(
            "/api/cron/pipeline",
            headers={**auth_headers, "X-Trigger-Type": "manual"},
        )

        run = await RunLedger(db_session).get_run(UUID(response.json()["runId"]))
        assert run.trigger_type == "manual"

    @pytest.mark.asyncio
    async def test_split_mode_delegates_heavy_stages(self, client: AsyncClient, auth_headers, split_mode):
        response = await client.post("/api/cron/pipeline", headers=auth_headers)

        data = response.json()
        assert data["status"] == "completed"
        assert data["stages"][2]["result"] == {"reason": "delegated_to_split_schedule"}


# ==========================================================================
# Standalone stage routes
# ==========================================================================

class TestStageRoutes:
    """Tests for /api/cron/<stage>."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage", STAGE_ROUTES)
    async def test_split_disabled(self, client: AsyncClient, auth_headers, stage_mocks, fake_redis, stage):
        response = await client.get(f"/api/cron/{stage}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"status": "skipped", "reason": "split_jobs_disabled"}
        stage_mocks[stage].assert_not_awaited()
        assert fake_redis.set_calls == []

    @pytest.mark.asyncio
    async def test_success(
        self, client: AsyncClient, auth_headers, split_mode, stage_mocks, fake_redis, release_calls,
    ):
        stage_mocks["ingest"].return_value = {"posts": 5, "comments": 9, "errors": []}

        response = await client.post("/api/cron/ingest", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["posts"] == 5
        assert data["comments"] == 9
        assert "runId" in data
        assert fake_redis.set_calls[0]["key"] == "lock:ingest"
        assert fake_redis.set_calls[0]["ex"] == 120
        assert release_calls == ["lock:ingest"]

    @pytest.mark.asyncio
    async def test_stage_failure(
        self, client: AsyncClient, auth_headers, split_mode, stage_mocks, release_calls, db_session,
    ):
        stage_mocks["enrich"].side_effect = RuntimeError("Pipeline failed")

        response = await client.post("/api/cron/enrich", headers=auth_headers)

        assert response.status_code == 500
        data = response.json()
        assert data["status"] == "error"
        assert data["error"] == "Pipeline failed"
        assert release_calls == ["lock:enrich"]

        run = await RunLedger(db_session).get_run(UUID(data["runId"]))
        assert run.status == "failed"

    @pytest.mark.asyncio
    async def test_already_running(self, client: AsyncClient, auth_headers, split_mode, fake_redis, stage_mocks):
        fake_redis.store["lock:analyze"] = "other-holder"

        response = await client.post("/api/cron/analyze", headers=auth_headers)

        assert response.json() == {"status": "skipped", "reason": "already running"}
        stage_mocks["analyze"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cache_invalidation(self, client: AsyncClient, auth_headers, split_mode, fake_redis):
        fake_redis.store["api:topics:trending"] = "{}"
        fake_redis.store["api:agents:top"] = "{}"
        fake_redis.store["session:abc"] = "keep"

        response = await client.post("/api/cron/aggregate", headers=auth_headers)

        assert response.json()["status"] == "completed"
        assert "api:topics:trending" not in fake_redis.store
        assert "api:agents:top" not in fake_redis.store
        assert fake_redis.store["session:abc"] == "keep"

    @pytest.mark.asyncio
    async def test_briefing_keeps_caches(self, client: AsyncClient, auth_headers, split_mode, fake_redis):
        fake_redis.store["api:topics:trending"] = "{}"

        response = await client.post("/api/cron/briefing", headers=auth_headers)

        assert response.json()["status"] == "completed"
        assert fake_redis.store["api:topics:trending"] == "{}"
