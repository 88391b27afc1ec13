"""
Scheduler trigger routes.

The external scheduler calls these at fixed cadences with
``Authorization: Bearer <CRON_SECRET>``. Every route accepts GET and POST.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from clawstrate.api.deps import Pipeline, Runner, TriggerType, verify_cron_secret
from clawstrate.core.config import settings
from clawstrate.core.models import PipelineStageName
from clawstrate.core.pipeline import PIPELINE_STAGE_ORDER, RunReport

router = APIRouter(
    prefix=settings.CRON_PREFIX,
    tags=["cron"],
    dependencies=[Depends(verify_cron_secret)],
)


def _respond(report: RunReport) -> JSONResponse:
    return JSONResponse(status_code=report.http_status, content=report.to_body())


@router.api_route("/pipeline", methods=["GET", "POST"])
async def run_pipeline(executor: Pipeline, trigger_type: TriggerType) -> JSONResponse:
    """
    Run every stage in order as one locked unit.

    Responses:
    - 200 {status: "skipped", reason: "already running"}
    - 200 {status: completed|completed_with_errors|failed, runId, stages}
    - 500 {status: "error", runId, error, stages}
    """
    report = await executor.run(trigger_type=trigger_type)
    return _respond(report)


def _stage_endpoint(stage: PipelineStageName):
    async def run_stage(runner: Runner, trigger_type: TriggerType) -> JSONResponse:
        report = await runner.run(stage, trigger_type=trigger_type)
        return _respond(report)

    run_stage.__name__ = f"run_{stage.value}"
    run_stage.__doc__ = f"Run the {stage.value} stage standalone (split mode only)."
    return run_stage


for _stage in PIPELINE_STAGE_ORDER:
    router.add_api_route(
        f"/{_stage.value}",
        _stage_endpoint(_stage),
        methods=["GET", "POST"],
        name=f"run_{_stage.value}",
    )
