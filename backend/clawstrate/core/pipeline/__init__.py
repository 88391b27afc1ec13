"""
Clawstrate Pipeline Orchestration
=================================

Runs the ingest → enrich → analyze → aggregate → coordination → briefing
pipeline on behalf of an external scheduler.

Components:
- PipelineExecutor: full ordered pipeline under one lock
- StageRunner: one stage under its own lock (split mode)
- RunLedger: pipeline_runs / pipeline_stage_runs writes
- StageRegistry: stage name -> async stage callable
- SCHEDULES: static cadence and lock-key registry
"""

from clawstrate.core.pipeline.executor import PipelineExecutor, RunReport, StageOutcome, StageRunner
from clawstrate.core.pipeline.ledger import RunLedger
from clawstrate.core.pipeline.registry import PIPELINE_STAGE_ORDER, SCHEDULES, JobSchedule, get_schedule
from clawstrate.core.pipeline.stages import (
    Stage,
    StageNotConfiguredError,
    StageRegistry,
    gather_stages,
    has_recoverable_errors,
)

__all__ = [
    "PipelineExecutor",
    "StageRunner",
    "RunReport",
    "StageOutcome",
    "RunLedger",
    "PIPELINE_STAGE_ORDER",
    "SCHEDULES",
    "JobSchedule",
    "get_schedule",
    "Stage",
    "StageNotConfiguredError",
    "StageRegistry",
    "gather_stages",
    "has_recoverable_errors",
]
