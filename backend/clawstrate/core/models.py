"""
Clawstrate - Database Models
============================

SQLAlchemy models for the orchestration ledger.

Only the two ledger tables live here; stage-owned tables belong to the
stage implementations.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clawstrate.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class PipelineStageName(str, enum.Enum):
    """Fixed pipeline stages, in execution order."""
    INGEST = "ingest"
    ENRICH = "enrich"
    ANALYZE = "analyze"
    AGGREGATE = "aggregate"
    COORDINATION = "coordination"
    BRIEFING = "briefing"


class PipelineRunStatus(str, enum.Enum):
    """Overall run status."""
    STARTED = "started"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class StageRunStatus(str, enum.Enum):
    """Per-stage status within a run."""
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==========================================================================
# Models
# ==========================================================================

class PipelineRun(Base):
    """
    One orchestrator invocation.

    Either a full pipeline run (source="pipeline") or a standalone stage run
    (source=<stage>, run_metadata["standalone"] is True). Inserted before any
    stage executes and updated exactly once when the invocation ends.
    """

    __tablename__ = "pipeline_runs"
    __table_args__ = (
        Index("idx_pipeline_runs_started", "started_at"),
        Index("idx_pipeline_runs_status", "status"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    trigger_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )  # cron, manual, replay
    source: Mapped[str] = mapped_column(
        String(50),
        default="pipeline",
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(32),
        default=PipelineRunStatus.STARTED.value,
        nullable=False,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    run_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
    )  # {stageOrder: [...], standalone: bool}

    # Relationships
    stages: Mapped[list["PipelineStageRun"]] = relationship(
        back_populates="pipeline_run",
        lazy="selectin",
        order_by="PipelineStageRun.started_at",
    )

    def __repr__(self) -> str:
        return f"<PipelineRun {self.id} {self.source} [{self.status}]>"


class PipelineStageRun(Base):
    """
    One stage's record within a run.

    (pipeline_run_id, stage) is unique; all writes to that pair go through
    the ledger's insert-or-update statements.
    """

    __tablename__ = "pipeline_stage_runs"
    __table_args__ = (
        UniqueConstraint(
            "pipeline_run_id",
            "stage",
            name="idx_pipeline_stage_run_unique",
        ),
        Index("idx_pipeline_stage_stage", "stage"),
        Index(
            "idx_pipeline_stage_status_completed",
            "stage",
            "status",
            "completed_at",
        ),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    pipeline_run_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("pipeline_runs.id"),
        nullable=False,
    )
    stage: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=StageRunStatus.STARTED.value,
        nullable=False,
    )  # started, completed, failed, skipped

    # Timing
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    duration_ms: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    # Results
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
    )
    error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    pipeline_run: Mapped["PipelineRun"] = relationship(
        back_populates="stages",
    )

    def __repr__(self) -> str:
        return f"<PipelineStageRun {self.stage} [{self.status}]>"
