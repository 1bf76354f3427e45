"""SQLAlchemy models for Shipyard.

Each class below corresponds to a table in PostgreSQL.

Data architecture:
─────────────────────────
PipelineRun (one per push / pull-request event)
  ├── 1:N StageResult (test, build, security_scan, deploy)
  ├── 1:N BuildJob (one per target platform of the build matrix)
  ├── 1:N ContainerImage (published multi-arch manifest)
  │     └── 1:N ImageTag (latest, main, main-1a2b3c4 ...)
  ├── 1:N Deployment
  └── 1:N Event (event log for the real-time dashboard)

VulnerabilityReport (one per image digest)
  └── 1:N Finding
"""

import enum
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# ──────────────────────────────────────────────────────────────
# Base
# ──────────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class that all models inherit from.

    All models inheriting from it are automatically
    registered in Base.metadata. This is what Alembic uses
    to detect tables to create/modify.
    """

    type_annotation_map = {
        dict[str, Any]: JSONB,
    }


# ──────────────────────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────────────────────


class TriggerKind(str, enum.Enum):
    """Source-control event that started a run."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"


class RunStatus(str, enum.Enum):
    """Possible states of a pipeline run."""

    PENDING = "pending"  # Queued, no stage started yet
    RUNNING = "running"
    SUCCEEDED = "succeeded"  # No stage failed
    FAILED = "failed"  # At least one stage failed
    CANCELLED = "cancelled"  # Superseded by a newer push to the same branch


class StageType(str, enum.Enum):
    """Types of stages in a pipeline, in execution order."""

    TEST = "test"
    BUILD = "build"
    SECURITY_SCAN = "security_scan"
    DEPLOY = "deploy"


class StageStatus(str, enum.Enum):
    """Possible states of a pipeline stage (and of a build matrix job)."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # Not eligible for this event, or an upstream stage failed


class Severity(str, enum.Enum):
    """Vulnerability severity as reported by the scanner."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    UNKNOWN = "UNKNOWN"


class DeployOutcome(str, enum.Enum):
    """Result of a deploy attempt."""

    DEPLOYED = "deployed"
    UNCHANGED = "unchanged"  # Target already runs this image, nothing written
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"  # No deploy target configured


class EventType(str, enum.Enum):
    """Event types for the real-time dashboard stream."""

    RUN_QUEUED = "run_queued"
    RUN_STARTED = "run_started"
    RUN_SUCCEEDED = "run_succeeded"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"
    STAGE_STARTED = "stage_started"
    STAGE_SUCCEEDED = "stage_succeeded"
    STAGE_FAILED = "stage_failed"
    STAGE_SKIPPED = "stage_skipped"
    IMAGE_PUBLISHED = "image_published"
    REPORT_PUBLISHED = "report_published"
    DEPLOY_COMPLETED = "deploy_completed"


# ──────────────────────────────────────────────────────────────
# Models (Tables)
# ──────────────────────────────────────────────────────────────


class PipelineRun(Base):
    """A pipeline run triggered by a push or a pull-request event.

    This is the central entity: stages, build jobs, images, deployments
    and events are all linked to a PipelineRun.
    """

    __tablename__ = "pipeline_runs"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    repository: Mapped[str] = mapped_column(String(255), index=True)
    trigger: Mapped[TriggerKind] = mapped_column(Enum(TriggerKind), index=True)
    branch: Mapped[str] = mapped_column(String(255), index=True)
    # A Git SHA is always 40 hexadecimal characters
    commit_sha: Mapped[str] = mapped_column(String(40))
    pull_request_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[RunStatus] = mapped_column(Enum(RunStatus), default=RunStatus.PENDING, index=True)

    # Set when the run is a re-trigger of an earlier run
    rerun_of_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("pipeline_runs.id", ondelete="SET NULL"),
        nullable=True,
    )

    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        index=True,
    )

    # ── Relationships ──

    stages: Mapped[list["StageResult"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="StageResult.order",
    )

    build_jobs: Mapped[list["BuildJob"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="BuildJob.platform",
    )

    images: Mapped[list["ContainerImage"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
    )

    deployments: Mapped[list["Deployment"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="Deployment.created_at.desc()",
    )

    events: Mapped[list["Event"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="Event.created_at.desc()",
    )

    def stage(self, stage_type: StageType) -> "StageResult | None":
        """Return this run's result row for the given stage."""
        return next((s for s in self.stages if s.stage_type == stage_type), None)

    def __repr__(self) -> str:
        return f"<PipelineRun {self.id[:8]} {self.trigger.value}:{self.branch} [{self.status.value}]>"


class StageResult(Base):
    """The outcome of one stage of a run.

    Each stage stores stage-specific results in `details` (JSONB):
      test:          {"exit_code": 0, "duration": 84.2}
      build:         {"image": "ghcr.io/acme/app@sha256:...", "tags": [...]}
      security_scan: {"digest": "sha256:...", "counts": {"CRITICAL": 0, ...}}
      deploy:        {"outcome": "deployed", "environment": "production"}
    """

    __tablename__ = "stage_results"
    __table_args__ = (UniqueConstraint("run_id", "stage_type", name="uq_stage_results_run_stage"),)

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4()))
    run_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        index=True,
    )

    stage_type: Mapped[StageType] = mapped_column(Enum(StageType))
    status: Mapped[StageStatus] = mapped_column(Enum(StageStatus), default=StageStatus.PENDING)
    # order = position in the pipeline (1=test, 2=build, 3=scan, 4=deploy)
    order: Mapped[int] = mapped_column(Integer)

    logs: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    run: Mapped["PipelineRun"] = relationship(back_populates="stages")

    def __repr__(self) -> str:
        return f"<StageResult {self.stage_type.value} [{self.status.value}]>"


class BuildJob(Base):
    """One entry of the build matrix: the image for a single platform."""

    __tablename__ = "build_jobs"
    __table_args__ = (UniqueConstraint("run_id", "platform", name="uq_build_jobs_run_platform"),)

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4()))
    run_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        index=True,
    )

    platform: Mapped[str] = mapped_column(String(50))  # e.g. linux/arm64
    queue: Mapped[str] = mapped_column(String(100))
    status: Mapped[StageStatus] = mapped_column(Enum(StageStatus), default=StageStatus.PENDING)
    # Per-platform digest, pushed by digest (no tag)
    digest: Mapped[str | None] = mapped_column(String(100), nullable=True)
    logs: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    run: Mapped["PipelineRun"] = relationship(back_populates="build_jobs")

    def __repr__(self) -> str:
        return f"<BuildJob {self.platform} [{self.status.value}]>"


class ContainerImage(Base):
    """A multi-arch image manifest published by a Build stage."""

    __tablename__ = "container_images"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4()))
    run_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        index=True,
    )

    # registry/namespace/name, without tag or digest
    repository: Mapped[str] = mapped_column(String(500))
    # Not unique: a fully cached rebuild yields the same digest
    digest: Mapped[str] = mapped_column(String(100), index=True)
    platforms: Mapped[list[str]] = mapped_column(JSONB, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    run: Mapped["PipelineRun"] = relationship(back_populates="images")
    tags: Mapped[list["ImageTag"]] = relationship(
        back_populates="image",
        cascade="all, delete-orphan",
        order_by="ImageTag.id",
    )

    @property
    def reference(self) -> str:
        """Immutable reference: repository@digest."""
        return f"{self.repository}@{self.digest}"

    def __repr__(self) -> str:
        return f"<ContainerImage {self.repository}@{self.digest[:19]}>"


class ImageTag(Base):
    """A human-readable label pointing to a ContainerImage."""

    __tablename__ = "image_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    image_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("container_images.id", ondelete="CASCADE"),
        index=True,
    )
    # Docker tags are at most 128 characters
    name: Mapped[str] = mapped_column(String(128), index=True)

    image: Mapped["ContainerImage"] = relationship(back_populates="tags")

    def __repr__(self) -> str:
        return f"<ImageTag {self.name}>"


class VulnerabilityReport(Base):
    """Scanner findings for one image digest.

    Keyed by digest: scanning the same image content again replaces
    the findings instead of adding a second report.
    """

    __tablename__ = "vulnerability_reports"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4()))
    digest: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    image_reference: Mapped[str] = mapped_column(String(600))
    scanner: Mapped[str] = mapped_column(String(50), default="trivy")
    scanner_version: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Denormalized counts for quick dashboard queries
    critical_count: Mapped[int] = mapped_column(Integer, default=0)
    high_count: Mapped[int] = mapped_column(Integer, default=0)
    medium_count: Mapped[int] = mapped_column(Integer, default=0)
    low_count: Mapped[int] = mapped_column(Integer, default=0)
    unknown_count: Mapped[int] = mapped_column(Integer, default=0)

    sarif_uploaded: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    findings: Mapped[list["Finding"]] = relationship(
        back_populates="report",
        cascade="all, delete-orphan",
        order_by="Finding.id",
    )

    @property
    def counts(self) -> dict[Severity, int]:
        return {
            Severity.CRITICAL: self.critical_count,
            Severity.HIGH: self.high_count,
            Severity.MEDIUM: self.medium_count,
            Severity.LOW: self.low_count,
            Severity.UNKNOWN: self.unknown_count,
        }

    @property
    def total_count(self) -> int:
        return (
            self.critical_count
            + self.high_count
            + self.medium_count
            + self.low_count
            + self.unknown_count
        )

    def __repr__(self) -> str:
        return f"<VulnerabilityReport {self.digest[:19]} total={self.total_count}>"


class Finding(Base):
    """A single vulnerability found in an image."""

    __tablename__ = "findings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("vulnerability_reports.id", ondelete="CASCADE"),
        index=True,
    )

    vulnerability_id: Mapped[str] = mapped_column(String(64), index=True)  # e.g. CVE-2023-44487
    severity: Mapped[Severity] = mapped_column(Enum(Severity), index=True)
    package_name: Mapped[str] = mapped_column(String(255))
    installed_version: Mapped[str | None] = mapped_column(String(128), nullable=True)
    fixed_version: Mapped[str | None] = mapped_column(String(128), nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    target: Mapped[str | None] = mapped_column(String(512), nullable=True)

    report: Mapped["VulnerabilityReport"] = relationship(back_populates="findings")

    def __repr__(self) -> str:
        return f"<Finding {self.vulnerability_id} [{self.severity.value}]>"


class Deployment(Base):
    """A deploy attempt of an image to a target environment."""

    __tablename__ = "deployments"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4()))
    run_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        index=True,
    )

    environment: Mapped[str] = mapped_column(String(100), index=True)
    image_reference: Mapped[str] = mapped_column(String(600))
    image_digest: Mapped[str] = mapped_column(String(100))
    outcome: Mapped[DeployOutcome] = mapped_column(Enum(DeployOutcome))
    argocd_app_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    run: Mapped["PipelineRun"] = relationship(back_populates="deployments")

    def __repr__(self) -> str:
        return f"<Deployment {self.environment} [{self.outcome.value}]>"


class Event(Base):
    """Timestamped event for the dashboard real-time feed.

    Each significant action creates an Event:
    - Run queued, started, finished
    - Stage started, succeeded, failed, skipped
    - Image published, report published, deploy completed
    """

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4()))
    event_type: Mapped[EventType] = mapped_column(Enum(EventType), index=True)
    message: Mapped[str] = mapped_column(Text)

    event_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    # nullable=True because some events are global.
    run_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        index=True,
    )

    run: Mapped["PipelineRun | None"] = relationship(back_populates="events")

    def __repr__(self) -> str:
        return f"<Event {self.event_type.value} @ {self.created_at}>"
