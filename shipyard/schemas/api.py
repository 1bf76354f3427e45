"""Pydantic schemas for API request/response serialization.

These schemas define the shape of data going out of the API.
FastAPI uses them to:
- Serialize outgoing response data (Python objects → JSON)
- Generate the OpenAPI/Swagger documentation

Naming convention:
- *Response: returned by GET endpoints
- *Summary: lightweight version for list endpoints
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shipyard.models.entities import (
    DeployOutcome,
    EventType,
    RunStatus,
    Severity,
    StageStatus,
    StageType,
    TriggerKind,
)

# ──────────────────────────────────────────────
# Stage
# ──────────────────────────────────────────────


class StageResultResponse(BaseModel):
    """Stage outcome, including stage-specific details."""

    # from_attributes=True reads data from SQLAlchemy model attributes
    # (e.g., stage.stage_type) rather than expecting a dict.
    model_config = ConfigDict(from_attributes=True)

    id: str
    stage_type: StageType
    status: StageStatus
    order: int
    details: dict | None = None
    error: str | None = None
    duration_seconds: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class StageLogsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stage_type: StageType
    status: StageStatus
    logs: str | None = None


# ──────────────────────────────────────────────
# Build matrix and images
# ──────────────────────────────────────────────


class BuildJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    platform: str
    queue: str
    status: StageStatus
    digest: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class ImageResponse(BaseModel):
    """A published multi-arch manifest with its tags."""

    model_config = ConfigDict(from_attributes=True)

    repository: str
    digest: str
    reference: str
    platforms: list[str] = []
    tags: list[str] = []
    created_at: datetime

    @field_validator("tags", mode="before")
    @classmethod
    def tag_names(cls, value: list) -> list[str]:
        # ImageTag rows → plain names
        return [getattr(tag, "name", tag) for tag in value]


class DeploymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    environment: str
    image_reference: str
    image_digest: str
    outcome: DeployOutcome
    argocd_app_name: str | None = None
    message: str | None = None
    created_at: datetime


# ──────────────────────────────────────────────
# Run
# ──────────────────────────────────────────────


class RunSummary(BaseModel):
    """Lightweight run info for list views, with stage statuses only."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    repository: str
    trigger: TriggerKind
    branch: str
    commit_sha: str
    pull_request_number: int | None = None
    status: RunStatus
    duration_seconds: int | None = None
    created_at: datetime
    stages: dict[StageType, StageStatus] = {}

    @field_validator("stages", mode="before")
    @classmethod
    def stage_statuses(cls, value: list | dict) -> dict:
        if isinstance(value, dict):
            return value
        return {stage.stage_type: stage.status for stage in value}


class RunResponse(BaseModel):
    """Full run details: stages, build matrix, images and deployments."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    repository: str
    trigger: TriggerKind
    branch: str
    commit_sha: str
    pull_request_number: int | None = None
    status: RunStatus
    rerun_of_id: str | None = None
    duration_seconds: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime
    stages: list[StageResultResponse] = []
    build_jobs: list[BuildJobResponse] = []
    images: list[ImageResponse] = []
    deployments: list[DeploymentResponse] = []


# ──────────────────────────────────────────────
# Vulnerability report
# ──────────────────────────────────────────────


class FindingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    vulnerability_id: str
    severity: Severity
    package_name: str
    installed_version: str | None = None
    fixed_version: str | None = None
    title: str | None = None
    target: str | None = None


class ReportResponse(BaseModel):
    """Scanner findings for one image digest."""

    model_config = ConfigDict(from_attributes=True)

    digest: str
    image_reference: str
    scanner: str
    scanner_version: str | None = None
    counts: dict[Severity, int]
    total_count: int
    sarif_uploaded: bool
    updated_at: datetime
    findings: list[FindingResponse] = []


# ──────────────────────────────────────────────
# Event
# ──────────────────────────────────────────────


class EventResponse(BaseModel):
    """Event data for the real-time feed."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    event_type: EventType
    message: str
    # The ORM attribute is event_metadata ("metadata" is reserved by SQLAlchemy)
    metadata: dict | None = Field(default=None, validation_alias="event_metadata")
    run_id: str | None = None
    created_at: datetime


# ──────────────────────────────────────────────
# Dashboard Stats
# ──────────────────────────────────────────────


class PlatformStats(BaseModel):
    """Aggregate metrics for the dashboard header."""

    active_runs: int
    total_runs: int
    runs_today: int
    success_rate_percent: float
    avg_run_time_seconds: float | None = None
    deployments_total: int
    last_deployed_tag: str | None = None
    critical_vulnerabilities: int
