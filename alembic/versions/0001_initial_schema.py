"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# SQLAlchemy stores enum member names
trigger_kind = sa.Enum("PUSH", "PULL_REQUEST", name="triggerkind")
run_status = sa.Enum("PENDING", "RUNNING", "SUCCEEDED", "FAILED", "CANCELLED", name="runstatus")
stage_type = sa.Enum("TEST", "BUILD", "SECURITY_SCAN", "DEPLOY", name="stagetype")
stage_status = sa.Enum("PENDING", "RUNNING", "SUCCEEDED", "FAILED", "SKIPPED", name="stagestatus")
severity = sa.Enum("CRITICAL", "HIGH", "MEDIUM", "LOW", "UNKNOWN", name="severity")
deploy_outcome = sa.Enum("DEPLOYED", "UNCHANGED", "FAILED", "NOT_ATTEMPTED", name="deployoutcome")
event_type = sa.Enum(
    "RUN_QUEUED",
    "RUN_STARTED",
    "RUN_SUCCEEDED",
    "RUN_FAILED",
    "RUN_CANCELLED",
    "STAGE_STARTED",
    "STAGE_SUCCEEDED",
    "STAGE_FAILED",
    "STAGE_SKIPPED",
    "IMAGE_PUBLISHED",
    "REPORT_PUBLISHED",
    "DEPLOY_COMPLETED",
    name="eventtype",
)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=False)


def _run_fk() -> sa.Column:
    return sa.Column("run_id", _uuid(), sa.ForeignKey("pipeline_runs.id", ondelete="CASCADE"), nullable=False)


def upgrade() -> None:
    op.create_table(
        "pipeline_runs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("repository", sa.String(255), nullable=False),
        sa.Column("trigger", trigger_kind, nullable=False),
        sa.Column("branch", sa.String(255), nullable=False),
        sa.Column("commit_sha", sa.String(40), nullable=False),
        sa.Column("pull_request_number", sa.Integer(), nullable=True),
        sa.Column("status", run_status, nullable=False),
        sa.Column("rerun_of_id", _uuid(), sa.ForeignKey("pipeline_runs.id", ondelete="SET NULL"), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    for column in ("repository", "trigger", "branch", "status", "created_at"):
        op.create_index(f"ix_pipeline_runs_{column}", "pipeline_runs", [column])

    op.create_table(
        "stage_results",
        sa.Column("id", _uuid(), primary_key=True),
        _run_fk(),
        sa.Column("stage_type", stage_type, nullable=False),
        sa.Column("status", stage_status, nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("logs", sa.Text(), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("run_id", "stage_type", name="uq_stage_results_run_stage"),
    )
    op.create_index("ix_stage_results_run_id", "stage_results", ["run_id"])

    op.create_table(
        "build_jobs",
        sa.Column("id", _uuid(), primary_key=True),
        _run_fk(),
        sa.Column("platform", sa.String(50), nullable=False),
        sa.Column("queue", sa.String(100), nullable=False),
        sa.Column("status", stage_status, nullable=False),
        sa.Column("digest", sa.String(100), nullable=True),
        sa.Column("logs", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("run_id", "platform", name="uq_build_jobs_run_platform"),
    )
    op.create_index("ix_build_jobs_run_id", "build_jobs", ["run_id"])

    op.create_table(
        "container_images",
        sa.Column("id", _uuid(), primary_key=True),
        _run_fk(),
        sa.Column("repository", sa.String(500), nullable=False),
        sa.Column("digest", sa.String(100), nullable=False),
        sa.Column("platforms", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_container_images_run_id", "container_images", ["run_id"])
    op.create_index("ix_container_images_digest", "container_images", ["digest"])

    op.create_table(
        "image_tags",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "image_id",
            _uuid(),
            sa.ForeignKey("container_images.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(128), nullable=False),
    )
    op.create_index("ix_image_tags_image_id", "image_tags", ["image_id"])
    op.create_index("ix_image_tags_name", "image_tags", ["name"])

    op.create_table(
        "vulnerability_reports",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("digest", sa.String(100), nullable=False),
        sa.Column("image_reference", sa.String(600), nullable=False),
        sa.Column("scanner", sa.String(50), nullable=False),
        sa.Column("scanner_version", sa.String(50), nullable=True),
        sa.Column("critical_count", sa.Integer(), nullable=False),
        sa.Column("high_count", sa.Integer(), nullable=False),
        sa.Column("medium_count", sa.Integer(), nullable=False),
        sa.Column("low_count", sa.Integer(), nullable=False),
        sa.Column("unknown_count", sa.Integer(), nullable=False),
        sa.Column("sarif_uploaded", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_vulnerability_reports_digest", "vulnerability_reports", ["digest"], unique=True)

    op.create_table(
        "findings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "report_id",
            _uuid(),
            sa.ForeignKey("vulnerability_reports.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("vulnerability_id", sa.String(64), nullable=False),
        sa.Column("severity", severity, nullable=False),
        sa.Column("package_name", sa.String(255), nullable=False),
        sa.Column("installed_version", sa.String(128), nullable=True),
        sa.Column("fixed_version", sa.String(128), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("target", sa.String(512), nullable=True),
    )
    op.create_index("ix_findings_report_id", "findings", ["report_id"])
    op.create_index("ix_findings_vulnerability_id", "findings", ["vulnerability_id"])
    op.create_index("ix_findings_severity", "findings", ["severity"])

    op.create_table(
        "deployments",
        sa.Column("id", _uuid(), primary_key=True),
        _run_fk(),
        sa.Column("environment", sa.String(100), nullable=False),
        sa.Column("image_reference", sa.String(600), nullable=False),
        sa.Column("image_digest", sa.String(100), nullable=False),
        sa.Column("outcome", deploy_outcome, nullable=False),
        sa.Column("argocd_app_name", sa.String(255), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_deployments_run_id", "deployments", ["run_id"])
    op.create_index("ix_deployments_environment", "deployments", ["environment"])

    op.create_table(
        "events",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("event_type", event_type, nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("event_metadata", postgresql.JSONB(), nullable=True),
        sa.Column(
            "run_id",
            _uuid(),
            sa.ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_events_event_type", "events", ["event_type"])
    op.create_index("ix_events_run_id", "events", ["run_id"])
    op.create_index("ix_events_created_at", "events", ["created_at"])


def downgrade() -> None:
    for table in (
        "events",
        "deployments",
        "findings",
        "vulnerability_reports",
        "image_tags",
        "container_images",
        "build_jobs",
        "stage_results",
        "pipeline_runs",
    ):
        op.drop_table(table)
    for enum_type in (event_type, deploy_outcome, severity, stage_status, stage_type, run_status, trigger_kind):
        enum_type.drop(op.get_bind(), checkfirst=True)
