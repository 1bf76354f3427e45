"""Dashboard aggregate stats endpoint.

Returns high-level metrics for the dashboard header:
active runs, success rate, average run time, last deployed tag, etc.
"""

from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.models import (
    Deployment,
    DeployOutcome,
    PipelineRun,
    RunStatus,
    VulnerabilityReport,
)
from shipyard.models.database import get_db
from shipyard.pipeline.tagging import ImageReference
from shipyard.schemas.api import PlatformStats

router = APIRouter()


@router.get("/stats", response_model=PlatformStats)
async def get_platform_stats(
    db: AsyncSession = Depends(get_db),
) -> PlatformStats:
    """Aggregate platform statistics for the dashboard header."""

    active_runs = (
        await db.scalar(
            select(func.count(PipelineRun.id)).where(
                PipelineRun.status.in_([RunStatus.PENDING, RunStatus.RUNNING])
            )
        )
        or 0
    )

    total_runs = await db.scalar(select(func.count(PipelineRun.id))) or 0

    # Runs created today
    today_start = datetime.now(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    runs_today = (
        await db.scalar(select(func.count(PipelineRun.id)).where(PipelineRun.created_at >= today_start)) or 0
    )

    # Success rate over the last 30 days (cancelled runs excluded)
    thirty_days_ago = datetime.now(UTC) - timedelta(days=30)
    total_finished = (
        await db.scalar(
            select(func.count(PipelineRun.id)).where(
                PipelineRun.created_at >= thirty_days_ago,
                PipelineRun.status.in_([RunStatus.SUCCEEDED, RunStatus.FAILED]),
            )
        )
        or 0
    )
    total_success = (
        await db.scalar(
            select(func.count(PipelineRun.id)).where(
                PipelineRun.created_at >= thirty_days_ago,
                PipelineRun.status == RunStatus.SUCCEEDED,
            )
        )
        or 0
    )
    success_rate = (total_success / total_finished * 100) if total_finished > 0 else 0.0

    # Average run time (successful runs only)
    avg_duration = await db.scalar(
        select(func.avg(PipelineRun.duration_seconds)).where(
            PipelineRun.status == RunStatus.SUCCEEDED,
            PipelineRun.duration_seconds.isnot(None),
        )
    )

    deployments_total = (
        await db.scalar(
            select(func.count(Deployment.id)).where(Deployment.outcome == DeployOutcome.DEPLOYED)
        )
        or 0
    )
    last_deployed = await db.scalar(
        select(Deployment.image_reference)
        .where(Deployment.outcome == DeployOutcome.DEPLOYED)
        .order_by(Deployment.created_at.desc())
        .limit(1)
    )

    critical = await db.scalar(select(func.sum(VulnerabilityReport.critical_count))) or 0

    return PlatformStats(
        active_runs=active_runs,
        total_runs=total_runs,
        runs_today=runs_today,
        success_rate_percent=round(success_rate, 1),
        avg_run_time_seconds=round(float(avg_duration), 1) if avg_duration else None,
        deployments_total=deployments_total,
        last_deployed_tag=ImageReference.parse(last_deployed).tag if last_deployed else None,
        critical_vulnerabilities=critical,
    )
