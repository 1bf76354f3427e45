"""Pipeline run endpoints."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shipyard.models import ContainerImage, PipelineRun, RunStatus, StageType, TriggerKind
from shipyard.models.config import get_settings
from shipyard.models.database import get_db
from shipyard.pipeline.gate import TriggerPolicy
from shipyard.pipeline.state import new_run, trigger_event
from shipyard.schemas.api import RunResponse, RunSummary, StageLogsResponse
from shipyard.workers.tasks import start_pipeline_run

logger = structlog.get_logger()
router = APIRouter()


async def _get_run_or_404(db: AsyncSession, run_id: str, *options) -> PipelineRun:
    result = await db.execute(select(PipelineRun).options(*options).where(PipelineRun.id == run_id))
    run = result.scalar_one_or_none()
    if not run:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} not found",
        )
    return run


@router.get("", response_model=list[RunSummary])
async def list_runs(
    branch: str | None = None,
    status_filter: RunStatus | None = Query(None, alias="status"),
    kind: TriggerKind | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> list[RunSummary]:
    """List runs, newest first."""
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.stages))
        .order_by(PipelineRun.created_at.desc())
        .offset(offset)
        .limit(limit)
    )

    if branch:
        query = query.where(PipelineRun.branch == branch)
    if status_filter:
        query = query.where(PipelineRun.status == status_filter)
    if kind:
        query = query.where(PipelineRun.trigger == kind)

    result = await db.execute(query)
    return [RunSummary.model_validate(run) for run in result.scalars().all()]


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: str,
    db: AsyncSession = Depends(get_db),
) -> RunResponse:
    """Get a run with its stages, build matrix, published images and deployments."""
    run = await _get_run_or_404(
        db,
        run_id,
        selectinload(PipelineRun.stages),
        selectinload(PipelineRun.build_jobs),
        selectinload(PipelineRun.images).selectinload(ContainerImage.tags),
        selectinload(PipelineRun.deployments),
    )
    return RunResponse.model_validate(run)


@router.get("/{run_id}/stages/{stage_type}/logs", response_model=StageLogsResponse)
async def get_stage_logs(
    run_id: str,
    stage_type: StageType,
    db: AsyncSession = Depends(get_db),
) -> StageLogsResponse:
    """Captured output of one stage (test suite output, build logs...)."""
    run = await _get_run_or_404(db, run_id, selectinload(PipelineRun.stages))
    stage = run.stage(stage_type)
    if stage is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Stage not found")
    return StageLogsResponse.model_validate(stage)


@router.post("/{run_id}/rerun", response_model=RunSummary, status_code=status.HTTP_202_ACCEPTED)
async def rerun(
    run_id: str,
    db: AsyncSession = Depends(get_db),
) -> RunSummary:
    """Re-trigger a run from scratch for the same commit.

    Creates a new run (linked through rerun_of_id) instead of resetting the
    old one, so the history of the first attempt stays intact.
    """
    original = await _get_run_or_404(db, run_id)

    run = new_run(
        trigger_event(original),
        repository=original.repository,
        policy=TriggerPolicy.from_settings(get_settings()),
        pull_request_number=original.pull_request_number,
        rerun_of_id=original.id,
    )
    db.add(run)
    await db.commit()
    await db.refresh(run, attribute_names=["created_at"])

    start_pipeline_run.delay(run.id)
    logger.info("run_rerun", run_id=run.id, rerun_of=original.id)

    return RunSummary.model_validate(run)
