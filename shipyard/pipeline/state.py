"""Persistence of run and stage state transitions.

Used by the Celery workers (sync sessions). Every status write goes
through ``set_stage_status`` so that the gate's ordering rules are checked
in one place and every transition leaves an Event for the dashboard.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from shipyard.models.entities import (
    Event,
    EventType,
    PipelineRun,
    RunStatus,
    StageResult,
    StageStatus,
    StageType,
    TriggerKind,
)
from shipyard.pipeline.gate import (
    STAGE_ORDER,
    NextStep,
    TriggerEvent,
    TriggerPolicy,
    check_transition,
    next_step,
    plan_stages,
)

logger = logging.getLogger(__name__)

_STAGE_EVENTS = {
    StageStatus.RUNNING: EventType.STAGE_STARTED,
    StageStatus.SUCCEEDED: EventType.STAGE_SUCCEEDED,
    StageStatus.FAILED: EventType.STAGE_FAILED,
    StageStatus.SKIPPED: EventType.STAGE_SKIPPED,
}

_RUN_EVENTS = {
    RunStatus.SUCCEEDED: EventType.RUN_SUCCEEDED,
    RunStatus.FAILED: EventType.RUN_FAILED,
    RunStatus.CANCELLED: EventType.RUN_CANCELLED,
}

ACTIVE_RUN_STATUSES = (RunStatus.PENDING, RunStatus.RUNNING)


def new_run(
    event: TriggerEvent,
    *,
    repository: str,
    policy: TriggerPolicy,
    pull_request_number: int | None = None,
    rerun_of_id: str | None = None,
) -> PipelineRun:
    """Build a PipelineRun with one StageResult per stage, planned by the gate.

    Not attached to a session: works with both the async API sessions and
    the sync worker sessions.
    """
    planned = plan_stages(event, policy)
    run = PipelineRun(
        repository=repository,
        trigger=event.kind,
        branch=event.branch,
        commit_sha=event.commit_sha,
        pull_request_number=pull_request_number,
        status=RunStatus.PENDING,
        rerun_of_id=rerun_of_id,
    )
    run.stages = [
        StageResult(
            stage_type=stage,
            status=planned[stage],
            order=position,
            details={"reason": "not eligible for this event"}
            if planned[stage] == StageStatus.SKIPPED
            else None,
        )
        for position, stage in enumerate(STAGE_ORDER, start=1)
    ]
    run.events = [
        Event(
            event_type=EventType.RUN_QUEUED,
            message=f"Run queued for {event.kind.value} on {event.branch} @ {event.commit_sha[:7]}",
        )
    ]
    return run


def trigger_event(run: PipelineRun) -> TriggerEvent:
    return TriggerEvent(kind=TriggerKind(run.trigger), branch=run.branch, commit_sha=run.commit_sha)


def load_run(session: Session, run_id: str, *, for_update: bool = False) -> PipelineRun | None:
    """Fetch a run with its stages.

    for_update locks the run row: concurrent advance_pipeline calls for the
    same run are serialized on it.
    """
    query = select(PipelineRun).options(selectinload(PipelineRun.stages)).where(PipelineRun.id == run_id)
    if for_update:
        query = query.with_for_update(of=PipelineRun)
    return session.execute(query).scalar_one_or_none()


def stage_statuses(run: PipelineRun) -> dict[StageType, StageStatus]:
    return {stage.stage_type: stage.status for stage in run.stages}


def _record_event(
    session: Session,
    run: PipelineRun,
    event_type: EventType,
    message: str,
    metadata: dict[str, Any] | None = None,
) -> None:
    session.add(Event(event_type=event_type, message=message, run_id=run.id, event_metadata=metadata))


def set_stage_status(
    session: Session,
    run: PipelineRun,
    stage_type: StageType,
    status: StageStatus,
    *,
    logs: str | None = None,
    details: dict[str, Any] | None = None,
    error: str | None = None,
) -> StageResult:
    """Move one stage to a new status, enforcing the gate's ordering rules."""
    stage = run.stage(stage_type)
    if stage is None:
        raise LookupError(f"Run {run.id} has no {stage_type.value} stage")

    check_transition(stage_type, status, stage_statuses(run))

    now = datetime.now(UTC)
    stage.status = status
    if status == StageStatus.RUNNING:
        stage.started_at = now
    elif status in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED):
        stage.finished_at = now
        if stage.started_at:
            stage.duration_seconds = int((now - stage.started_at).total_seconds())

    if logs is not None:
        stage.logs = logs
    if details is not None:
        stage.details = {**(stage.details or {}), **details}
    if error is not None:
        stage.error = error

    message = f"{stage_type.value} {status.value}"
    if error:
        message += f": {error}"
    _record_event(session, run, _STAGE_EVENTS[status], message, {"stage": stage_type.value})

    logger.info("Run %s stage %s → %s", run.id, stage_type.value, status.value)
    return stage


def advance(session: Session, run: PipelineRun) -> NextStep:
    """Apply the gate's next step to the run.

    Skips what can no longer run, marks the next stage RUNNING and closes
    the run once every stage is terminal. The caller dispatches the work
    for ``step.start``.
    """
    cancelled = run.status == RunStatus.CANCELLED
    step = next_step(stage_statuses(run), cancelled=cancelled)

    reason = "run cancelled" if cancelled else "upstream stage did not succeed"
    for stage_type in step.skip:
        set_stage_status(session, run, stage_type, StageStatus.SKIPPED, details={"reason": reason})

    now = datetime.now(UTC)

    if step.start is not None:
        if run.status == RunStatus.PENDING:
            run.status = RunStatus.RUNNING
            run.started_at = now
            _record_event(session, run, EventType.RUN_STARTED, f"Run started on {run.branch}")
        set_stage_status(session, run, step.start, StageStatus.RUNNING)

    if step.finished:
        if run.finished_at is None:
            run.status = step.run_status
            run.finished_at = now
            if run.started_at:
                run.duration_seconds = int((now - run.started_at).total_seconds())
            _record_event(
                session,
                run,
                _RUN_EVENTS[step.run_status],
                f"Run {step.run_status.value} on {run.branch} @ {run.commit_sha[:7]}",
            )
            logger.info("Run %s finished: %s", run.id, step.run_status.value)

    return step
