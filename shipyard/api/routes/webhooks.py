"""GitHub webhook receiver.

GitHub sends a POST request with a JSON payload and a HMAC-SHA256
signature. We verify the signature using our webhook secret to ensure the
request genuinely comes from GitHub and hasn't been tampered with.

Supported events:
- push to a branch              → run (test, + build/scan on build branches, + deploy on main)
- pull_request.opened           → run (test only)
- pull_request.synchronize      → run (test only)
- pull_request.reopened         → run (test only)

Tag pushes, branch deletions and other events are acknowledged and ignored.
"""

import hashlib
import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shipyard.models.config import get_settings
from shipyard.models.database import get_db
from shipyard.models.entities import Event, EventType, PipelineRun, RunStatus, TriggerKind
from shipyard.pipeline.gate import TriggerEvent, TriggerPolicy
from shipyard.pipeline.state import ACTIVE_RUN_STATUSES, new_run
from shipyard.workers.tasks import start_pipeline_run

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

PULL_REQUEST_ACTIONS = {"opened", "synchronize", "reopened"}
BRANCH_PREFIX = "refs/heads/"
# "after" SHA of a branch deletion
NULL_SHA = "0" * 40


def verify_github_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Verify the HMAC-SHA256 signature from GitHub.

    Uses hmac.compare_digest for constant-time comparison.
    """
    if not secret:
        logger.warning("Webhook secret not configured, skipping signature verification")
        return True

    expected = "sha256=" + hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(expected, signature)


def parse_trigger(event_name: str, payload: dict[str, Any]) -> tuple[TriggerEvent, int | None] | str:
    """Turn a webhook payload into a TriggerEvent.

    Returns the reason as a string when the event does not start a run.
    Raises KeyError, TypeError or AttributeError when a field the event
    needs is missing or has the wrong shape.
    """
    if event_name == "push":
        ref = payload.get("ref", "")
        if not ref.startswith(BRANCH_PREFIX):
            return f"not a branch push: {ref}"
        if payload.get("deleted") or payload.get("after") == NULL_SHA:
            return "branch deleted"
        after = payload["after"]
        if not isinstance(after, str) or not after:
            raise TypeError("push without an after sha")
        return TriggerEvent(TriggerKind.PUSH, ref[len(BRANCH_PREFIX):], after), None

    if event_name == "pull_request":
        action = payload.get("action", "")
        pr_data = payload.get("pull_request") or {}
        if not pr_data:
            return "no pull_request data"
        if action not in PULL_REQUEST_ACTIONS:
            return f"action {action} does not trigger a run"
        head = pr_data["head"]
        return TriggerEvent(TriggerKind.PULL_REQUEST, head["ref"], head["sha"]), pr_data["number"]

    return f"event {event_name} not handled"


async def cancel_superseded_runs(db: AsyncSession, run: PipelineRun) -> list[str]:
    """Cancel pending/running runs of the same repository, trigger and branch.

    Cancellation is cooperative: workers finish their current stage, then
    the gate skips everything left.
    """
    result = await db.execute(
        update(PipelineRun)
        .where(
            PipelineRun.repository == run.repository,
            PipelineRun.trigger == run.trigger,
            PipelineRun.branch == run.branch,
            PipelineRun.status.in_(ACTIVE_RUN_STATUSES),
        )
        .values(status=RunStatus.CANCELLED)
        .returning(PipelineRun.id)
    )
    cancelled = list(result.scalars())
    for run_id in cancelled:
        db.add(
            Event(
                event_type=EventType.RUN_CANCELLED,
                message=f"Superseded by a newer {run.trigger.value} on {run.branch}",
                run_id=run_id,
            )
        )
    return cancelled


@router.post("/webhooks/github")
async def github_webhook(
    request: Request,
    x_hub_signature_256: str = Header(""),
    x_github_event: str = Header(""),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Receive a GitHub event, record a PipelineRun and enqueue it.

    Returns immediately (GitHub expects a response within 10 seconds);
    the workers do the heavy lifting.
    """
    settings = get_settings()
    body = await request.body()

    if not verify_github_signature(body, x_hub_signature_256, settings.github_webhook_secret):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = json.loads(body)
        if not isinstance(payload, dict):
            raise TypeError("payload is not a JSON object")
        parsed = parse_trigger(x_github_event, payload)
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        logger.warning("Malformed %s payload: %r", x_github_event, exc)
        raise HTTPException(status_code=400, detail="Malformed payload") from exc

    if isinstance(parsed, str):
        return {"status": "ignored", "event": x_github_event, "reason": parsed}

    event, pr_number = parsed
    repository = payload.get("repository", {}).get("full_name") or settings.github_repository

    logger.info(
        "Received %s event: repo=%s branch=%s sha=%s",
        event.kind.value,
        repository,
        event.branch,
        event.commit_sha[:7],
    )

    # GitHub redelivers webhooks: one run per (trigger, branch, commit)
    duplicate = (
        await db.execute(
            select(PipelineRun.id).where(
                PipelineRun.repository == repository,
                PipelineRun.trigger == event.kind,
                PipelineRun.branch == event.branch,
                PipelineRun.commit_sha == event.commit_sha,
                PipelineRun.rerun_of_id.is_(None),
            )
        )
    ).scalars().first()
    if duplicate:
        return {"status": "duplicate", "run_id": duplicate}

    run = new_run(
        event,
        repository=repository,
        policy=TriggerPolicy.from_settings(settings),
        pull_request_number=pr_number,
    )

    cancelled: list[str] = []
    if settings.cancel_in_progress:
        cancelled = await cancel_superseded_runs(db, run)

    db.add(run)
    # Committed before enqueueing so the worker sees the run
    await db.commit()

    start_pipeline_run.delay(run.id)

    return {
        "status": "accepted",
        "run_id": run.id,
        "trigger": event.kind.value,
        "branch": event.branch,
        "stages": {stage.stage_type.value: stage.status.value for stage in run.stages},
        "cancelled": cancelled,
    }
