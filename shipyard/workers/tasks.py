"""Celery tasks running the pipeline stages.

Task flow:

  webhook / rerun → start_pipeline_run → advance_pipeline
                                             │ (gate decides)
           ┌─────────────────┬───────────────┼──────────────────┐
           ▼                 ▼               ▼                  ▼
     run_test_stage   chord(build_platform × N)   run_security_scan   run_deploy_stage
           │                 └► complete_build_stage      │                  │
           └─────────────────────────┴────────────────────┴──────────────────┘
                                  → advance_pipeline

Every stage task records its outcome, then hands control back to
advance_pipeline. Ordering and fail-fast live in the gate only: a stage
task never starts another stage itself.
"""

import logging
from datetime import UTC, datetime
from typing import Any

import httpx
from celery import chord, group
from sqlalchemy import select
from sqlalchemy.orm import Session

from shipyard.exceptions import ShipyardError
from shipyard.models.config import get_settings
from shipyard.models.database import worker_session
from shipyard.models.entities import (
    BuildJob,
    ContainerImage,
    Deployment,
    DeployOutcome,
    Event,
    EventType,
    Finding,
    ImageTag,
    StageStatus,
    StageType,
    VulnerabilityReport,
)
from shipyard.pipeline.state import advance, load_run, set_stage_status
from shipyard.pipeline.tagging import ImageReference, derive_tags, traceability_tag
from shipyard.services.argocd import ArgocdService
from shipyard.services.builder import ImageBuilder
from shipyard.services.github import GithubService
from shipyard.services.scanner import ScanResult, VulnerabilityScanner
from shipyard.services.test_runner import SuiteRunner
from shipyard.services.workspace import checkout
from shipyard.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

# Stage logs are stored in full up to this size, then only their tail
MAX_LOG_CHARS = 200_000


def tail(text: str | None, limit: int = MAX_LOG_CHARS) -> str | None:
    if text is None or len(text) <= limit:
        return text
    return f"... ({len(text) - limit} characters omitted) ...\n" + text[-limit:]


def report_commit_status(run_id: str, commit_sha: str, stage: StageType, status: StageStatus, text: str) -> None:
    """Mirror a stage status on the commit in GitHub."""
    settings = get_settings()
    if not settings.report_commit_status:
        return
    GithubService(settings).set_commit_status(
        commit_sha,
        stage.value,
        status,
        text,
        target_url=f"{settings.public_url}/api/runs/{run_id}",
    )


def finish_stage(
    run_id: str,
    stage: StageType,
    status: StageStatus,
    *,
    logs: str | None = None,
    details: dict[str, Any] | None = None,
    error: str | None = None,
) -> None:
    """Record a stage outcome and report it on the commit."""
    with worker_session() as session:
        run = load_run(session, run_id, for_update=True)
        if run is None:
            logger.error("PipelineRun not found: %s", run_id)
            return
        set_stage_status(session, run, stage, status, logs=tail(logs), details=details, error=error)
        commit_sha = run.commit_sha

    report_commit_status(run_id, commit_sha, stage, status, error or f"{stage.value} {status.value}")


def _claim_stage(run_id: str, stage: StageType) -> dict[str, Any] | None:
    """Return the run context if ``stage`` is RUNNING, else None.

    Guards against redelivered messages (acks_late) re-executing a stage
    whose outcome is already recorded.
    """
    with worker_session() as session:
        run = load_run(session, run_id)
        if run is None:
            logger.error("PipelineRun not found: %s", run_id)
            return None
        result = run.stage(stage)
        if result is None or result.status != StageStatus.RUNNING:
            logger.warning("Ignoring %s for run %s: stage is not running", stage.value, run_id)
            return None
        image = session.execute(
            select(ContainerImage)
            .where(ContainerImage.run_id == run_id)
            .order_by(ContainerImage.created_at.desc())
        ).scalars().first()
        return {
            "repository": run.repository,
            "branch": run.branch,
            "commit_sha": run.commit_sha,
            "image_id": image.id if image else None,
            "image_repository": image.repository if image else None,
            "image_digest": image.digest if image else None,
            "image_tags": [t.name for t in image.tags] if image else [],
        }


def _retry_or_fail(task: Any, run_id: str, stage: StageType, exc: Exception) -> dict[str, str]:
    """Retry an unexpected error while retries remain, then fail the stage.

    Must be called from an ``except`` block of a bound stage task.
    """
    if task.request.retries < task.max_retries:
        raise task.retry(exc=exc) from exc
    logger.exception("%s crashed for run %s", stage.value, run_id)
    finish_stage(run_id, stage, StageStatus.FAILED, error=f"Unexpected error: {exc}")
    advance_pipeline.delay(run_id)
    return {"status": "failed", "run_id": run_id}


# ──────────────────────────────────────────────
# Orchestration
# ──────────────────────────────────────────────


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30)  # type: ignore[untyped-decorator]
def start_pipeline_run(self: Any, run_id: str) -> dict[str, str]:
    """Entry point, enqueued by the webhook handler and the rerun endpoint."""
    logger.info("Starting pipeline run: %s", run_id)
    try:
        advance_pipeline.delay(run_id)
        return {"status": "dispatched", "run_id": run_id}
    except Exception as exc:
        logger.error("Failed to start run %s: %s", run_id, exc)
        raise self.retry(exc=exc) from exc


@celery_app.task(bind=True, max_retries=5, default_retry_delay=15)  # type: ignore[untyped-decorator]
def advance_pipeline(self: Any, run_id: str) -> dict[str, Any]:
    """Ask the gate what comes next for a run, and dispatch it."""
    try:
        with worker_session() as session:
            run = load_run(session, run_id, for_update=True)
            if run is None:
                logger.error("PipelineRun not found: %s", run_id)
                return {"status": "error", "message": "run not found"}
            step = advance(session, run)
            commit_sha = run.commit_sha
    except ShipyardError:
        raise
    except Exception as exc:
        logger.error("Failed to advance run %s: %s", run_id, exc)
        raise self.retry(exc=exc) from exc

    for skipped in step.skip:
        report_commit_status(run_id, commit_sha, skipped, StageStatus.SKIPPED, f"{skipped.value} skipped")

    if step.start is not None:
        report_commit_status(run_id, commit_sha, step.start, StageStatus.RUNNING, f"{step.start.value} running")
        dispatch_stage(run_id, step.start)

    return {
        "run_id": run_id,
        "started": step.start.value if step.start else None,
        "skipped": [s.value for s in step.skip],
        "finished": step.run_status.value if step.run_status else None,
    }


def dispatch_stage(run_id: str, stage: StageType) -> None:
    if stage == StageType.TEST:
        run_test_stage.delay(run_id)
    elif stage == StageType.BUILD:
        dispatch_build(run_id)
    elif stage == StageType.SECURITY_SCAN:
        run_security_scan.delay(run_id)
    elif stage == StageType.DEPLOY:
        run_deploy_stage.delay(run_id)


def dispatch_build(run_id: str) -> None:
    """Fan the build out over the platform matrix, one native queue each.

    The chord body runs once every platform task has returned, whatever
    their outcome.
    """
    settings = get_settings()
    platforms = settings.build_platforms

    with worker_session() as session:
        existing = {
            job.platform
            for job in session.execute(select(BuildJob).where(BuildJob.run_id == run_id)).scalars()
        }
        for platform in platforms:
            if platform not in existing:
                session.add(
                    BuildJob(
                        run_id=run_id,
                        platform=platform,
                        queue=settings.build_queues.get(platform, "default"),
                        status=StageStatus.PENDING,
                    )
                )

    header = group(
        build_platform.s(run_id, platform).set(queue=settings.build_queues.get(platform, "default"))
        for platform in platforms
    )
    body = complete_build_stage.s(run_id).on_error(build_stage_failed.s(run_id))
    chord(header)(body)
    logger.info("Build dispatched for run %s on %s", run_id, ", ".join(platforms))


# ──────────────────────────────────────────────
# Test
# ──────────────────────────────────────────────


@celery_app.task(bind=True, max_retries=2, default_retry_delay=60)  # type: ignore[untyped-decorator]
def run_test_stage(self: Any, run_id: str) -> dict[str, str]:
    """Check out the commit and run the test suite against a fresh database."""
    settings = get_settings()
    context = _claim_stage(run_id, StageType.TEST)
    if context is None:
        return {"status": "ignored", "run_id": run_id}

    try:
        with checkout(context["repository"], context["commit_sha"], settings.github_token) as workspace:
            result = SuiteRunner(settings).run(workspace, label=run_id[:8])
    except ShipyardError as exc:
        logger.error("Test stage failed for run %s: %s", run_id, exc)
        finish_stage(run_id, StageType.TEST, StageStatus.FAILED, logs=getattr(exc, "logs", None), error=str(exc))
        advance_pipeline.delay(run_id)
        return {"status": "failed", "run_id": run_id}
    except Exception as exc:
        return _retry_or_fail(self, run_id, StageType.TEST, exc)

    finish_stage(
        run_id,
        StageType.TEST,
        StageStatus.SUCCEEDED,
        logs=result.logs,
        details={"exit_code": result.exit_code, "duration": round(result.duration_seconds, 1)},
    )
    advance_pipeline.delay(run_id)
    return {"status": "succeeded", "run_id": run_id}


# ──────────────────────────────────────────────
# Build
# ──────────────────────────────────────────────


def _update_build_job(run_id: str, platform: str, **values: Any) -> None:
    with worker_session() as session:
        job = session.execute(
            select(BuildJob).where(BuildJob.run_id == run_id, BuildJob.platform == platform)
        ).scalar_one_or_none()
        if job is None:
            logger.error("BuildJob not found: run=%s platform=%s", run_id, platform)
            return
        for name, value in values.items():
            setattr(job, name, value)


@celery_app.task(bind=True, max_retries=2, default_retry_delay=60)  # type: ignore[untyped-decorator]
def build_platform(self: Any, run_id: str, platform: str) -> dict[str, Any]:
    """Build and push the image for one platform (one matrix entry).

    Never raises once retries are exhausted: a failed platform is returned
    as data, so sibling platforms and the chord body still complete.
    """
    settings = get_settings()
    context = _claim_stage(run_id, StageType.BUILD)
    if context is None:
        return {"platform": platform, "status": StageStatus.SKIPPED.value, "digest": None}

    _update_build_job(run_id, platform, status=StageStatus.RUNNING, started_at=datetime.now(UTC))

    try:
        with checkout(context["repository"], context["commit_sha"], settings.github_token) as workspace:
            built = ImageBuilder(settings).build_platform(workspace, platform)
    except ShipyardError as exc:
        logger.error("Build failed for run %s on %s: %s", run_id, platform, exc)
        _update_build_job(
            run_id,
            platform,
            status=StageStatus.FAILED,
            error=str(exc),
            logs=tail(getattr(exc, "logs", None)),
            finished_at=datetime.now(UTC),
        )
        return {"platform": platform, "status": StageStatus.FAILED.value, "digest": None, "error": str(exc)}
    except Exception as exc:
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc) from exc
        logger.exception("Build crashed for run %s on %s", run_id, platform)
        _update_build_job(run_id, platform, status=StageStatus.FAILED, error=str(exc), finished_at=datetime.now(UTC))
        return {"platform": platform, "status": StageStatus.FAILED.value, "digest": None, "error": str(exc)}

    _update_build_job(
        run_id,
        platform,
        status=StageStatus.SUCCEEDED,
        digest=built.digest,
        logs=tail(built.logs),
        finished_at=datetime.now(UTC),
    )
    return {"platform": platform, "status": StageStatus.SUCCEEDED.value, "digest": built.digest}


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30)  # type: ignore[untyped-decorator]
def complete_build_stage(self: Any, results: list[dict[str, Any]], run_id: str) -> dict[str, Any]:
    """Chord body: publish the multi-arch manifest from the platform digests."""
    settings = get_settings()
    context = _claim_stage(run_id, StageType.BUILD)
    if context is None:
        return {"status": "ignored", "run_id": run_id}

    succeeded = [r for r in results if r["status"] == StageStatus.SUCCEEDED.value]
    failed = [r["platform"] for r in results if r["status"] != StageStatus.SUCCEEDED.value]

    if not succeeded or (failed and not settings.build_allow_partial):
        error = f"Build failed for {', '.join(failed)}"
        finish_stage(run_id, StageType.BUILD, StageStatus.FAILED, error=error, details={"failed_platforms": failed})
        advance_pipeline.delay(run_id)
        return {"status": "failed", "run_id": run_id}

    repository = settings.image_repository
    digests = [r["digest"] for r in succeeded]

    try:
        tags = derive_tags(
            context["branch"],
            context["commit_sha"],
            primary_branch=settings.primary_branch,
            sha_length=settings.sha_tag_length,
        )
        digest, output = ImageBuilder(settings).publish_manifest(tags, digests)
    except ShipyardError as exc:
        finish_stage(
            run_id,
            StageType.BUILD,
            StageStatus.FAILED,
            logs=getattr(exc, "logs", None),
            error=str(exc),
        )
        advance_pipeline.delay(run_id)
        return {"status": "failed", "run_id": run_id}
    except Exception as exc:
        return _retry_or_fail(self, run_id, StageType.BUILD, exc)

    platforms = [r["platform"] for r in succeeded]
    with worker_session() as session:
        image = ContainerImage(
            run_id=run_id,
            repository=repository,
            digest=digest,
            platforms=platforms,
            tags=[ImageTag(name=tag) for tag in tags],
        )
        session.add(image)
        session.add(
            Event(
                event_type=EventType.IMAGE_PUBLISHED,
                message=f"Published {repository}:{traceability_tag(tags)}",
                run_id=run_id,
                event_metadata={"digest": digest, "tags": tags, "platforms": platforms},
            )
        )

    finish_stage(
        run_id,
        StageType.BUILD,
        StageStatus.SUCCEEDED,
        logs=output,
        details={
            "image": f"{repository}@{digest}",
            "repository": repository,
            "digest": digest,
            "tags": tags,
            "platforms": platforms,
            "failed_platforms": failed,
        },
    )
    advance_pipeline.delay(run_id)
    return {"status": "succeeded", "run_id": run_id, "digest": digest}


@celery_app.task  # type: ignore[untyped-decorator]
def build_stage_failed(request: Any, exc: BaseException, traceback: Any, run_id: str) -> None:
    """Chord error callback: a platform task raised, so the body never ran.

    Fails the Build stage if it is still running, so the run does not stay
    stuck waiting for a manifest.
    """
    logger.error("Build chord failed for run %s: %s", run_id, exc)
    if _claim_stage(run_id, StageType.BUILD) is None:
        return
    finish_stage(run_id, StageType.BUILD, StageStatus.FAILED, error=f"Build task failed: {exc}")
    advance_pipeline.delay(run_id)


# ──────────────────────────────────────────────
# Security scan
# ──────────────────────────────────────────────


def store_report(session: Session, scan: ScanResult, digest: str) -> VulnerabilityReport:
    """Create or replace the report for ``digest``."""
    report = session.execute(
        select(VulnerabilityReport).where(VulnerabilityReport.digest == digest)
    ).scalar_one_or_none()
    if report is None:
        report = VulnerabilityReport(digest=digest)
        session.add(report)
    else:
        report.findings.clear()

    report.image_reference = scan.image_reference
    report.scanner = "trivy"
    report.scanner_version = scan.scanner_version
    report.critical_count = scan.counts.get("CRITICAL", 0)
    report.high_count = scan.counts.get("HIGH", 0)
    report.medium_count = scan.counts.get("MEDIUM", 0)
    report.low_count = scan.counts.get("LOW", 0)
    report.unknown_count = scan.counts.get("UNKNOWN", 0)
    report.sarif_uploaded = False
    report.findings.extend(
        Finding(
            vulnerability_id=f.vulnerability_id,
            severity=f.severity,
            package_name=f.package_name,
            installed_version=f.installed_version,
            fixed_version=f.fixed_version,
            title=f.title,
            target=f.target,
        )
        for f in scan.findings
    )
    session.flush()
    return report


@celery_app.task(bind=True, max_retries=2, default_retry_delay=60)  # type: ignore[untyped-decorator]
def run_security_scan(self: Any, run_id: str) -> dict[str, Any]:
    """Scan the image published by the Build stage and publish the findings."""
    settings = get_settings()
    context = _claim_stage(run_id, StageType.SECURITY_SCAN)
    if context is None:
        return {"status": "ignored", "run_id": run_id}

    digest = context["image_digest"]
    if digest is None:
        finish_stage(run_id, StageType.SECURITY_SCAN, StageStatus.FAILED, error="No image published for this run")
        advance_pipeline.delay(run_id)
        return {"status": "failed", "run_id": run_id}

    reference = str(ImageReference(context["image_repository"], digest=digest))
    github = GithubService(settings)
    upload = settings.upload_sarif and github.enabled

    try:
        scan = VulnerabilityScanner(settings).scan(reference, with_sarif=upload)
    except ShipyardError as exc:
        logger.error("Scan failed for run %s: %s", run_id, exc)
        finish_stage(run_id, StageType.SECURITY_SCAN, StageStatus.FAILED, error=str(exc))
        advance_pipeline.delay(run_id)
        return {"status": "failed", "run_id": run_id}
    except Exception as exc:
        return _retry_or_fail(self, run_id, StageType.SECURITY_SCAN, exc)

    with worker_session() as session:
        report = store_report(session, scan, digest)
        report_id = report.id

    sarif_uploaded = False
    if upload and scan.sarif:
        try:
            github.upload_sarif(scan.sarif, context["commit_sha"], f"refs/heads/{context['branch']}")
            sarif_uploaded = True
        except httpx.HTTPError as exc:
            finish_stage(
                run_id,
                StageType.SECURITY_SCAN,
                StageStatus.FAILED,
                details={"digest": digest, "counts": scan.counts},
                error=f"Could not publish the report: {exc}",
            )
            advance_pipeline.delay(run_id)
            return {"status": "failed", "run_id": run_id}

    with worker_session() as session:
        report = session.get(VulnerabilityReport, report_id)
        report.sarif_uploaded = sarif_uploaded
        session.add(
            Event(
                event_type=EventType.REPORT_PUBLISHED,
                message=f"{len(scan.findings)} findings for {reference}",
                run_id=run_id,
                event_metadata={"digest": digest, "counts": scan.counts},
            )
        )

    details = {
        "digest": digest,
        "counts": scan.counts,
        "total": len(scan.findings),
        "sarif_uploaded": sarif_uploaded,
    }
    blocking = scan.blocking(settings.scan_blocking_severities)
    if blocking:
        finish_stage(
            run_id,
            StageType.SECURITY_SCAN,
            StageStatus.FAILED,
            details=details,
            error=f"{len(blocking)} findings at blocking severity",
        )
        advance_pipeline.delay(run_id)
        return {"status": "failed", "run_id": run_id}

    finish_stage(run_id, StageType.SECURITY_SCAN, StageStatus.SUCCEEDED, details=details)
    advance_pipeline.delay(run_id)
    return {"status": "succeeded", "run_id": run_id}


# ──────────────────────────────────────────────
# Deploy
# ──────────────────────────────────────────────


def _fail_deploy(run_id: str, details: dict[str, Any], error: str) -> dict[str, str]:
    """Record the failed attempt as a FAILED Deployment, then fail the stage."""
    settings = get_settings()
    with worker_session() as session:
        session.add(
            Deployment(
                run_id=run_id,
                environment=settings.deploy_environment,
                image_reference=details["image"],
                image_digest=details["digest"],
                outcome=DeployOutcome.FAILED,
                argocd_app_name=settings.argocd_app_name,
                message=error,
            )
        )
    finish_stage(
        run_id,
        StageType.DEPLOY,
        StageStatus.FAILED,
        details={**details, "outcome": DeployOutcome.FAILED.value},
        error=error,
    )
    advance_pipeline.delay(run_id)
    return {"status": "failed", "run_id": run_id}


@celery_app.task(bind=True, max_retries=2, default_retry_delay=60)  # type: ignore[untyped-decorator]
def run_deploy_stage(self: Any, run_id: str) -> dict[str, Any]:
    """Point the target environment at the scanned image.

    UNCHANGED (already deployed) succeeds without writing a Deployment row;
    NOT_ATTEMPTED (no target configured) skips the stage; a failed deploy
    fails it.
    """
    settings = get_settings()
    context = _claim_stage(run_id, StageType.DEPLOY)
    if context is None:
        return {"status": "ignored", "run_id": run_id}

    repository = context["image_repository"]
    digest = context["image_digest"]
    if digest is None or not context["image_tags"]:
        finish_stage(run_id, StageType.DEPLOY, StageStatus.FAILED, error="No image published for this run")
        advance_pipeline.delay(run_id)
        return {"status": "failed", "run_id": run_id}

    tag = traceability_tag(context["image_tags"])
    reference = str(ImageReference(repository, tag=tag))
    details = {"environment": settings.deploy_environment, "image": reference, "digest": digest}

    try:
        result = ArgocdService(settings).deploy(repository, tag)
    except ShipyardError as exc:
        logger.error("Deploy failed for run %s: %s", run_id, exc)
        return _fail_deploy(run_id, details, str(exc))
    except Exception as exc:
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc) from exc
        logger.exception("Deploy crashed for run %s", run_id)
        return _fail_deploy(run_id, details, f"Unexpected error: {exc}")

    details["outcome"] = result.outcome.value
    details["message"] = result.message

    if result.outcome == DeployOutcome.NOT_ATTEMPTED:
        finish_stage(run_id, StageType.DEPLOY, StageStatus.SKIPPED, details=details)
        advance_pipeline.delay(run_id)
        return {"status": "skipped", "run_id": run_id}

    if result.outcome == DeployOutcome.DEPLOYED:
        with worker_session() as session:
            session.add(
                Deployment(
                    run_id=run_id,
                    environment=settings.deploy_environment,
                    image_reference=reference,
                    image_digest=digest,
                    outcome=DeployOutcome.DEPLOYED,
                    argocd_app_name=settings.argocd_app_name,
                    message=result.message,
                )
            )
            session.add(
                Event(
                    event_type=EventType.DEPLOY_COMPLETED,
                    message=f"Deployed {reference} to {settings.deploy_environment}",
                    run_id=run_id,
                )
            )

    finish_stage(run_id, StageType.DEPLOY, StageStatus.SUCCEEDED, details=details)
    advance_pipeline.delay(run_id)
    return {"status": "succeeded", "run_id": run_id, "outcome": result.outcome.value}
