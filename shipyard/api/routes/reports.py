"""Vulnerability report endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shipyard.models import Severity, VulnerabilityReport
from shipyard.models.database import get_db
from shipyard.schemas.api import FindingResponse, ReportResponse

router = APIRouter()


@router.get("/{digest}", response_model=ReportResponse)
async def get_report(
    digest: str,
    severity: list[Severity] | None = Query(None),
    db: AsyncSession = Depends(get_db),
) -> ReportResponse:
    """Findings of the image with the given manifest digest.

    ``?severity=CRITICAL&severity=HIGH`` restricts the findings list; the
    counts always cover the whole report.
    """
    result = await db.execute(
        select(VulnerabilityReport)
        .options(selectinload(VulnerabilityReport.findings))
        .where(VulnerabilityReport.digest == digest)
    )
    report = result.scalar_one_or_none()

    if not report:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No report for {digest}",
        )

    response = ReportResponse.model_validate(report)
    if severity:
        response.findings = [
            FindingResponse.model_validate(finding)
            for finding in report.findings
            if finding.severity in severity
        ]
    return response
