"""GitHub REST client.

Two uses:
- commit statuses, one context per stage (shipyard/test, shipyard/build...),
  so stage results show up on the commit and the pull request;
- SARIF upload to code scanning, the security reporting surface.
"""

import base64
import gzip
import logging
from typing import Any

import httpx

from shipyard.models.config import Settings
from shipyard.models.entities import StageStatus

logger = logging.getLogger(__name__)

# GitHub commit status states: error, failure, pending, success
_STATUS_STATES = {
    StageStatus.PENDING: "pending",
    StageStatus.RUNNING: "pending",
    StageStatus.SUCCEEDED: "success",
    StageStatus.FAILED: "failure",
    StageStatus.SKIPPED: "success",
}


class GithubService:
    """Client for the GitHub REST API, authenticated with the ambient token."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self.settings = settings
        self.repository = settings.github_repository
        self.client = client or httpx.Client(base_url=settings.github_api_url, timeout=30)
        self.headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {settings.github_token}",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    @property
    def enabled(self) -> bool:
        return bool(self.settings.github_token and self.repository)

    def set_commit_status(
        self,
        commit_sha: str,
        stage: str,
        status: StageStatus,
        description: str,
        target_url: str | None = None,
    ) -> None:
        """Publish a stage status on a commit. Failures are logged, not raised."""
        if not self.enabled:
            return

        payload = {
            "state": _STATUS_STATES[status],
            "context": f"shipyard/{stage}",
            # GitHub rejects descriptions over 140 characters
            "description": description[:140],
        }
        if target_url:
            payload["target_url"] = target_url

        try:
            response = self.client.post(
                f"/repos/{self.repository}/statuses/{commit_sha}",
                json=payload,
                headers=self.headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            # Status reporting must not change the stage outcome
            logger.warning("Could not set commit status %s on %s: %s", stage, commit_sha[:7], exc)

    def upload_sarif(self, sarif: bytes, commit_sha: str, ref: str) -> dict[str, Any]:
        """Upload a SARIF report to code scanning.

        The API expects the SARIF gzip-compressed then base64-encoded.
        ``ref`` is a full Git ref, e.g. refs/heads/main.
        """
        payload = {
            "commit_sha": commit_sha,
            "ref": ref,
            "sarif": base64.b64encode(gzip.compress(sarif)).decode("ascii"),
            "tool_name": "trivy",
        }
        try:
            response = self.client.post(
                f"/repos/{self.repository}/code-scanning/sarifs",
                json=payload,
                headers=self.headers,
            )
            response.raise_for_status()
            logger.info("SARIF uploaded for %s @ %s", ref, commit_sha[:7])
            return response.json()

        except httpx.HTTPError as exc:
            logger.error("GitHub API error during SARIF upload: %s", exc)
            raise
