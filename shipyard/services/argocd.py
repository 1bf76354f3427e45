"""ArgoCD service for deploying the application image.

The target environment is one ArgoCD Application pointing at the Helm
chart of the application. Deploying means setting the chart's image.tag
parameter to the new tag and asking ArgoCD to sync; ArgoCD then rolls the
workload out and reconciles it.

Deploys are idempotent: when the Application already references the tag
and is synced, nothing is written.
"""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from shipyard.exceptions import DeployError
from shipyard.models.config import Settings
from shipyard.models.entities import DeployOutcome

logger = logging.getLogger(__name__)


@dataclass
class DeployResult:
    outcome: DeployOutcome
    message: str


def current_image_tag(application: dict[str, Any]) -> str | None:
    """The image.tag Helm parameter of an Application, if set."""
    parameters = application.get("spec", {}).get("source", {}).get("helm", {}).get("parameters", [])
    for parameter in parameters:
        if parameter.get("name") == "image.tag":
            return parameter.get("value")
    return None


class ArgocdService:
    """Client for the ArgoCD REST API."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self.settings = settings
        self.server = settings.argocd_server
        self.token = settings.argocd_token
        self.headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }
        # ArgoCD uses self-signed certs in local dev
        self.client = client or httpx.Client(base_url=self.server, verify=not settings.debug, timeout=30)

    @property
    def configured(self) -> bool:
        return bool(self.server)

    def build_application(self, app_name: str, image_repository: str, image_tag: str) -> dict[str, Any]:
        """Application manifest for the target environment.

        The Application spec tells ArgoCD:
        - Where to find the Helm chart (repo + path)
        - Which image to run (image.repository, image.tag)
        - Where to deploy (target namespace)
        - How to sync (automated, with pruning and self-healing)
        """
        return {
            "metadata": {
                "name": app_name,
                "namespace": "argocd",
                "labels": {
                    "app.kubernetes.io/managed-by": "shipyard",
                    "shipyard/environment": self.settings.deploy_environment,
                },
            },
            "spec": {
                "project": "default",
                "source": {
                    "repoURL": f"https://github.com/{self.settings.github_repository}.git",
                    "targetRevision": "HEAD",
                    "path": self.settings.helm_chart_path,
                    "helm": {
                        "parameters": [
                            {"name": "image.repository", "value": image_repository},
                            {"name": "image.tag", "value": image_tag},
                        ],
                    },
                },
                "destination": {
                    "server": "https://kubernetes.default.svc",
                    "namespace": self.settings.deploy_namespace,
                },
                "syncPolicy": {
                    "automated": {
                        "prune": True,
                        "selfHeal": True,
                    },
                    "syncOptions": ["CreateNamespace=true"],
                },
            },
        }

    def get_application(self, app_name: str) -> dict[str, Any] | None:
        """Return the Application, or None if it does not exist."""
        try:
            response = self.client.get(f"/api/v1/applications/{app_name}", headers=self.headers)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()

        except httpx.HTTPError as exc:
            logger.error("ArgoCD API error: %s", exc)
            raise

    def create_or_update_application(self, application: dict[str, Any]) -> dict[str, Any]:
        """Update the Application, create it if it does not exist."""
        app_name = application["metadata"]["name"]
        try:
            response = self.client.put(
                f"/api/v1/applications/{app_name}",
                json=application,
                headers=self.headers,
            )

            if response.status_code == 404:
                response = self.client.post("/api/v1/applications", json=application, headers=self.headers)

            response.raise_for_status()
            logger.info("ArgoCD application created/updated: %s", app_name)
            return response.json()

        except httpx.HTTPError as exc:
            logger.error("ArgoCD API error: %s", exc)
            raise

    def sync_application(self, app_name: str) -> None:
        try:
            response = self.client.post(
                f"/api/v1/applications/{app_name}/sync",
                json={"prune": True},
                headers=self.headers,
            )
            response.raise_for_status()
            logger.info("ArgoCD sync requested: %s", app_name)

        except httpx.HTTPError as exc:
            logger.error("ArgoCD API error during sync: %s", exc)
            raise

    def deploy(self, image_repository: str, image_tag: str) -> DeployResult:
        """Point the environment at ``image_repository:image_tag``.

        Returns UNCHANGED without writing anything when the Application
        already runs that tag and is synced. Raises DeployError on API
        failures, so a failed deploy is never reported as success.
        """
        app_name = self.settings.argocd_app_name

        if not self.configured:
            return DeployResult(DeployOutcome.NOT_ATTEMPTED, "No ArgoCD server configured")

        try:
            existing = self.get_application(app_name)
            if existing is not None:
                synced = existing.get("status", {}).get("sync", {}).get("status") == "Synced"
                if current_image_tag(existing) == image_tag and synced:
                    logger.info("ArgoCD app %s already at %s, nothing to do", app_name, image_tag)
                    return DeployResult(DeployOutcome.UNCHANGED, f"{app_name} already runs {image_tag}")

            self.create_or_update_application(self.build_application(app_name, image_repository, image_tag))
            self.sync_application(app_name)

        except httpx.HTTPError as exc:
            raise DeployError(f"ArgoCD deploy of {image_tag} to {app_name} failed: {exc}") from exc
        except ValueError as exc:
            # Body was not JSON (proxy error page, wrong server URL)
            raise DeployError(f"ArgoCD returned an unreadable response for {app_name}: {exc}") from exc

        return DeployResult(DeployOutcome.DEPLOYED, f"{app_name} now runs {image_tag}")
