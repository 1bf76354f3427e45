"""Tests for the external service clients and the command layer.

HTTP clients are exercised against httpx.MockTransport; the builder and
the checkout run with a fake command runner, so no Docker daemon or
registry is needed.
"""

import base64
import gzip
import json
from pathlib import Path

import httpx
import pytest
from docker.errors import DockerException

from shipyard.exceptions import BuildError, CommandError, DeployError, TestSuiteError, WorkspaceError
from shipyard.models.entities import DeployOutcome, StageStatus
from shipyard.services import builder as builder_module
from shipyard.services import test_runner as test_runner_module
from shipyard.services import workspace as workspace_module
from shipyard.services.argocd import ArgocdService, current_image_tag
from shipyard.services.builder import ImageBuilder
from shipyard.services.commands import CommandResult, run_command
from shipyard.services.github import GithubService
from shipyard.services.test_runner import SuiteRunner
from shipyard.services.workspace import checkout

SHA = "1a2b3c4d5e6f708192a3b4c5d6e7f8091a2b3c4d"
ARGOCD_URL = "https://argocd.test"


# ──────────────────────────────────────────────
# ArgoCD
# ──────────────────────────────────────────────


class FakeArgocd:
    """In-memory ArgoCD API: one Application store, records every request."""

    def __init__(self, fail_sync: bool = False) -> None:
        self.applications: dict[str, dict] = {}
        self.requests: list[tuple[str, str]] = []
        self.fail_sync = fail_sync

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        parts = request.url.path.split("/")  # ['', 'api', 'v1', 'applications', name?, 'sync'?]
        name = parts[4] if len(parts) > 4 else None

        if request.method == "GET":
            if name not in self.applications:
                return httpx.Response(404, json={"message": "not found"})
            return httpx.Response(200, json=self.applications[name])

        if request.method == "PUT":
            if name not in self.applications:
                return httpx.Response(404, json={"message": "not found"})
            return self._store(json.loads(request.content))

        if request.method == "POST" and path_is_sync(parts):
            if self.fail_sync:
                return httpx.Response(500, json={"message": "boom"})
            self.applications[name]["status"] = {"sync": {"status": "Synced"}, "health": {"status": "Healthy"}}
            return httpx.Response(200, json=self.applications[name])

        if request.method == "POST":
            return self._store(json.loads(request.content))

        return httpx.Response(405)

    def _store(self, application: dict) -> httpx.Response:
        name = application["metadata"]["name"]
        application["status"] = {"sync": {"status": "OutOfSync"}}
        self.applications[name] = application
        return httpx.Response(200, json=application)

    @property
    def writes(self) -> list[tuple[str, str]]:
        return [r for r in self.requests if r[0] != "GET"]


def path_is_sync(parts: list[str]) -> bool:
    return parts[-1] == "sync"


def argocd_service(settings_factory, fake: FakeArgocd, **overrides) -> ArgocdService:
    settings = settings_factory(argocd_server=ARGOCD_URL, **overrides)
    client = httpx.Client(base_url=ARGOCD_URL, transport=httpx.MockTransport(fake))
    return ArgocdService(settings, client=client)


class TestArgocdService:
    @pytest.fixture(autouse=True)
    def _settings_factory(self, settings_factory) -> None:
        self.make_settings = settings_factory

    def test_first_deploy_creates_and_syncs(self) -> None:
        fake = FakeArgocd()

        result = argocd_service(self.make_settings, fake).deploy("ghcr.io/acme/app", "main-1a2b3c4")

        assert result.outcome == DeployOutcome.DEPLOYED
        assert fake.writes == [
            ("PUT", "/api/v1/applications/shipyard-production"),
            ("POST", "/api/v1/applications"),
            ("POST", "/api/v1/applications/shipyard-production/sync"),
        ]
        assert current_image_tag(fake.applications["shipyard-production"]) == "main-1a2b3c4"

    def test_redeploy_same_tag_changes_nothing(self) -> None:
        """Deploying a tag that is already live writes nothing."""
        fake = FakeArgocd()
        service = argocd_service(self.make_settings, fake)
        service.deploy("ghcr.io/acme/app", "main-1a2b3c4")
        writes_before = list(fake.writes)

        result = service.deploy("ghcr.io/acme/app", "main-1a2b3c4")

        assert result.outcome == DeployOutcome.UNCHANGED
        assert fake.writes == writes_before

    def test_new_tag_updates_application(self) -> None:
        fake = FakeArgocd()
        service = argocd_service(self.make_settings, fake)
        service.deploy("ghcr.io/acme/app", "main-1a2b3c4")

        result = service.deploy("ghcr.io/acme/app", "main-9f8e7d6")

        assert result.outcome == DeployOutcome.DEPLOYED
        assert fake.writes[-2:] == [
            ("PUT", "/api/v1/applications/shipyard-production"),
            ("POST", "/api/v1/applications/shipyard-production/sync"),
        ]
        assert current_image_tag(fake.applications["shipyard-production"]) == "main-9f8e7d6"

    def test_not_configured(self) -> None:
        service = ArgocdService(self.make_settings(argocd_server=""))

        result = service.deploy("ghcr.io/acme/app", "main-1a2b3c4")

        assert result.outcome == DeployOutcome.NOT_ATTEMPTED

    def test_api_failure_raises_deploy_error(self) -> None:
        with pytest.raises(DeployError, match="main-1a2b3c4"):
            service = argocd_service(self.make_settings, FakeArgocd(fail_sync=True))
            service.deploy("ghcr.io/acme/app", "main-1a2b3c4")

    def test_unreadable_response_raises_deploy_error(self) -> None:
        """A 200 with a non-JSON body (proxy page) is a failed deploy."""
        settings = self.make_settings(argocd_server=ARGOCD_URL)
        client = httpx.Client(
            base_url=ARGOCD_URL,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>login</html>")),
        )

        with pytest.raises(DeployError, match="unreadable response"):
            ArgocdService(settings, client=client).deploy("ghcr.io/acme/app", "main-1a2b3c4")

    def test_application_manifest(self) -> None:
        service = argocd_service(
            self.make_settings, FakeArgocd(), deploy_namespace="prod", helm_chart_path="deploy/chart"
        )

        app = service.build_application("web", "ghcr.io/acme/app", "main-1a2b3c4")

        assert app["spec"]["destination"]["namespace"] == "prod"
        assert app["spec"]["source"]["path"] == "deploy/chart"
        assert app["spec"]["source"]["repoURL"] == "https://github.com/acme/app.git"
        assert {"name": "image.repository", "value": "ghcr.io/acme/app"} in app["spec"]["source"]["helm"][
            "parameters"
        ]


# ──────────────────────────────────────────────
# GitHub
# ──────────────────────────────────────────────


def github_service(settings_factory, handler, **overrides) -> GithubService:
    settings = settings_factory(github_token="ghp_test", **overrides)
    client = httpx.Client(base_url=settings.github_api_url, transport=httpx.MockTransport(handler))
    return GithubService(settings, client=client)


class TestGithubService:
    @pytest.fixture(autouse=True)
    def _settings_factory(self, settings_factory) -> None:
        self.make_settings = settings_factory

    def test_commit_status(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={})

        service = github_service(self.make_settings, handler)
        service.set_commit_status(SHA, "build", StageStatus.FAILED, "x" * 300, "http://ci/runs/1")

        (request,) = seen
        assert request.url.path == f"/repos/acme/app/statuses/{SHA}"
        assert request.headers["Authorization"] == "Bearer ghp_test"
        body = json.loads(request.content)
        assert body["state"] == "failure"
        assert body["context"] == "shipyard/build"
        assert len(body["description"]) == 140

    def test_commit_status_errors_are_swallowed(self) -> None:
        service = github_service(self.make_settings, lambda request: httpx.Response(500))

        service.set_commit_status(SHA, "test", StageStatus.SUCCEEDED, "ok")

    def test_disabled_without_token(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        settings = self.make_settings(github_token="")
        client = httpx.Client(base_url=settings.github_api_url, transport=httpx.MockTransport(handler))
        GithubService(settings, client=client).set_commit_status(SHA, "test", StageStatus.RUNNING, "running")

    def test_upload_sarif_is_gzipped_and_base64(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(202, json={"id": "47177e22-5596-11eb-80a1-c1e54ef945c6"})

        sarif = b'{"version": "2.1.0", "runs": []}'
        response = github_service(self.make_settings, handler).upload_sarif(sarif, SHA, "refs/heads/main")

        assert response["id"].startswith("47177e22")
        assert seen[0]["ref"] == "refs/heads/main"
        assert gzip.decompress(base64.b64decode(seen[0]["sarif"])) == sarif

    def test_upload_sarif_failure_raises(self) -> None:
        service = github_service(
            self.make_settings, lambda request: httpx.Response(403, json={"message": "Forbidden"})
        )

        with pytest.raises(httpx.HTTPStatusError):
            service.upload_sarif(b"{}", SHA, "refs/heads/main")


# ──────────────────────────────────────────────
# Image builder
# ──────────────────────────────────────────────


class FakeDocker:
    """Stands in for run_command when the builder calls docker."""

    def __init__(self, fail_platform: str | None = None) -> None:
        self.calls: list[list[str]] = []
        self.fail_platform = fail_platform

    def __call__(self, args: list[str], **kwargs) -> CommandResult:
        self.calls.append(args)
        if args[:3] == ["docker", "buildx", "build"]:
            platform = args[args.index("--platform") + 1]
            if platform == self.fail_platform:
                raise CommandError(args[:1], 1, "ERROR: failed to solve")
            metadata = Path(args[args.index("--metadata-file") + 1])
            metadata.write_text(json.dumps({"containerimage.digest": f"sha256:{platform[-5:]:0>64}"}))
        if "inspect" in args:
            return CommandResult(args, 0, json.dumps({"digest": "sha256:" + "f" * 64}))
        return CommandResult(args, 0, "done")


class TestImageBuilder:
    @pytest.fixture(autouse=True)
    def _settings_factory(self, settings_factory) -> None:
        self.make_settings = settings_factory

    def test_build_command_uses_registry_cache_and_push_by_digest(self, tmp_path: Path) -> None:
        builder = ImageBuilder(self.make_settings(runtime_versions={"ELIXIR_VERSION": "1.15.7"}))

        command = builder.build_command(tmp_path, "linux/arm64", tmp_path / "meta.json")

        assert command[:5] == ["docker", "buildx", "build", "--platform", "linux/arm64"]
        assert "type=registry,ref=ghcr.io/acme/app-buildcache:linux-arm64" in command
        assert "type=registry,ref=ghcr.io/acme/app-buildcache:linux-arm64,mode=max" in command
        assert (
            "type=image,name=ghcr.io/acme/app,push-by-digest=true,name-canonical=true,push=true" in command
        )
        assert "ELIXIR_VERSION=1.15.7" in command
        assert command[-1] == str(tmp_path)

    def test_build_platform_reads_digest(self, tmp_path: Path, monkeypatch) -> None:
        docker = FakeDocker()
        monkeypatch.setattr(builder_module, "run_command", docker)

        builder = ImageBuilder(self.make_settings(github_token="ghp_test"))

        built = builder.build_platform(tmp_path, "linux/amd64")

        assert built.platform == "linux/amd64"
        assert built.digest == "sha256:" + "amd64".rjust(64, "0")
        assert docker.calls[0][:2] == ["docker", "login"]

    def test_build_failure(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setattr(builder_module, "run_command", FakeDocker(fail_platform="linux/arm64"))

        with pytest.raises(BuildError) as exc_info:
            ImageBuilder(self.make_settings()).build_platform(tmp_path, "linux/arm64")

        assert "failed to solve" in exc_info.value.logs

    def test_publish_manifest_tags_every_tag(self, monkeypatch) -> None:
        docker = FakeDocker()
        monkeypatch.setattr(builder_module, "run_command", docker)

        digest, _ = ImageBuilder(self.make_settings()).publish_manifest(
            ["latest", "main", "main-1a2b3c4"],
            ["sha256:" + "1" * 64, "sha256:" + "2" * 64],
        )

        assert digest == "sha256:" + "f" * 64
        create = next(call for call in docker.calls if "create" in call)
        assert create.count("--tag") == 3
        assert "ghcr.io/acme/app:main-1a2b3c4" in create
        assert "ghcr.io/acme/app@sha256:" + "2" * 64 in create

    def test_publish_without_digests(self) -> None:
        with pytest.raises(BuildError):
            ImageBuilder(self.make_settings()).publish_manifest(["main"], [])


# ──────────────────────────────────────────────
# Commands and test runner
# ──────────────────────────────────────────────


class TestRunCommand:
    def test_output_and_exit_code(self) -> None:
        result = run_command(["sh", "-c", "echo out; echo err >&2"])

        assert result.returncode == 0
        assert "out" in result.output
        assert "err" in result.output

    def test_non_zero_exit_raises(self) -> None:
        with pytest.raises(CommandError) as exc_info:
            run_command(["sh", "-c", "echo nope; exit 3"])

        assert exc_info.value.returncode == 3
        assert "nope" in exc_info.value.output

    def test_missing_executable_raises_command_error(self) -> None:
        with pytest.raises(CommandError) as exc_info:
            run_command(["shipyard-no-such-binary", "--version"])

        assert exc_info.value.returncode == -1
        assert exc_info.value.command == ["shipyard-no-such-binary"]

    def test_redacts_secrets_in_output(self) -> None:
        result = run_command(["echo", "token=s3cret"], redact=("s3cret",))

        assert "s3cret" not in result.output
        assert "token=***" in result.output


class TestCheckout:
    def test_missing_git_is_a_workspace_error(self, monkeypatch) -> None:
        def no_git(args: list[str], **kwargs) -> CommandResult:
            raise CommandError(args[:1], -1, "[Errno 2] No such file or directory: 'git'")

        monkeypatch.setattr(workspace_module, "run_command", no_git)

        with pytest.raises(WorkspaceError, match="No such file"):
            with checkout("acme/app", SHA):
                pass


class TestSuiteRunner:
    def test_docker_unavailable_is_a_test_suite_error(self, settings, monkeypatch) -> None:
        def from_env() -> None:
            raise DockerException("Error while fetching server API version")

        monkeypatch.setattr(test_runner_module.docker, "from_env", from_env)

        with pytest.raises(TestSuiteError, match="Docker daemon unavailable"):
            SuiteRunner(settings)
