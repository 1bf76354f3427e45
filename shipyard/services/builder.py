"""Container image builds with docker buildx.

Multi-arch images are built the native-runner way: each platform is built
on a worker of that architecture and pushed by digest only, then a single
manifest list referencing every platform digest is published under the
derived tags.

    build_platform(linux/amd64) ─┐
                                 ├─► publish_manifest(tags, digests)
    build_platform(linux/arm64) ─┘

Layer cache lives in the registry, one cache ref per platform, so each
native builder reuses its own layers between runs.
"""

import json
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path

from shipyard.exceptions import BuildError, CommandError
from shipyard.models.config import Settings
from shipyard.services.commands import run_command

logger = logging.getLogger(__name__)


@dataclass
class PlatformBuild:
    platform: str
    digest: str
    logs: str


def platform_slug(platform: str) -> str:
    """linux/arm64/v8 → linux-arm64-v8"""
    return platform.replace("/", "-")


class ImageBuilder:
    """Builds and publishes the application image."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.repository = settings.image_repository
        self.token = settings.github_token

    def login(self) -> None:
        """Authenticate to the registry with the ambient token."""
        if not self.token:
            logger.warning("No registry token configured, pushing anonymously")
            return
        try:
            run_command(
                [
                    "docker",
                    "login",
                    self.settings.registry,
                    "--username",
                    self.settings.github_actor,
                    "--password-stdin",
                ],
                input_text=self.token,
                redact=(self.token,),
            )
        except CommandError as exc:
            raise BuildError(f"Registry login failed for {self.settings.registry}", logs=exc.output) from exc

    def build_command(self, context: Path, platform: str, metadata_file: Path) -> list[str]:
        cache_ref = f"{self.settings.cache_repository}:{platform_slug(platform)}"
        command = [
            "docker",
            "buildx",
            "build",
            "--platform",
            platform,
            "--cache-from",
            f"type=registry,ref={cache_ref}",
            "--cache-to",
            f"type=registry,ref={cache_ref},mode=max",
            "--output",
            f"type=image,name={self.repository},push-by-digest=true,name-canonical=true,push=true",
            "--metadata-file",
            str(metadata_file),
        ]
        for name, value in sorted(self.settings.runtime_versions.items()):
            command += ["--build-arg", f"{name}={value}"]
        command.append(str(context))
        return command

    def build_platform(self, context: Path, platform: str) -> PlatformBuild:
        """Build the image for one platform and push it by digest."""
        self.login()

        with tempfile.TemporaryDirectory(prefix="shipyard-build-") as tmp:
            metadata_file = Path(tmp) / "metadata.json"
            try:
                result = run_command(
                    self.build_command(context, platform, metadata_file),
                    timeout=self.settings.build_timeout_seconds,
                )
            except CommandError as exc:
                raise BuildError(f"Build failed for {platform}", logs=exc.output) from exc

            try:
                metadata = json.loads(metadata_file.read_text())
                digest = metadata["containerimage.digest"]
            except (OSError, ValueError, KeyError) as exc:
                raise BuildError(f"No image digest in buildx metadata for {platform}", logs=result.output) from exc

        logger.info("Built %s for %s: %s", self.repository, platform, digest)
        return PlatformBuild(platform=platform, digest=digest, logs=result.output)

    def publish_manifest(self, tags: list[str], digests: list[str]) -> tuple[str, str]:
        """Merge per-platform digests into one manifest list tagged with ``tags``.

        Returns (manifest digest, command output).
        """
        if not digests:
            raise BuildError("No platform image to publish")

        self.login()

        command = ["docker", "buildx", "imagetools", "create"]
        for tag in tags:
            command += ["--tag", f"{self.repository}:{tag}"]
        command += [f"{self.repository}@{digest}" for digest in digests]

        try:
            created = run_command(command, timeout=600)
            inspected = run_command(
                [
                    "docker",
                    "buildx",
                    "imagetools",
                    "inspect",
                    f"{self.repository}:{tags[-1]}",
                    "--format",
                    "{{json .Manifest}}",
                ],
                timeout=120,
            )
        except CommandError as exc:
            raise BuildError("Publishing the image manifest failed", logs=exc.output) from exc

        try:
            digest = json.loads(inspected.output)["digest"]
        except (ValueError, KeyError) as exc:
            raise BuildError("Could not read the manifest digest", logs=inspected.output) from exc

        logger.info("Published %s@%s as %s", self.repository, digest, ", ".join(tags))
        return digest, created.output
