"""Image references and tag derivation.

Tags follow the docker/metadata-action conventions:

    push to main     → latest, main, main-1a2b3c4
    push to develop  → develop, develop-1a2b3c4
    feature/login    → feature-login, feature-login-1a2b3c4

The ``{branch}-{sha}`` tag is present on every build, so any image can be
traced back to its commit.
"""

import re
from dataclasses import dataclass, replace

# Docker tag grammar: [A-Za-z0-9_][A-Za-z0-9_.-]{0,127}
_INVALID_TAG_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")
MAX_TAG_LENGTH = 128


def sanitize_tag(value: str) -> str:
    """Turn an arbitrary ref name into a valid Docker tag."""
    tag = _INVALID_TAG_CHARS.sub("-", value.strip())
    tag = tag.lstrip(".-")
    if not tag:
        raise ValueError(f"Cannot derive a tag from {value!r}")
    return tag[:MAX_TAG_LENGTH]


def derive_tags(
    branch: str,
    commit_sha: str,
    *,
    primary_branch: str = "main",
    sha_length: int = 7,
) -> list[str]:
    """Tags for an image built from ``commit_sha`` on ``branch``, most general first."""
    if not commit_sha:
        raise ValueError("commit_sha is required")

    branch_tag = sanitize_tag(branch)
    short_sha = commit_sha[:sha_length].lower()
    # Keep the sha suffix intact when the branch part is too long
    traceable = f"{branch_tag[: MAX_TAG_LENGTH - len(short_sha) - 1]}-{short_sha}"

    tags = []
    if branch == primary_branch:
        tags.append("latest")
    tags.append(branch_tag)
    tags.append(traceable)
    return list(dict.fromkeys(tags))


def traceability_tag(tags: list[str]) -> str:
    """The ``{branch}-{sha}`` tag: always the last derived tag."""
    return tags[-1]


@dataclass(frozen=True)
class ImageReference:
    """registry/namespace/name[:tag][@digest]"""

    repository: str
    tag: str | None = None
    digest: str | None = None

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        repository, _, digest = reference.partition("@")
        tag = None
        # A ':' after the last '/' is a tag; before it, a registry port
        name_start = repository.rfind("/") + 1
        colon = repository.find(":", name_start)
        if colon != -1:
            repository, tag = repository[:colon], repository[colon + 1 :]
        return cls(repository=repository, tag=tag, digest=digest or None)

    def with_tag(self, tag: str) -> "ImageReference":
        return replace(self, tag=tag)

    def with_digest(self, digest: str) -> "ImageReference":
        return replace(self, digest=digest)

    def __str__(self) -> str:
        ref = self.repository
        if self.tag:
            ref += f":{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref
