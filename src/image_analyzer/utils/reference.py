"""Image reference parsing."""

import re
from dataclasses import dataclass
from typing import Optional

from .digest import validate_digest

DOCKER_HUB_ALIASES = ("docker.io", "index.docker.io", "registry-1.docker.io")
DOCKER_HUB_REGISTRY = "registry-1.docker.io"
DEFAULT_TAG = "latest"

# Lowercase path components separated by ".", "_", "__" or runs of "-"
REPOSITORY_PATTERN = re.compile(
    r"^[a-z0-9]+(?:(?:\.|_|__|-+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:\.|_|__|-+)[a-z0-9]+)*)*$"
)
TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
REGISTRY_PATTERN = re.compile(r"^[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*(?::[0-9]+)?$")


@dataclass(frozen=True)
class ImageReference:
    """Parsed image reference."""

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def identifier(self) -> str:
        """Manifest reference: the digest when pinned, otherwise the tag."""
        return self.digest or self.tag or DEFAULT_TAG

    def __str__(self) -> str:
        name = f"{self.registry}/{self.repository}"
        if self.tag:
            name = f"{name}:{self.tag}"
        if self.digest:
            name = f"{name}@{self.digest}"
        return name


def split_registry(name: str) -> tuple[str, str]:
    """Split "host/path" into (registry, repository).

    The first component is a registry host only if it looks like one
    (contains "." or ":" or is "localhost"); otherwise Docker Hub is implied.
    """
    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first, rest
    return DOCKER_HUB_ALIASES[0], name


def parse_reference(image_ref: str) -> ImageReference:
    """이미지 참조 문자열을 레지스트리, 저장소, 태그, digest로 파싱합니다.

    Args:
        image_ref: 이미지 참조
            - 예: "nginx", "nginx:alpine", "python:3.12-slim"
            - 레지스트리 포함: "localhost:5000/myapp:latest", "ghcr.io/org/app@sha256:..."

    Returns:
        ImageReference: 파싱된 참조 (Docker Hub 이미지는 "library/" 네임스페이스 보정)

    Raises:
        ValueError: 참조 형식이 잘못된 경우

    Examples:
        ref = parse_reference("nginx")
        # 결과: registry-1.docker.io/library/nginx:latest

        ref = parse_reference("localhost:5000/myapp:v1")
        # 결과: registry="localhost:5000", repository="myapp", tag="v1"
    """
    if not image_ref or image_ref.strip() != image_ref or " " in image_ref:
        raise ValueError(f"Invalid image reference: {image_ref!r}")

    name, digest = image_ref, None
    if "@" in image_ref:
        name, digest = image_ref.split("@", 1)
        if not validate_digest(digest):
            raise ValueError(f"Invalid digest in image reference: {image_ref!r}")

    tag = None
    # Only a ':' after the last '/' separates a tag (not a registry port)
    if ":" in name.rsplit("/", 1)[-1]:
        name, tag = name.rsplit(":", 1)
        if not TAG_PATTERN.match(tag):
            raise ValueError(f"Invalid tag in image reference: {image_ref!r}")

    registry, repository = split_registry(name)
    if not REGISTRY_PATTERN.match(registry):
        raise ValueError(f"Invalid registry in image reference: {image_ref!r}")
    if registry in DOCKER_HUB_ALIASES:
        registry = DOCKER_HUB_REGISTRY
        if "/" not in repository:
            repository = f"library/{repository}"

    if not REPOSITORY_PATTERN.match(repository):
        raise ValueError(f"Invalid repository in image reference: {image_ref!r}")

    if tag is None and digest is None:
        tag = DEFAULT_TAG

    return ImageReference(registry=registry, repository=repository, tag=tag, digest=digest)
