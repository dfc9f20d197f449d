"""Data models for image pulling and analysis."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class LayerDescriptor:
    """Layer blob reference within a resolved image."""

    digest: str
    ordinal: int  # 0-based, applied in ascending order
    size: int
    media_type: str = "application/vnd.docker.image.rootfs.diff.tar.gzip"


@dataclass(frozen=True)
class ImageConfig:
    """Subset of the image config blob carried through to the report."""

    architecture: str
    os: str
    env: tuple[str, ...] = ()


@dataclass(frozen=True)
class ImageDescriptor:
    """Resolved image: manifest, ordered layers and parsed config."""

    manifest: dict[str, Any]
    layers: tuple[LayerDescriptor, ...]
    config: ImageConfig


class ProgressKind(Enum):
    """Blob transfer lifecycle events."""

    NEW_ARTIFACT = "new-artifact"
    READING = "reading"
    DONE = "done"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ProgressEvent:
    """Transient transfer event, consumed only for logging."""

    kind: ProgressKind
    artifact: str
    offset: int = 0
    size: int = 0


@dataclass(frozen=True)
class UnpackOptions:
    """Capabilities granted to the unpack engine."""

    allow_links: bool = False
    apply_whiteouts: bool = True


@dataclass
class LayerStats:
    """Counters collected while unpacking one layer."""

    directories: int = 0
    files: int = 0
    links: int = 0
    whiteouts: int = 0
    skipped: int = 0
    bytes_written: int = 0


@dataclass
class AnalyzeOptions:
    """Which inspections to run on a materialized root."""

    check_os_info: bool = True
    check_python_packages: bool = True
    check_common_tools: bool = True
    specific_commands: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalyzeOptions":
        """Build options from a request or config mapping, ignoring unknown keys."""
        commands = data.get("specific_commands") or []
        if not isinstance(commands, list) or not all(
            isinstance(c, str) for c in commands
        ):
            raise ValueError("specific_commands must be a list of strings")

        checks = {}
        for name in ("check_os_info", "check_python_packages", "check_common_tools"):
            value = data.get(name, True)
            if not isinstance(value, bool):
                raise ValueError(f"{name} must be a boolean")
            checks[name] = value
        return cls(specific_commands=list(commands), **checks)


@dataclass
class Summary:
    """Analysis report for one image."""

    architecture: str
    os: str
    env: list[str] = field(default_factory=list)
    os_info: str = ""
    python_packages: list[str] = field(default_factory=list)
    tools: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return the report as a plain mapping in serialization order."""
        return {
            "architecture": self.architecture,
            "os": self.os,
            "env": list(self.env),
            "os_info": self.os_info,
            "python_packages": list(self.python_packages),
            "tools": dict(self.tools),
        }
