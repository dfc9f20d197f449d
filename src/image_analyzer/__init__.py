"""Image Analyzer - pull a container image and inspect its filesystem."""

__version__ = "0.1.0"

from .analysis import analyze_image, render_summary
from .core.registry_client import RegistryClient
from .core.types import RegistryConfig, TrustPolicy
from .exceptions import (
    AnalyzerError,
    ApplyAbortedError,
    FetchError,
    PullTimeoutError,
    ResolutionError,
    UnpackError,
    WorkspaceError,
)
from .models import AnalyzeOptions, ImageConfig, Summary, UnpackOptions
from .pull import extracted_image, pull_and_extract, pull_image
from .workspace import destroy_workspace, destroy_workspace_async

__all__ = [
    "RegistryClient",
    "RegistryConfig",
    "TrustPolicy",
    "pull_and_extract",
    "pull_image",
    "extracted_image",
    "destroy_workspace",
    "destroy_workspace_async",
    "analyze_image",
    "render_summary",
    "AnalyzeOptions",
    "ImageConfig",
    "Summary",
    "UnpackOptions",
    "AnalyzerError",
    "ResolutionError",
    "FetchError",
    "UnpackError",
    "WorkspaceError",
    "ApplyAbortedError",
    "PullTimeoutError",
]
