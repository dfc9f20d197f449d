"""Custom exceptions for the image analyzer."""


class AnalyzerError(Exception):
    """Base exception for all analyzer errors."""

    pass


class ResolutionError(AnalyzerError):
    """Raised when an image reference cannot be resolved."""

    pass


class WorkspaceError(AnalyzerError):
    """Base exception for temporary workspace failures."""

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path = path


class WorkspaceCreateError(WorkspaceError):
    """Raised when a workspace directory cannot be created."""

    pass


class WorkspaceCleanupError(WorkspaceError):
    """Raised when a workspace directory cannot be removed."""

    pass


class FetchError(AnalyzerError):
    """Raised when a blob cannot be retrieved from the registry."""

    pass


class UnpackError(AnalyzerError):
    """Base exception for layer unpack failures."""

    pass


class UnpackFormatError(UnpackError):
    """Raised when a layer is not a readable gzip-compressed tar stream."""

    pass


class UnsafePathError(UnpackError):
    """Raised when an archive entry would be written outside the root."""

    def __init__(self, entry_name: str) -> None:
        super().__init__(f"Archive entry escapes destination root: {entry_name!r}")
        self.entry_name = entry_name


class UnpackCancelledError(UnpackError):
    """Raised inside the unpack worker when the pull was cancelled."""

    pass


class ApplyAbortedError(AnalyzerError):
    """Raised when applying a layer failed and the pull was aborted."""

    def __init__(self, ordinal: int, digest: str, cause: BaseException) -> None:
        super().__init__(f"Failed to apply layer {ordinal} ({digest[:19]}): {cause}")
        self.ordinal = ordinal
        self.digest = digest
        self.cause = cause


class PullTimeoutError(AnalyzerError):
    """Raised when a pull did not finish within its deadline."""

    pass


class ConfigError(AnalyzerError):
    """Raised when the configuration file is invalid."""

    pass


class UnsupportedFormatError(AnalyzerError):
    """Raised when a report format is not supported."""

    pass
