"""Core types shared by the registry client and the pull pipeline."""

from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional, Protocol

from ..models import ImageDescriptor, LayerDescriptor, ProgressEvent


class TrustPolicy(Enum):
    """How fetched blobs are trusted."""

    ACCEPT_ANYTHING = "insecureAcceptAnything"
    VERIFY_DIGESTS = "verifyDigests"


@dataclass(frozen=True)
class RegistryConfig:
    """Immutable registry access settings, passed explicitly to the client."""

    timeout: int = 30
    trust_policy: TrustPolicy = TrustPolicy.ACCEPT_ANYTHING
    insecure_registries: tuple[str, ...] = ()
    platform: str = "linux/amd64"
    username: Optional[str] = None
    password: Optional[str] = None
    chunk_size: int = 64 * 1024

    @property
    def platform_os(self) -> str:
        return self.platform.split("/")[0]

    @property
    def platform_architecture(self) -> str:
        parts = self.platform.split("/")
        return parts[1] if len(parts) > 1 else "amd64"

    @property
    def platform_variant(self) -> Optional[str]:
        parts = self.platform.split("/")
        return parts[2] if len(parts) > 2 else None


class ProgressSink(Protocol):
    """Anything that accepts transfer progress events."""

    def emit(self, event: ProgressEvent) -> None: ...


class BlobFetcher(Protocol):
    """Source of layer blob bytes."""

    def fetch_blob(
        self, layer: LayerDescriptor, progress: Optional[ProgressSink] = None
    ) -> AsyncIterator[bytes]: ...


class ImageSource(BlobFetcher, Protocol):
    """Resolver plus blob transport consumed by the pull pipeline."""

    async def resolve(self, image_ref: str) -> ImageDescriptor: ...
