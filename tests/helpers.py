"""Test helpers: in-memory layer builder and a fake image source."""

import asyncio
import gzip
import io
import os
import tarfile
from typing import AsyncIterator, Optional

from image_analyzer.exceptions import FetchError, ResolutionError
from image_analyzer.models import (
    ImageConfig,
    ImageDescriptor,
    LayerDescriptor,
    ProgressEvent,
    ProgressKind,
)
from image_analyzer.utils.digest import calculate_digest


class LayerBuilder:
    """Build a gzip-compressed tar layer in memory."""

    def __init__(self) -> None:
        self._buffer = io.BytesIO()
        self._tar = tarfile.open(fileobj=self._buffer, mode="w")

    def _add(self, info: tarfile.TarInfo, data: bytes = b"") -> "LayerBuilder":
        info.size = len(data)
        self._tar.addfile(info, io.BytesIO(data) if data else None)
        return self

    def file(self, name: str, data: bytes = b"", mode: int = 0o644) -> "LayerBuilder":
        info = tarfile.TarInfo(name)
        info.mode = mode
        return self._add(info, data)

    def dir(self, name: str, mode: int = 0o755) -> "LayerBuilder":
        info = tarfile.TarInfo(name)
        info.type = tarfile.DIRTYPE
        info.mode = mode
        return self._add(info)

    def symlink(self, name: str, target: str) -> "LayerBuilder":
        info = tarfile.TarInfo(name)
        info.type = tarfile.SYMTYPE
        info.linkname = target
        return self._add(info)

    def hardlink(self, name: str, target: str) -> "LayerBuilder":
        info = tarfile.TarInfo(name)
        info.type = tarfile.LNKTYPE
        info.linkname = target
        return self._add(info)

    def fifo(self, name: str) -> "LayerBuilder":
        info = tarfile.TarInfo(name)
        info.type = tarfile.FIFOTYPE
        return self._add(info)

    def whiteout(self, name: str) -> "LayerBuilder":
        directory, base = os.path.split(name)
        return self.file(os.path.join(directory, f".wh.{base}"))

    def opaque(self, directory: str) -> "LayerBuilder":
        return self.file(os.path.join(directory, ".wh..wh..opq"))

    def tar(self) -> bytes:
        """Uncompressed archive, end-of-archive blocks included."""
        self._tar.close()
        return self._buffer.getvalue()

    def build(self) -> bytes:
        return gzip.compress(self.tar())


def make_layer(files: dict[str, bytes]) -> bytes:
    """Shortcut for a layer holding only regular files."""
    builder = LayerBuilder()
    for name, data in files.items():
        builder.file(name, data)
    return builder.build()


def make_descriptor(
    blobs: list[bytes], config: Optional[ImageConfig] = None
) -> ImageDescriptor:
    layers = tuple(
        LayerDescriptor(digest=calculate_digest(blob), ordinal=i, size=len(blob))
        for i, blob in enumerate(blobs)
    )
    return ImageDescriptor(
        manifest={"schemaVersion": 2, "layers": []},
        layers=layers,
        config=config or ImageConfig(architecture="amd64", os="linux"),
    )


class FakeImageSource:
    """ImageSource serving in-memory blobs."""

    def __init__(
        self,
        blobs: list[bytes],
        config: Optional[ImageConfig] = None,
        chunk_size: int = 1024,
        resolve_error: Optional[Exception] = None,
        fail_fetch: Optional[int] = None,
        chunk_delay: float = 0.0,
    ) -> None:
        self.descriptor = make_descriptor(blobs, config)
        self.blobs = {layer.digest: blob for layer, blob in zip(self.descriptor.layers, blobs)}
        self.chunk_size = chunk_size
        self.resolve_error = resolve_error
        self.fail_fetch = fail_fetch
        self.chunk_delay = chunk_delay
        self.fetched: list[int] = []
        self.resolved: list[str] = []

    async def resolve(self, image_ref: str) -> ImageDescriptor:
        self.resolved.append(image_ref)
        if self.resolve_error is not None:
            raise self.resolve_error
        return self.descriptor

    async def fetch_blob(
        self, layer: LayerDescriptor, progress=None
    ) -> AsyncIterator[bytes]:
        self.fetched.append(layer.ordinal)
        if self.fail_fetch == layer.ordinal:
            raise FetchError(f"Failed to fetch blob {layer.digest}")

        blob = self.blobs[layer.digest]
        if progress is not None:
            progress.emit(ProgressEvent(ProgressKind.NEW_ARTIFACT, layer.digest, 0, len(blob)))
        for offset in range(0, len(blob), self.chunk_size):
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            chunk = blob[offset : offset + self.chunk_size]
            if progress is not None:
                progress.emit(
                    ProgressEvent(
                        ProgressKind.READING, layer.digest, offset + len(chunk), len(blob)
                    )
                )
            yield chunk
        if progress is not None:
            progress.emit(ProgressEvent(ProgressKind.DONE, layer.digest, len(blob), len(blob)))


def unresolvable_source() -> FakeImageSource:
    return FakeImageSource([], resolve_error=ResolutionError("Manifest not found: library/missing:latest"))


def list_workspaces(base_dir, prefix: str = "layers") -> list[str]:
    """Names of workspace directories currently present under base_dir."""
    if not os.path.isdir(base_dir):
        return []
    return sorted(name for name in os.listdir(base_dir) if name.startswith(f"{prefix}-"))
