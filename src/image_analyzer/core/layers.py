"""Ordered application of image layers onto a single root."""

import asyncio
import concurrent.futures
import logging
import threading
from typing import AsyncIterator, Iterable, Optional

from ..exceptions import ApplyAbortedError, UnpackCancelledError
from ..models import LayerDescriptor, LayerStats, UnpackOptions
from ..tar.unpack import unpack_layer
from .types import BlobFetcher, ProgressSink

logger = logging.getLogger(__name__)


class BlobReader:
    """Synchronous, file-like view over an async chunk iterator.

    ``read`` is called from a worker thread; each missing chunk is pulled on
    the event loop on demand, so at most one chunk is buffered at a time.
    """

    def __init__(
        self, chunks: AsyncIterator[bytes], loop: asyncio.AbstractEventLoop
    ) -> None:
        self._chunks = chunks
        self._iterator = chunks.__aiter__()
        self._loop = loop
        self._buffer = bytearray()
        self._eof = False
        self._lock = threading.Lock()
        self._aborted = False
        self._pending: Optional[concurrent.futures.Future] = None
        self._task: Optional[asyncio.Task] = None

    async def _read_chunk(self) -> Optional[bytes]:
        try:
            return await self._iterator.__anext__()
        except StopAsyncIteration:
            return None

    async def _threaded_read_chunk(self) -> Optional[bytes]:
        self._task = asyncio.current_task()
        return await self._read_chunk()

    def read(self, size: int = -1) -> bytes:
        """Read up to size bytes (all remaining bytes if size < 0)."""
        while not self._eof and (size < 0 or len(self._buffer) < size):
            with self._lock:
                if self._aborted:
                    raise UnpackCancelledError("Blob read cancelled")
                self._pending = asyncio.run_coroutine_threadsafe(
                    self._threaded_read_chunk(), self._loop
                )
            try:
                chunk = self._pending.result()
            except concurrent.futures.CancelledError as e:
                raise UnpackCancelledError("Blob read cancelled") from e
            finally:
                self._pending = None

            if chunk is None:
                self._eof = True
            else:
                self._buffer += chunk

        if size < 0:
            size = len(self._buffer)
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def abort(self) -> None:
        """Refuse further reads and cancel the chunk request in flight."""
        with self._lock:
            self._aborted = True
            pending = self._pending
        if pending is not None:
            pending.cancel()

    async def drain(self) -> int:
        """Consume whatever the unpacker left unread; returns the byte count."""
        remaining = len(self._buffer)
        self._buffer.clear()
        while not self._eof:
            chunk = await self._read_chunk()
            if chunk is None:
                self._eof = True
            else:
                remaining += len(chunk)
        return remaining

    async def wait_idle(self) -> None:
        """Wait until no chunk request is running on the loop."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait([task])

    async def aclose(self) -> None:
        """Close the underlying iterator, releasing its connection."""
        close = getattr(self._chunks, "aclose", None)
        if close is not None:
            await close()


async def _wait_for_worker(worker: asyncio.Future) -> None:
    await asyncio.wait([worker])
    if not worker.cancelled() and worker.exception() is not None:
        logger.debug("Unpack worker stopped: %s", worker.exception())


async def apply_layer(
    layer: LayerDescriptor,
    destination_root: str,
    fetcher: BlobFetcher,
    progress: Optional[ProgressSink] = None,
    options: Optional[UnpackOptions] = None,
) -> LayerStats:
    """Fetch one layer blob and unpack it onto destination_root.

    The blob is streamed straight into the unpacker running in a worker
    thread. On cancellation the worker is stopped and awaited before the
    cancellation propagates, so nothing writes into the root afterwards.
    """
    loop = asyncio.get_event_loop()
    reader = BlobReader(fetcher.fetch_blob(layer, progress), loop)
    stop = threading.Event()
    try:
        worker = loop.run_in_executor(
            None, unpack_layer, reader, destination_root, options, stop
        )
        try:
            stats = await asyncio.shield(worker)
        except asyncio.CancelledError:
            stop.set()
            reader.abort()
            await _wait_for_worker(worker)
            raise

        # Let the transport see the end of the blob (digest verification)
        trailing = await reader.drain()
        if trailing:
            logger.debug(
                "Discarded %d trailing bytes of layer %d", trailing, layer.ordinal
            )
        return stats
    finally:
        await reader.wait_idle()
        await reader.aclose()


async def apply_layers(
    layers: Iterable[LayerDescriptor],
    destination_root: str,
    fetcher: BlobFetcher,
    progress: Optional[ProgressSink] = None,
    options: Optional[UnpackOptions] = None,
) -> list[LayerStats]:
    """Apply layers in ascending ordinal order onto one shared root.

    Layers are applied strictly one after another: later layers overwrite
    entries of earlier ones. The first failure aborts the whole run; the
    root is left as is for the caller to discard.

    Args:
        layers: Layer descriptors (any order; sorted by ordinal here)
        destination_root: Root directory receiving all layers
        fetcher: Blob source
        progress: Optional sink for transfer events
        options: Unpack capabilities

    Returns:
        Per-layer unpack counters, in application order

    Raises:
        ApplyAbortedError: If fetching or unpacking any layer failed
    """
    ordered = sorted(layers, key=lambda layer: layer.ordinal)
    results: list[LayerStats] = []

    for layer in ordered:
        logger.info(
            "Applying layer %d/%d %s",
            layer.ordinal + 1,
            len(ordered),
            layer.digest[:19],
            extra={"ordinal": layer.ordinal, "digest": layer.digest, "size": layer.size},
        )
        try:
            stats = await apply_layer(
                layer, destination_root, fetcher, progress, options
            )
        except Exception as e:
            logger.error(
                "Layer %d (%s) failed: %s",
                layer.ordinal,
                layer.digest[:19],
                e,
                extra={"ordinal": layer.ordinal, "digest": layer.digest},
            )
            raise ApplyAbortedError(layer.ordinal, layer.digest, e) from e

        logger.debug(
            "Layer %d applied: %d files, %d dirs, %d skipped",
            layer.ordinal,
            stats.files,
            stats.directories,
            stats.skipped,
        )
        results.append(stats)

    return results
