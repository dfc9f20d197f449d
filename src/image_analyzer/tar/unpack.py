"""Streaming gzip tar layer unpacker."""

import gzip
import logging
import os
import shutil
import tarfile
import threading
import zlib
from typing import IO, Optional

from ..exceptions import UnpackCancelledError, UnpackFormatError, UnsafePathError
from ..models import LayerStats, UnpackOptions
from ..utils.validator import (
    OPAQUE_WHITEOUT,
    confine_entry_path,
    resolve_link_target,
    split_whiteout,
)

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 64 * 1024

# Errors tarfile/gzip/zlib raise for malformed or truncated input
_DECODE_ERRORS = (tarfile.TarError, gzip.BadGzipFile, zlib.error, EOFError)

END_OF_ARCHIVE = tarfile.NUL * tarfile.BLOCKSIZE


class _TailRecorder:
    """Read-through wrapper that keeps the most recently returned bytes.

    The streaming tar reader treats a missing end-of-archive block, a short
    header and a damaged header all as a normal end. Keeping a window of the
    decompressed data lets the unpacker check the block it stopped at.
    """

    def __init__(self, raw: IO[bytes], keep: int = 4 * tarfile.RECORDSIZE) -> None:
        self._raw = raw
        self._keep = keep
        self._tail = b""
        self.position = 0

    def read(self, size: int = -1) -> bytes:
        data = self._raw.read(size)
        self.position += len(data)
        self._tail = (self._tail + data)[-self._keep :]
        return data

    def block_at(self, offset: int, size: int) -> Optional[bytes]:
        start = offset - (self.position - len(self._tail))
        if start < 0:
            return None
        return self._tail[start : start + size]


def _check_stop(stop: Optional[threading.Event]) -> None:
    if stop is not None and stop.is_set():
        raise UnpackCancelledError("Layer unpack cancelled")


def _remove_path(path: str) -> None:
    """Remove a file, link or directory tree."""
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.unlink(path)


def _mark_written(written: set[str], relative: str) -> None:
    """Record a path and all its ancestors as produced by the current layer."""
    while relative and relative not in written:
        written.add(relative)
        relative = os.path.dirname(relative)


def _ensure_parents(root: str, target: str) -> None:
    """Create missing ancestors of target, replacing non-directories in the way."""
    parent = os.path.dirname(target)
    if os.path.isdir(parent):
        return

    current = root
    for part in os.path.relpath(parent, root).split(os.sep):
        current = os.path.join(current, part)
        if os.path.isdir(current):
            continue
        if os.path.lexists(current):
            os.unlink(current)
        os.mkdir(current, 0o755)


def _make_directory(root: str, target: str, mode: int) -> None:
    if os.path.lexists(target) and not (
        os.path.isdir(target) and not os.path.islink(target)
    ):
        _remove_path(target)
    _ensure_parents(root, target)
    os.makedirs(target, exist_ok=True)
    # Owner keeps rwx so the tree can always be cleaned up
    os.chmod(target, (mode & 0o777) | 0o700)


def _write_file(
    archive: tarfile.TarFile,
    member: tarfile.TarInfo,
    root: str,
    target: str,
    stats: LayerStats,
    stop: Optional[threading.Event],
) -> None:
    _ensure_parents(root, target)
    if os.path.lexists(target):
        # Never write through an existing link or into a shared inode
        _remove_path(target)

    source = archive.extractfile(member)
    with open(target, "wb") as out:
        if source is not None:
            while True:
                _check_stop(stop)
                chunk = source.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
                stats.bytes_written += len(chunk)
    os.chmod(target, (member.mode & 0o777) | 0o600)


def _make_symlink(root: str, target: str, linkname: str) -> None:
    _ensure_parents(root, target)
    if os.path.lexists(target):
        _remove_path(target)
    # Store links relative to the root so the tree never points at the host
    resolved = resolve_link_target(root, target, linkname)
    os.symlink(os.path.relpath(resolved, os.path.dirname(target)), target)


def _make_hardlink(root: str, target: str, linkname: str) -> bool:
    source = confine_entry_path(root, linkname)
    if os.path.islink(source) or not os.path.isfile(source):
        return False
    _ensure_parents(root, target)
    if os.path.lexists(target):
        _remove_path(target)
    try:
        os.link(source, target)
    except OSError:
        shutil.copyfile(source, target)
    return True


def _apply_whiteout(
    root: str, name: str, whiteout: tuple[str, str], written: set[str]
) -> None:
    directory, removed = whiteout
    if removed == OPAQUE_WHITEOUT:
        target_dir = confine_entry_path(root, directory) if directory else root
        if not os.path.isdir(target_dir) or os.path.islink(target_dir):
            return
        for child in os.listdir(target_dir):
            child_path = os.path.join(target_dir, child)
            if os.path.relpath(child_path, root) not in written:
                _remove_path(child_path)
        return

    if removed in (".", ".."):
        raise UnsafePathError(name)
    target = confine_entry_path(
        root, f"{directory}/{removed}" if directory else removed
    )
    if target == root:
        raise UnsafePathError(name)
    if os.path.lexists(target):
        _remove_path(target)


def _apply_member(
    archive: tarfile.TarFile,
    member: tarfile.TarInfo,
    root: str,
    options: UnpackOptions,
    stats: LayerStats,
    written: set[str],
    stop: Optional[threading.Event],
) -> None:
    name = member.name

    if options.apply_whiteouts:
        whiteout = split_whiteout(name)
        if whiteout is not None:
            _apply_whiteout(root, name, whiteout, written)
            stats.whiteouts += 1
            return

    target = confine_entry_path(root, name)

    if member.isdir():
        if target != root:
            _make_directory(root, target, member.mode)
        stats.directories += 1
    elif member.isreg():
        if target == root:
            raise UnsafePathError(name)
        _write_file(archive, member, root, target, stats, stop)
        stats.files += 1
    elif member.issym() and options.allow_links:
        if target == root:
            raise UnsafePathError(name)
        _make_symlink(root, target, member.linkname)
        stats.links += 1
    elif member.islnk() and options.allow_links:
        if target == root:
            raise UnsafePathError(name)
        if not _make_hardlink(root, target, member.linkname):
            logger.debug("Skipping hard link %s to missing %s", name, member.linkname)
            stats.skipped += 1
            return
        stats.links += 1
    else:
        logger.debug("Skipping unsupported entry %s (type %r)", name, member.type)
        stats.skipped += 1
        return

    _mark_written(written, os.path.relpath(target, root))


def unpack_layer(
    stream: IO[bytes],
    destination_root: str,
    options: Optional[UnpackOptions] = None,
    stop: Optional[threading.Event] = None,
) -> LayerStats:
    """Apply one gzip-compressed tar layer onto a root directory.

    Entries are streamed one at a time; the archive is never held in memory.
    Later writes replace whatever lower layers left at the same path.

    Args:
        stream: Readable binary stream with the compressed layer
        destination_root: Directory the layer is applied onto
        options: Link and whiteout handling
        stop: Event checked at every entry and chunk boundary

    Returns:
        Counters for the applied entries

    Raises:
        UnpackFormatError: If the stream is not valid gzip tar data
        UnsafePathError: If an entry would land outside destination_root
        UnpackCancelledError: If stop was set
    """
    options = options or UnpackOptions()
    root = os.path.abspath(destination_root)
    stats = LayerStats()
    written: set[str] = set()

    _check_stop(stop)
    decompressed = gzip.GzipFile(fileobj=stream, mode="rb")
    recorder = _TailRecorder(decompressed)
    try:
        archive = tarfile.open(fileobj=recorder, mode="r|")
    except _DECODE_ERRORS as e:
        raise UnpackFormatError(f"Layer is not a gzip-compressed tar stream: {e}") from e

    with archive:
        while True:
            _check_stop(stop)
            try:
                member = archive.next()
                if member is None:
                    break
                _apply_member(archive, member, root, options, stats, written, stop)
            except _DECODE_ERRORS as e:
                raise UnpackFormatError(f"Corrupt layer stream: {e}") from e

        if recorder.block_at(archive.offset, tarfile.BLOCKSIZE) != END_OF_ARCHIVE:
            raise UnpackFormatError(
                f"Layer ends at offset {archive.offset} without an end-of-archive block"
            )

    # The gzip trailer (CRC32 and size) is only checked once the compressed
    # stream is read to its end.
    try:
        while decompressed.read(COPY_CHUNK_SIZE):
            _check_stop(stop)
    except _DECODE_ERRORS as e:
        raise UnpackFormatError(f"Corrupt layer stream: {e}") from e

    return stats
