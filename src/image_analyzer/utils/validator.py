"""Archive entry name validation for untrusted layer tarballs."""

import os
import posixpath

from ..exceptions import UnsafePathError

WHITEOUT_PREFIX = ".wh."
OPAQUE_WHITEOUT = ".wh..wh..opq"


def is_absolute_name(name: str) -> bool:
    """Check if an entry name is absolute."""
    return posixpath.isabs(name)


def normalize_entry_name(name: str) -> str:
    """Normalize an entry name to a relative posix path ("" for the root)."""
    normalized = posixpath.normpath(name)
    return "" if normalized == "." else normalized


def escapes_root(normalized: str) -> bool:
    """Check if a normalized relative name climbs above its root."""
    return normalized == ".." or normalized.startswith("../")


def is_within_root(root: str, path: str) -> bool:
    """Check if path is root itself or lies beneath it."""
    root = os.path.abspath(root)
    path = os.path.abspath(path)
    return os.path.commonpath([root, path]) == root


def has_link_escape(root: str, path: str) -> bool:
    """Check if any existing parent of path resolves outside root via a symlink."""
    real_root = os.path.realpath(root)
    real_parent = os.path.realpath(os.path.dirname(path))
    return not is_within_root(real_root, real_parent)


def confine_entry_path(root: str, name: str) -> str:
    """Compute the on-disk path of an archive entry, confined beneath root.

    Args:
        root: Destination root directory
        name: Entry name as stored in the archive

    Returns:
        Absolute path beneath root (root itself for "." entries)

    Raises:
        UnsafePathError: If the entry is absolute or would resolve outside root
    """
    if not name or "\x00" in name or is_absolute_name(name):
        raise UnsafePathError(name)

    normalized = normalize_entry_name(name)
    if escapes_root(normalized):
        raise UnsafePathError(name)

    root = os.path.abspath(root)
    target = os.path.join(root, *normalized.split("/")) if normalized else root
    if not is_within_root(root, target):
        raise UnsafePathError(name)
    if target != root and has_link_escape(root, target):
        raise UnsafePathError(name)
    return target


def resolve_link_target(root: str, link_path: str, linkname: str) -> str:
    """Resolve a symlink target the way the image sees it, clamped to root.

    Absolute targets are interpreted relative to the image root and relative
    targets relative to the link's own directory. ".." never climbs above
    root, as inside a chroot.
    """
    root = os.path.abspath(root)
    parts: list[str] = []
    if not linkname.startswith("/"):
        link_dir = os.path.relpath(os.path.dirname(link_path), root)
        parts = [p for p in link_dir.split(os.sep) if p not in ("", ".")]

    for segment in linkname.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if parts:
                parts.pop()
            continue
        parts.append(segment)
    return os.path.join(root, *parts)


MAX_LINK_HOPS = 40


def resolve_in_root(root: str, name: str) -> str:
    """Resolve an in-image path, following symlinks without leaving root.

    Every path component is checked, so links in intermediate directories
    (e.g. ``etc -> usr/etc``) are followed too.

    Raises:
        OSError: If more than MAX_LINK_HOPS links are followed
    """
    root = os.path.abspath(root)
    pending = [p for p in name.split("/") if p not in ("", ".")]
    parts: list[str] = []
    hops = 0

    while pending:
        segment = pending.pop(0)
        if segment == "..":
            if parts:
                parts.pop()
            continue
        candidate = os.path.join(root, *parts, segment)
        if not os.path.islink(candidate):
            parts.append(segment)
            continue

        hops += 1
        if hops > MAX_LINK_HOPS:
            raise OSError(f"Too many levels of symbolic links: {name}")
        target = os.readlink(candidate)
        if target.startswith("/"):
            parts = []
        pending = [p for p in target.split("/") if p not in ("", ".")] + pending

    return os.path.join(root, *parts)


def split_whiteout(name: str) -> tuple[str, str] | None:
    """Split a whiteout marker into (directory, removed name).

    Returns:
        ("dir", OPAQUE_WHITEOUT) for opaque markers, ("dir", "child") for
        regular whiteouts, or None if the entry is not a whiteout
    """
    normalized = normalize_entry_name(name)
    directory, base = posixpath.split(normalized)
    if base == OPAQUE_WHITEOUT:
        return directory, OPAQUE_WHITEOUT
    if base.startswith(WHITEOUT_PREFIX) and len(base) > len(WHITEOUT_PREFIX):
        return directory, base[len(WHITEOUT_PREFIX) :]
    return None
