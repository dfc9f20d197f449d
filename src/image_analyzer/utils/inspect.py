"""Static inspection of a materialized image root."""

import logging
import os
from typing import Iterable

from ..models import AnalyzeOptions, ImageConfig, Summary
from .validator import resolve_in_root

logger = logging.getLogger(__name__)

# /etc/os-release is usually a link created for running containers only
OS_RELEASE_PATHS = ("etc/os-release", "usr/lib/os-release")
COMMON_TOOLS = ("sshd", "python3", "curl", "wget", "nvcc")
DIST_INFO_SUFFIX = ".dist-info"


def _log_walk_error(error: OSError) -> None:
    logger.debug("Skipping unreadable path during inspection: %s", error)


def check_os_info(root: str) -> str:
    """
    Read the os-release file of an image root.

    Args:
        root: Materialized image root

    Returns:
        os-release content, or "" if the image has none
    """
    for name in OS_RELEASE_PATHS:
        try:
            path = resolve_in_root(root, name)
            with open(path, encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError as e:
            logger.debug("No os-release at %s: %s", name, e)

    logger.warning("Could not read operating system information", extra={"root": root})
    return ""


def list_python_packages(root: str) -> list[str]:
    """
    List installed Python distributions by their dist-info directories.

    Args:
        root: Materialized image root

    Returns:
        Sorted directory names (e.g. "requests-2.31.0.dist-info")
    """
    packages = []
    for dirpath, dirnames, _ in os.walk(root, onerror=_log_walk_error):
        for dirname in dirnames:
            if dirname.endswith(DIST_INFO_SUFFIX) and not os.path.islink(
                os.path.join(dirpath, dirname)
            ):
                packages.append(dirname)
    return sorted(packages)


def check_common_tools(root: str, extra: Iterable[str] = ()) -> dict[str, bool]:
    """
    Check which executables are present anywhere in the image.

    A tool counts as present when some non-directory entry (regular file
    or symlink) carries its name.

    Args:
        root: Materialized image root
        extra: Additional command names to look for

    Returns:
        Mapping of tool name to presence, common tools first
    """
    wanted = list(COMMON_TOOLS)
    for name in extra:
        if name and name not in wanted:
            wanted.append(name)

    remaining = set(wanted)
    found: set[str] = set()
    for dirpath, dirnames, filenames in os.walk(root, onerror=_log_walk_error):
        # Links to directories show up in dirnames but are entries of their own
        linked_dirs = [d for d in dirnames if os.path.islink(os.path.join(dirpath, d))]
        for name in remaining.intersection(filenames + linked_dirs):
            found.add(name)
        remaining -= found
        if not remaining:
            break

    return {name: name in found for name in wanted}


def analyze(root: str, image_config: ImageConfig, options: AnalyzeOptions) -> Summary:
    """
    Run the selected inspections on an extracted image.

    Args:
        root: Materialized image root
        image_config: Config of the pulled image
        options: Inspections to run

    Returns:
        Summary report
    """
    summary = Summary(
        architecture=image_config.architecture,
        os=image_config.os,
        env=list(image_config.env),
    )
    if options.check_os_info:
        summary.os_info = check_os_info(root)
    if options.check_python_packages:
        summary.python_packages = list_python_packages(root)
    if options.check_common_tools:
        summary.tools = check_common_tools(root, options.specific_commands)
    return summary
