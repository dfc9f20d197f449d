"""Temporary workspace allocation and cleanup."""

import asyncio
import logging
import os
import secrets
import shutil
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import retrying

from .exceptions import WorkspaceCleanupError, WorkspaceCreateError

logger = logging.getLogger(__name__)

# Cleanup retry policy: 3 attempts, waits of 100ms, 200ms, ... capped at 1s
CLEANUP_ATTEMPTS = 3
CLEANUP_WAIT_MULTIPLIER_MS = 50
CLEANUP_WAIT_MAX_MS = 1000

# Suffix collisions are astronomically unlikely; bound the loop anyway
_CREATE_ATTEMPTS = 5


def generate_unique_id(nbytes: int = 8) -> str:
    """Return a random, unpredictable hex identifier."""
    return secrets.token_hex(nbytes)


def create_workspace(prefix: str, base_dir: Optional[str] = None) -> str:
    """Create an empty, uniquely named working directory.

    Args:
        prefix: Directory name prefix; the directory is named ``{prefix}-{suffix}``
        base_dir: Parent directory (defaults to the system temp root)

    Returns:
        Absolute path of the new directory

    Raises:
        WorkspaceCreateError: If the directory cannot be created
    """
    parent = os.path.abspath(base_dir or tempfile.gettempdir())
    try:
        os.makedirs(parent, exist_ok=True)
    except OSError as e:
        raise WorkspaceCreateError(
            f"Failed to prepare workspace parent directory: {e}", parent
        ) from e

    for _ in range(_CREATE_ATTEMPTS):
        path = os.path.join(parent, f"{prefix}-{generate_unique_id()}")
        try:
            # mkdir is exclusive: an existing name fails instead of being shared
            os.mkdir(path, 0o700)
        except FileExistsError:
            continue
        except OSError as e:
            raise WorkspaceCreateError(f"Failed to create workspace: {e}", path) from e

        logger.info(
            "Created workspace %s", path, extra={"dir": path, "prefix": prefix}
        )
        return path

    raise WorkspaceCreateError(
        f"Could not allocate a unique workspace name after {_CREATE_ATTEMPTS} attempts",
        parent,
    )


def _is_transient(error: BaseException) -> bool:
    """Permission problems cannot be fixed by waiting."""
    return isinstance(error, OSError) and not isinstance(error, PermissionError)


def _remove_tree(path: str) -> None:
    if os.path.islink(path) or os.path.isfile(path):
        os.unlink(path)
        return
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        # Someone else finished the job while we were walking
        if os.path.lexists(path):
            raise


def destroy_workspace(path: str) -> None:
    """Recursively remove a workspace directory.

    Calling this on an empty path or a path that no longer exists is a no-op.
    Transient failures are retried with capped exponential backoff; a
    permission failure is reported immediately.

    Args:
        path: Workspace directory

    Raises:
        WorkspaceCleanupError: If the directory could not be removed
    """
    if not path or not os.path.lexists(path):
        return

    attempt = 0

    def remove_once() -> None:
        nonlocal attempt
        attempt += 1
        if attempt > 1:
            logger.warning(
                "Retrying workspace removal for %s (attempt %d)",
                path,
                attempt,
                extra={"dir": path, "attempt": attempt},
            )
        try:
            _remove_tree(path)
        except OSError as e:
            logger.warning(
                "Workspace removal attempt %d for %s failed: %s",
                attempt,
                path,
                e,
                extra={"dir": path, "attempt": attempt},
            )
            raise

    retryer = retrying.Retrying(
        stop_max_attempt_number=CLEANUP_ATTEMPTS,
        wait_exponential_multiplier=CLEANUP_WAIT_MULTIPLIER_MS,
        wait_exponential_max=CLEANUP_WAIT_MAX_MS,
        retry_on_exception=_is_transient,
    )

    try:
        retryer.call(remove_once)
    except PermissionError as e:
        logger.error(
            "Permission denied removing workspace %s", path, extra={"dir": path}
        )
        raise WorkspaceCleanupError(
            f"Permission denied removing workspace: {e}", path
        ) from e
    except OSError as e:
        logger.error(
            "Giving up removing workspace %s after %d attempts",
            path,
            attempt,
            extra={"dir": path, "attempt": attempt},
        )
        raise WorkspaceCleanupError(
            f"Failed to remove workspace after {attempt} attempts: {e}", path
        ) from e

    logger.info("Removed workspace %s", path, extra={"dir": path, "attempt": attempt})


async def create_workspace_async(prefix: str, base_dir: Optional[str] = None) -> str:
    """Create a workspace without blocking the event loop."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, create_workspace, prefix, base_dir)


async def destroy_workspace_async(path: str) -> None:
    """Destroy a workspace without blocking the event loop."""
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(None, destroy_workspace, path)


@asynccontextmanager
async def workspace(prefix: str, base_dir: Optional[str] = None) -> AsyncIterator[str]:
    """Scoped workspace: created on entry, destroyed on every exit path."""
    path = await create_workspace_async(prefix, base_dir)
    try:
        yield path
    finally:
        await destroy_workspace_async(path)
