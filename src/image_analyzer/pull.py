"""Async functional style pull operations."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from .core.layers import apply_layers
from .core.registry_client import RegistryClient
from .core.types import ImageSource, RegistryConfig
from .exceptions import PullTimeoutError, WorkspaceCleanupError
from .models import ImageConfig, UnpackOptions
from .progress import ProgressRelay
from .workspace import create_workspace, destroy_workspace_async

logger = logging.getLogger(__name__)

LAYERS_PREFIX = "layers"


async def _create_layers_workspace(base_dir: Optional[str]) -> str:
    """Create the workspace in a worker thread without leaking it on cancel."""
    loop = asyncio.get_event_loop()
    creation = loop.run_in_executor(None, create_workspace, LAYERS_PREFIX, base_dir)
    try:
        return await asyncio.shield(creation)
    except asyncio.CancelledError:
        await asyncio.wait([creation])
        if not creation.cancelled() and creation.exception() is None:
            await _discard_workspace(creation.result())
        raise


async def _discard_workspace(path: str) -> None:
    """Destroy a workspace after a failure; cleanup errors are only logged."""
    try:
        await destroy_workspace_async(path)
    except WorkspaceCleanupError as e:
        logger.error(
            "Failed to clean up workspace %s after an aborted pull: %s",
            path,
            e,
            extra={"dir": path},
        )


async def _pull(
    image_ref: str,
    source: ImageSource,
    base_dir: Optional[str],
    options: UnpackOptions,
) -> tuple[str, ImageConfig]:
    descriptor = await source.resolve(image_ref)
    path = await _create_layers_workspace(base_dir)
    try:
        async with ProgressRelay() as relay:
            await apply_layers(descriptor.layers, path, source, relay, options)
    except BaseException:
        await _discard_workspace(path)
        raise

    logger.info(
        "Extracted %s into %s",
        image_ref,
        path,
        extra={"image": image_ref, "dir": path, "layers": len(descriptor.layers)},
    )
    return path, descriptor.config


async def pull_and_extract(
    image_ref: str,
    source: ImageSource,
    *,
    base_dir: Optional[str] = None,
    options: UnpackOptions = UnpackOptions(),
    timeout: Optional[float] = None,
) -> tuple[str, ImageConfig]:
    """이미지를 가져와 모든 레이어를 순서대로 임시 작업 디렉토리에 풀어냅니다.

    레이어는 ordinal 오름차순으로 하나의 루트 디렉토리에 적용되며, 뒤의
    레이어가 앞 레이어의 항목을 덮어씁니다. 실패하거나 취소되면 작업
    디렉토리를 삭제한 뒤 원래 오류를 그대로 전달합니다.

    Args:
        image_ref: 이미지 참조 (예: "nginx:alpine", "localhost:5000/myapp:v1")
        source: 이미지 resolve와 blob 다운로드를 담당하는 소스 (예: RegistryClient)
        base_dir: 작업 디렉토리를 만들 상위 디렉토리 (기본값: 시스템 임시 디렉토리)
        options: 압축 해제 옵션 (링크 허용, whiteout 적용)
        timeout: 전체 작업 제한 시간 (초, 기본값: 제한 없음)

    Returns:
        tuple[str, ImageConfig]: 풀어낸 루트 디렉토리 경로와 이미지 설정.
            경로는 호출자가 소유하며 destroy_workspace로 정확히 한 번 삭제해야 합니다.

    Raises:
        ResolutionError: 이미지 참조를 resolve하지 못한 경우
        WorkspaceCreateError: 작업 디렉토리를 만들지 못한 경우
        ApplyAbortedError: 레이어 다운로드 또는 압축 해제가 실패한 경우
        PullTimeoutError: 제한 시간 안에 끝나지 않은 경우

    Examples:
        async with RegistryClient() as client:
            root, config = await pull_and_extract("alpine:3.19", client)
            try:
                print(config.architecture)
            finally:
                await destroy_workspace_async(root)
    """
    pull = _pull(image_ref, source, base_dir, options)
    if timeout is None:
        return await pull

    try:
        return await asyncio.wait_for(pull, timeout)
    except asyncio.TimeoutError as e:
        raise PullTimeoutError(
            f"Pulling {image_ref} did not finish within {timeout} seconds"
        ) from e


@asynccontextmanager
async def extracted_image(
    image_ref: str,
    source: ImageSource,
    *,
    base_dir: Optional[str] = None,
    options: UnpackOptions = UnpackOptions(),
    timeout: Optional[float] = None,
) -> AsyncIterator[tuple[str, ImageConfig]]:
    """Scoped :func:`pull_and_extract`: the root is destroyed on exit."""
    path, config = await pull_and_extract(
        image_ref, source, base_dir=base_dir, options=options, timeout=timeout
    )
    try:
        yield path, config
    finally:
        await destroy_workspace_async(path)


async def pull_image(
    image_ref: str,
    config: Optional[RegistryConfig] = None,
    *,
    base_dir: Optional[str] = None,
    options: UnpackOptions = UnpackOptions(),
    timeout: Optional[float] = None,
) -> tuple[str, ImageConfig]:
    """레지스트리에서 이미지를 가져와 임시 디렉토리에 풀어냅니다.

    RegistryClient를 직접 만들지 않아도 되는 편의 함수입니다.

    Args:
        image_ref: 이미지 참조 (예: "python:3.12-slim")
        config: 레지스트리 설정 (인증 정보, digest 검증 정책 등)
        base_dir: 작업 디렉토리를 만들 상위 디렉토리
        options: 압축 해제 옵션
        timeout: 전체 작업 제한 시간 (초)

    Returns:
        tuple[str, ImageConfig]: 루트 디렉토리 경로와 이미지 설정

    Examples:
        root, config = await pull_image("nginx:alpine")
        await destroy_workspace_async(root)
    """
    async with RegistryClient(config) as client:
        return await pull_and_extract(
            image_ref, client, base_dir=base_dir, options=options, timeout=timeout
        )
