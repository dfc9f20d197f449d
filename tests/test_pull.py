"""End-to-end tests for pull_and_extract."""

import asyncio
import os

import pytest

from image_analyzer import pull as pull_module
from image_analyzer.exceptions import (
    ApplyAbortedError,
    PullTimeoutError,
    ResolutionError,
    UnpackFormatError,
    WorkspaceCleanupError,
)
from image_analyzer.models import ImageConfig
from image_analyzer.pull import extracted_image, pull_and_extract
from image_analyzer.workspace import destroy_workspace
from tests.helpers import (
    FakeImageSource,
    list_workspaces,
    make_layer,
    unresolvable_source,
)


def read(root, name):
    with open(os.path.join(root, name), "rb") as f:
        return f.read()


@pytest.mark.asyncio
async def test_two_layer_image_end_to_end(base_dir):
    config = ImageConfig(architecture="arm64", os="linux", env=("PATH=/usr/bin",))
    source = FakeImageSource(
        [
            make_layer({"a.txt": b"v1", "etc/os-release": b"ID=alpine\n"}),
            make_layer({"a.txt": b"v2", "b.txt": b"new"}),
        ],
        config=config,
    )

    path, image_config = await pull_and_extract("test/image:1", source, base_dir=base_dir)

    assert image_config == config
    assert os.path.dirname(path) == base_dir
    assert os.path.basename(path).startswith("layers-")
    assert read(path, "a.txt") == b"v2"
    assert read(path, "b.txt") == b"new"
    assert read(path, "etc/os-release") == b"ID=alpine\n"

    destroy_workspace(path)
    assert list_workspaces(base_dir) == []


@pytest.mark.asyncio
async def test_resolution_failure_creates_no_workspace(base_dir):
    with pytest.raises(ResolutionError):
        await pull_and_extract("missing", unresolvable_source(), base_dir=base_dir)

    assert list_workspaces(base_dir) == []


@pytest.mark.asyncio
async def test_corrupt_second_layer_cleans_up(base_dir):
    source = FakeImageSource([make_layer({"a.txt": b"1"}), b"not a gzip stream"])

    with pytest.raises(ApplyAbortedError) as exc_info:
        await pull_and_extract("test/image", source, base_dir=base_dir)

    assert exc_info.value.ordinal == 1
    assert isinstance(exc_info.value.cause, UnpackFormatError)
    assert list_workspaces(base_dir) == []


@pytest.mark.asyncio
async def test_timeout_cleans_up(base_dir):
    source = FakeImageSource(
        [make_layer({"big.bin": os.urandom(100_000)})], chunk_size=512, chunk_delay=0.05
    )

    with pytest.raises(PullTimeoutError):
        await pull_and_extract("test/image", source, base_dir=base_dir, timeout=0.2)

    assert list_workspaces(base_dir) == []


@pytest.mark.asyncio
async def test_cancellation_cleans_up(base_dir):
    source = FakeImageSource(
        [make_layer({"big.bin": os.urandom(100_000)})], chunk_size=512, chunk_delay=0.05
    )
    task = asyncio.ensure_future(pull_and_extract("test/image", source, base_dir=base_dir))
    await asyncio.sleep(0.2)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert list_workspaces(base_dir) == []


@pytest.mark.asyncio
async def test_cleanup_failure_does_not_mask_original_error(base_dir, monkeypatch, caplog):
    def failing_destroy(path):
        raise WorkspaceCleanupError("Device or resource busy", path)

    monkeypatch.setattr(pull_module, "destroy_workspace_async", _as_async(failing_destroy))
    source = FakeImageSource([b"garbage"])

    with pytest.raises(ApplyAbortedError):
        await pull_and_extract("test/image", source, base_dir=base_dir)

    assert any("Failed to clean up workspace" in r.getMessage() for r in caplog.records)


def _as_async(func):
    async def wrapper(*args):
        return func(*args)

    return wrapper


@pytest.mark.asyncio
async def test_extracted_image_removes_root_on_exit(base_dir):
    source = FakeImageSource([make_layer({"a.txt": b"1"})])

    async with extracted_image("test/image", source, base_dir=base_dir) as (path, _):
        assert read(path, "a.txt") == b"1"
        assert list_workspaces(base_dir) == [os.path.basename(path)]

    assert list_workspaces(base_dir) == []


@pytest.mark.asyncio
async def test_concurrent_pulls_use_distinct_workspaces(base_dir):
    sources = [FakeImageSource([make_layer({"id": str(i).encode()})]) for i in range(8)]

    results = await asyncio.gather(
        *(pull_and_extract(f"img{i}", s, base_dir=base_dir) for i, s in enumerate(sources))
    )

    paths = [path for path, _ in results]
    assert len(set(paths)) == 8
    for i, path in enumerate(paths):
        assert read(path, "id") == str(i).encode()
        destroy_workspace(path)
    assert list_workspaces(base_dir) == []
