"""Test configuration and fixtures."""

import logging

import pytest

from image_analyzer import workspace


@pytest.fixture
def root(tmp_path):
    """Empty destination root for unpack tests."""
    path = tmp_path / "root"
    path.mkdir()
    return str(path)


@pytest.fixture
def base_dir(tmp_path):
    """Parent directory for workspaces created during a test."""
    path = tmp_path / "workspaces"
    path.mkdir()
    return str(path)


@pytest.fixture(autouse=True)
def fast_cleanup_retries(monkeypatch):
    """Keep cleanup retry waits short."""
    monkeypatch.setattr(workspace, "CLEANUP_WAIT_MULTIPLIER_MS", 1)
    monkeypatch.setattr(workspace, "CLEANUP_WAIT_MAX_MS", 5)


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Drop handlers installed by setup_logging during a test."""
    yield
    package_logger = logging.getLogger("image_analyzer")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)
