"""Pytest fixtures for hindsight tests."""

from __future__ import annotations

import logging
from collections.abc import Generator
from datetime import UTC, datetime
from pathlib import Path

import pytest
import structlog

from hindsight.core.config import LearningConfig
from hindsight.storage.files import LearningPaths


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset logging state before and after each test.

    This ensures test isolation for logging configuration.
    """
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_level = root_logger.level
    original_handlers = root_logger.handlers[:]
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Empty learning data directory."""
    path = tmp_path / "hindsight"
    path.mkdir()
    return path


@pytest.fixture
def paths(data_dir: Path) -> LearningPaths:
    return LearningPaths(data_dir)


@pytest.fixture
def config(data_dir: Path) -> LearningConfig:
    """Default configuration rooted in the temporary data directory."""
    return LearningConfig(data_dir=data_dir)


@pytest.fixture
def now() -> datetime:
    """A fixed reference time for time-dependent tests."""
    return datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
