from __future__ import annotations

from pathlib import Path

import pytest
from fakes import make_settings
from loguru import logger

from devman.config import Settings
from devman.storage.tasks import TaskStore
from devman.tools.builtin import register_builtin_tools
from devman.tools.router import ToolRegistry


@pytest.fixture(autouse=True)
def _quiet_logs() -> None:
    logger.remove()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path)


@pytest.fixture
def registry(settings: Settings) -> ToolRegistry:
    registry = ToolRegistry()
    register_builtin_tools(registry, settings=settings)
    return registry
