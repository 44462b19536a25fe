import logging
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from git_autosync.config import EngineConfig
from git_autosync.constants import APP_NAME


@pytest.fixture(autouse=True)
def isolated_config(tmp_path_factory: pytest.TempPathFactory, mocker: MagicMock) -> Any:
    """Ensures every test starts with a clean config cache and no global file."""
    EngineConfig._global_cache = None
    global_dir: Path = tmp_path_factory.mktemp("global-config")
    mocker.patch("git_autosync.config.CONFIG_FILE", global_dir / "config.toml")
    yield
    EngineConfig._global_cache = None


@pytest.fixture(autouse=True)
def reset_logger() -> Any:
    """Removes handlers added by `setup_logging` so tests do not leak files."""
    yield
    logger = logging.getLogger(APP_NAME)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.INFO)
