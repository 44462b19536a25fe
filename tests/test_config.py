"""Tests for the configuration management subsystem."""

import dataclasses
import logging
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_autosync.config import (
    DaemonConfig,
    EngineConfig,
    SyncConfig,
    WatchConfig,
    parse_duration,
    parse_size,
)
from git_autosync.errors import ConfigInvalid


def test_config_defaults() -> None:
    """Verifies that the configuration initializes with the documented defaults."""
    conf = EngineConfig()
    assert conf.debounce_window == 5.0
    assert conf.max_retries == 3
    assert conf.retry_backoff == 2.0
    assert conf.health_check_interval == 300.0
    assert conf.silent_mode is False
    assert conf.core.remote_name == "origin"
    assert conf.watch_root == Path.cwd()
    for pattern in (".git/", "*.log", "*.tmp"):
        assert pattern in conf.ignore_patterns


def test_config_is_immutable() -> None:
    """Verifies that a loaded snapshot cannot be mutated at runtime."""
    conf = EngineConfig()
    with pytest.raises(dataclasses.FrozenInstanceError):
        conf.sync.max_retries = 10  # type: ignore[misc]


def test_config_load_merges_layers(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies the cascading merge logic (Defaults -> Global -> Local -> Overrides).

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    global_config_path = tmp_path / "global_config.toml"
    global_config_path.write_text(
        '[core]\nremote_name = "upstream"\n'
        '[sync]\ndebounce_window = "10s"\nmax_retries = 5\n'
        '[watch]\nignore = ["*.bak"]\n'
    )
    (tmp_path / "autosync.toml").write_text(
        '[sync]\ndebounce_window = "500ms"\n[watch]\nignore = ["build/"]\n'
    )
    mocker.patch("git_autosync.config.CONFIG_FILE", global_config_path)

    conf = EngineConfig.load(
        root=tmp_path, overrides={"daemon": {"silent_mode": True}}
    )

    assert conf.watch_root == tmp_path.resolve()
    assert conf.core.remote_name == "upstream"  # From Global
    assert conf.max_retries == 5  # From Global
    assert conf.debounce_window == pytest.approx(0.5)  # Local overrides Global
    assert conf.watch.ignore == ("*.bak", "build/")  # Appended
    assert "build/" in conf.ignore_patterns
    assert ".git/" in conf.ignore_patterns
    assert conf.silent_mode is True  # From overrides


def test_config_load_from_pyproject(tmp_path: Path) -> None:
    """Verifies that configuration can be loaded from pyproject.toml."""
    (tmp_path / "pyproject.toml").write_text(
        '[tool.autosync.core]\nbranch = "notes"\n'
        '[tool.autosync.health]\ninterval = "10 min"\n'
    )

    conf = EngineConfig.load(root=tmp_path)

    assert conf.core.branch == "notes"
    assert conf.health_check_interval == 600


def test_local_config_cannot_move_root(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies a local file cannot redirect the engine to another directory."""
    (tmp_path / "autosync.toml").write_text('[watch]\nroot = "/"\n')

    conf = EngineConfig.load(root=tmp_path)

    assert conf.watch_root == tmp_path.resolve()
    assert "cannot move the root" in caplog.text


def test_config_syntax_error_is_fatal(tmp_path: Path) -> None:
    """Verifies that malformed TOML raises ConfigInvalid instead of being ignored."""
    (tmp_path / "autosync.toml").write_text("[sync\nmax_retries = ")

    with pytest.raises(ConfigInvalid, match="Config syntax error"):
        EngineConfig.load(root=tmp_path)


def test_parse_size() -> None:
    """Verifies that human-readable sizes are correctly converted to bytes."""
    assert parse_size(100) == 100
    assert parse_size("100kb") == 102400
    assert parse_size("10 MB") == 10485760
    assert parse_size("1.5gb") == int(1.5 * 1024**3)

    with pytest.raises(ValueError, match=r"Invalid size format '100 bits'"):
        parse_size("100 bits")


def test_parse_duration() -> None:
    """Verifies that human-readable durations are correctly converted to seconds."""
    assert parse_duration(50) == 50.0
    assert parse_duration(0.25) == 0.25
    assert parse_duration("500ms") == pytest.approx(0.5)
    assert parse_duration("30s") == 30
    assert parse_duration("30sec") == 30
    assert parse_duration("10 min") == 600
    assert parse_duration("2 hrs") == 7200
    assert parse_duration("1.5h") == 5400

    with pytest.raises(ValueError, match=r"Invalid time format '10 lightyears'"):
        parse_duration("10 lightyears")


def test_config_invalid_keys_and_values(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies that unknown keys are ignored and invalid values fallback to defaults.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        caplog (pytest.LogCaptureFixture): Pytest fixture for capturing logs.
    """
    caplog.set_level(logging.WARNING)

    (tmp_path / "autosync.toml").write_text(
        "[sync]\n"
        'debounce_window = "fast"\n'
        'fake_setting = "ignored"\n'
        "[limits]\n"
        'max_log_size = "10 gallons"\n'
        "[nonsense]\n"
        "x = 1\n"
    )

    conf = EngineConfig.load(root=tmp_path)

    assert conf.debounce_window == 5.0
    assert conf.limits.max_log_size == 5242880

    assert "Unknown config keys in [sync]: fake_setting" in caplog.text
    assert "Config error in [sync].debounce_window: Invalid time format" in caplog.text
    assert "Config error in [limits].max_log_size: Invalid size format" in caplog.text
    assert "Unknown config sections: nonsense" in caplog.text


def test_validate_accepts_defaults(tmp_path: Path) -> None:
    EngineConfig(watch=WatchConfig(root=tmp_path)).validate()


@pytest.mark.parametrize(
    ("sync", "expected"),
    [
        (SyncConfig(max_retries=0), "max_retries"),
        (SyncConfig(debounce_window=0), "debounce_window"),
        (SyncConfig(retry_backoff=-1), "retry_backoff"),
        (SyncConfig(commit_message="{unknown}"), "commit_message"),
    ],
)
def test_validate_rejects_bad_values(
    tmp_path: Path, sync: SyncConfig, expected: str
) -> None:
    """Verifies that unusable settings raise ConfigInvalid naming the setting."""
    conf = EngineConfig(watch=WatchConfig(root=tmp_path), sync=sync)

    with pytest.raises(ConfigInvalid, match=expected):
        conf.validate()


def test_validate_rejects_missing_root(tmp_path: Path) -> None:
    conf = EngineConfig(watch=WatchConfig(root=tmp_path / "missing"))

    with pytest.raises(ConfigInvalid, match="does not exist"):
        conf.validate()


def test_validate_rejects_negative_daemon_delays(tmp_path: Path) -> None:
    conf = EngineConfig(
        watch=WatchConfig(root=tmp_path),
        daemon=DaemonConfig(watch_restart_delay=-1),
    )

    with pytest.raises(ConfigInvalid, match="watch_restart_delay"):
        conf.validate()
