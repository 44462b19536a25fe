import threading
from unittest.mock import MagicMock

import pytest

from git_autosync.config import EngineConfig, HealthConfig
from git_autosync.health import HealthMonitor
from git_autosync.models import HealthStatus

from .fakes import FakeRepo


@pytest.fixture
def git_ok(mocker: MagicMock) -> MagicMock:
    return mocker.patch("git_autosync.health.git_available", return_value=True)


def test_check_all_healthy(git_ok: MagicMock) -> None:
    monitor = HealthMonitor(FakeRepo(), EngineConfig(), clock=lambda: 42.0)  # type: ignore[arg-type]

    status = monitor.check()

    assert status == HealthStatus(True, True, True, checked_at=42.0)
    assert status.healthy
    assert status.problems() == []


def test_unreachable_remote_is_reported_without_syncing(
    git_ok: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies a dead remote degrades health without any state-changing git call."""
    repo = FakeRepo(paths=["a.txt"])
    repo.reachable = False

    status = HealthMonitor(repo, EngineConfig()).check()  # type: ignore[arg-type]

    assert status.vcs_available
    assert status.repo_valid
    assert not status.remote_reachable
    assert status.problems() == ["remote unreachable"]
    assert repo.calls == []
    assert "HEALTH project: remote unreachable" in caplog.text


def test_missing_git_skips_probes(mocker: MagicMock) -> None:
    mocker.patch("git_autosync.health.git_available", return_value=False)
    repo = MagicMock()

    status = HealthMonitor(repo, EngineConfig()).check()

    assert not status.vcs_available
    assert not status.repo_valid
    assert status.problems() == ["git is not available"]
    assert not status.remote_reachable
    repo.check_repository.assert_not_called()
    repo.check_remote.assert_not_called()


def test_invalid_repository_skips_remote_probe(git_ok: MagicMock) -> None:
    repo = FakeRepo()
    repo.valid = False
    repo.check_remote = MagicMock(return_value=True)  # type: ignore[method-assign]

    status = HealthMonitor(repo, EngineConfig()).check()  # type: ignore[arg-type]

    assert status.problems() == ["not a git repository"]
    repo.check_remote.assert_not_called()


def test_run_reports_until_stopped(git_ok: MagicMock) -> None:
    """Verifies the loop publishes snapshots and exits promptly on stop."""
    config = EngineConfig(health=HealthConfig(interval=0.01))
    monitor = HealthMonitor(FakeRepo(), config)  # type: ignore[arg-type]
    stop = threading.Event()
    seen: list[HealthStatus] = []

    def on_status(status: HealthStatus) -> None:
        seen.append(status)
        if len(seen) >= 3:
            stop.set()

    thread = threading.Thread(target=monitor.run, args=(stop, on_status))
    thread.start()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert len(seen) >= 3
    assert all(status.healthy for status in seen)


def test_run_survives_callback_errors(
    git_ok: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    config = EngineConfig(health=HealthConfig(interval=0.01))
    monitor = HealthMonitor(FakeRepo(), config)  # type: ignore[arg-type]
    stop = threading.Event()
    calls = []

    def on_status(status: HealthStatus) -> None:
        calls.append(status)
        if len(calls) >= 2:
            stop.set()
        raise RuntimeError("boom")

    monitor.run(stop, on_status)

    assert len(calls) == 2
    assert "HEALTH ERROR" in caplog.text
