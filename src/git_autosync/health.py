"""Periodic, read-only checks of git, the repository and the remote."""

import logging
import threading
import time
from collections.abc import Callable

from .config import EngineConfig
from .constants import APP_NAME
from .git_wrapper import GitRepo, git_available
from .models import HealthStatus

logger = logging.getLogger(APP_NAME)


class HealthMonitor:
    """Composes the availability probes into a `HealthStatus`.

    Checks never touch the sync lock and may run while a sync is in flight.
    """

    def __init__(
        self,
        repo: GitRepo,
        config: EngineConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repo = repo
        self.config = config
        self._clock = clock

    def check(self) -> HealthStatus:
        """Recomputes the health status from scratch.

        The remote is only probed when the repository itself is valid.

        Returns:
            HealthStatus: The fresh snapshot.
        """
        vcs_available = git_available(timeout=self.config.sync.command_timeout)
        repo_valid = vcs_available and self.repo.check_repository()
        remote_reachable = repo_valid and self.repo.check_remote()

        status = HealthStatus(
            vcs_available=vcs_available,
            repo_valid=repo_valid,
            remote_reachable=remote_reachable,
            checked_at=self._clock(),
        )
        if status.healthy:
            logger.debug(f"HEALTH {self.repo.path.name}: OK")
        else:
            logger.warning(
                f"HEALTH {self.repo.path.name}: {', '.join(status.problems())}"
            )
        return status

    def run(
        self,
        stop: threading.Event,
        on_status: Callable[[HealthStatus], None],
    ) -> None:
        """Checks every `health_check_interval` seconds until `stop` is set.

        Args:
            stop (threading.Event): The shutdown signal.
            on_status (Callable[[HealthStatus], None]): Receives each snapshot.
        """
        interval = self.config.health_check_interval
        while not stop.wait(interval):
            try:
                on_status(self.check())
            except Exception:
                logger.exception("HEALTH ERROR: check failed")
