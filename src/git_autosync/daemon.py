import atexit
import logging
import os
import queue
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType

from .config import EngineConfig
from .constants import APP_NAME, LOG_FILE, PID_FILE, SUCCESS
from .debouncer import Debouncer
from .errors import AutosyncError, StartupError, WatchFailure
from .git_wrapper import GitRepo
from .health import HealthMonitor
from .models import (
    EngineState,
    EngineStatus,
    HealthStatus,
    SyncOutcome,
    SyncRequest,
    SyncResult,
)
from .pipeline import SyncPipeline, SyncQueue
from .system import Severity, SystemStrategy, get_system
from .watcher import Watcher

logging.addLevelName(SUCCESS, "SUCCESS")

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)


def report_result(result: SyncResult, name: str, notifier: SystemStrategy) -> None:
    """Logs a sync result and notifies on terminal outcomes.

    Success and failure produce exactly one log entry and one notification;
    everything else is logged only.

    Args:
        result (SyncResult): The pipeline result.
        name (str): Repository name used in messages.
        notifier (SystemStrategy): Notification sink.
    """
    plural = "s" if result.attempts != 1 else ""
    if result.outcome is SyncOutcome.SUCCESS:
        logger.log(
            SUCCESS,
            f"SUCCESS {name}: Pushed ({result.reason}) after {result.attempts} attempt{plural}.",
        )
        notifier.notify("Sync complete", f"{name}: {result.reason}", Severity.SUCCESS)
    elif result.outcome is SyncOutcome.FAILED:
        logger.error(
            f"ERROR {name}: Sync failed after {result.attempts} attempt{plural}: "
            f"{result.last_error}"
        )
        notifier.notify(
            "Sync failed", f"{name}: {result.last_error}. Check logs.", Severity.ERROR
        )
    elif result.outcome is SyncOutcome.INTERRUPTED:
        logger.warning(f"INTERRUPTED {name}: Sync abandoned during shutdown.")
    elif result.outcome is SyncOutcome.NO_CHANGES:
        logger.info(f"SKIPPED {name}: No changes.")
    else:
        logger.debug(f"DEFERRED {name}: Sync already in flight.")


class Supervisor:
    """Owns the engine lifecycle and wires watcher, debouncer and pipeline.

    States move STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED. Five
    threads run while RUNNING: the watchdog observer, the event pump, the
    debouncer, the single sync worker and the health timer. They share one
    stop event, which every wait observes.
    """

    def __init__(
        self,
        config: EngineConfig,
        repo: GitRepo | None = None,
        notifier: SystemStrategy | None = None,
        watcher: Watcher | None = None,
        health: HealthMonitor | None = None,
    ) -> None:
        self.config = config
        self.repo = repo or GitRepo.from_config(config)
        self.notifier = notifier or get_system(silent=config.silent_mode)
        self.watcher = watcher or Watcher.from_config(config)
        self.health = health or HealthMonitor(self.repo, config)
        self.name = config.watch_root.name

        self._state_lock = threading.RLock()
        self._state = EngineState.STOPPED
        self._stopped = threading.Event()
        self._stopped.set()

        self._stop = threading.Event()
        # One pipeline for the supervisor's lifetime: its lock also covers an
        # attempt abandoned by an earlier stop.
        self._pipeline = SyncPipeline(self.repo, config, stop=self._stop)
        self._debouncer: Debouncer | None = None
        self._requests: SyncQueue | None = None
        self._threads: list[threading.Thread] = []
        self._worker: threading.Thread | None = None

        self._last_health: HealthStatus | None = None
        self._last_result: SyncResult | None = None
        self._degraded = False
        self._restarts = 0

    @property
    def state(self) -> EngineState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: EngineState) -> None:
        with self._state_lock:
            logger.debug(f"STATE {self.name}: {self._state.value} -> {state.value}")
            self._state = state

    def status(self) -> EngineStatus:
        """Reports state, last health snapshot and last sync result."""
        with self._state_lock:
            return EngineStatus(
                state=self._state,
                health=self._last_health,
                last_result=self._last_result,
            )

    def start(self) -> None:
        """Validates, health-checks and starts all engine threads.

        Raises:
            ConfigInvalid: If the configuration is unusable.
            StartupError: If git is unavailable or the root is not a repository.
            WatchFailure: If the filesystem watch cannot be established.
        """
        with self._state_lock:
            if self._state is not EngineState.STOPPED:
                raise StartupError(f"Cannot start while {self._state.value}")
            self._set_state(EngineState.STARTING)
            self._stopped.clear()
            # stop() during startup must set the event this run uses
            stop = self._stop = threading.Event()
            self._pipeline.stop = stop
            self._worker = None
            self._threads = []

        try:
            self.config.validate()
            health = self.health.check()
            with self._state_lock:
                self._last_health = health
            if not health.vcs_available:
                raise StartupError("git is not available")
            if not health.repo_valid:
                raise StartupError(
                    f"{self.config.watch_root} is not inside a git repository"
                )
            # An unreachable remote is advisory; pushes are retried later
            self._on_health(health)

            requests = self._requests = SyncQueue()
            debouncer = self._debouncer = Debouncer(
                self.config.debounce_window, on_settle=requests.offer
            )
            self._restarts = 0
            self.watcher.start()
        except AutosyncError as e:
            logger.error(f"STARTUP FAILED {self.name}: {e}")
            self.notifier.notify("Auto-sync failed to start", str(e), Severity.ERROR)
            with self._state_lock:
                self._set_state(EngineState.STOPPED)
                self._stopped.set()
            raise

        with self._state_lock:
            cancelled = self._state is not EngineState.STARTING
            if not cancelled:
                self._worker = threading.Thread(
                    target=self._sync_worker,
                    args=(stop, requests),
                    name="autosync-sync",
                    daemon=True,
                )
                self._threads = [
                    self._worker,
                    threading.Thread(
                        target=self._pump,
                        args=(stop,),
                        name="autosync-pump",
                        daemon=True,
                    ),
                    threading.Thread(
                        target=debouncer.run, name="autosync-debounce", daemon=True
                    ),
                    threading.Thread(
                        target=self.health.run,
                        args=(stop, self._on_health),
                        name="autosync-health",
                        daemon=True,
                    ),
                ]
                for thread in self._threads:
                    thread.start()
                self._set_state(EngineState.RUNNING)

        if cancelled:
            # stop() arrived during startup; undo what it could not see yet
            self.watcher.stop()
            debouncer.close()
            requests.close()
            logger.info(f"STARTUP CANCELLED {self.name}: Stopped while starting.")
            return

        logger.info(f"STARTED {self.name}: Watching {self.config.watch_root}")
        self.notifier.notify("Auto-sync started", f"Watching {self.name}")

        # Pick up anything changed while the engine was not running
        requests.offer(SyncRequest(reason="startup scan"))

    def trigger(self, reason: str = "manual sync", message: str | None = None) -> bool:
        """Requests one immediate sync, bypassing the debounce window.

        Returns:
            bool: False if the engine is not running.
        """
        if self.state is not EngineState.RUNNING or self._requests is None:
            return False
        logger.info(f"TRIGGER {self.name}: {reason}")
        return self._requests.offer(
            SyncRequest(reason=reason, message=message, manual=True)
        )

    def stop(self, grace: float | None = None) -> None:
        """Stops the engine, waiting up to `grace` seconds for an in-flight sync.

        A sync that is mid-attempt runs its current steps to completion; the
        stop event only prevents further retries. A stop during STARTING wins
        over the startup still in progress.

        Args:
            grace (float | None): Seconds to wait. Defaults to `shutdown_grace`.
        """
        with self._state_lock:
            if self._state in (EngineState.STOPPED, EngineState.STOPPING):
                return
            self._set_state(EngineState.STOPPING)
            stop = self._stop
            worker, threads = self._worker, list(self._threads)
            debouncer, requests = self._debouncer, self._requests

        if grace is None:
            grace = self.config.daemon.shutdown_grace

        stop.set()
        self.watcher.stop()
        self.watcher.events.put(None)  # type: ignore[arg-type]
        if debouncer is not None:
            debouncer.close()
        if requests is not None:
            requests.close()

        current = threading.current_thread()
        if worker is not None and worker is not current:
            worker.join(grace)
            if worker.is_alive():
                logger.warning(
                    f"INTERRUPTED {self.name}: Sync still running after "
                    f"{grace:g}s grace period. Abandoned."
                )
        for thread in threads:
            if thread is not worker and thread is not current:
                thread.join(1.0)

        with self._state_lock:
            self._set_state(EngineState.STOPPED)
            self._stopped.set()
        logger.info(f"STOPPED {self.name}")
        self.notifier.notify("Auto-sync stopped", f"No longer watching {self.name}")

    def wait(self, timeout: float | None = None) -> bool:
        """Blocks until the engine is stopped. Returns False on timeout."""
        return self._stopped.wait(timeout)

    def _pump(self, stop: threading.Event) -> None:
        """Moves watcher events into the debouncer and supervises the watch."""
        while not stop.is_set():
            try:
                event = self.watcher.events.get(timeout=1.0)
            except queue.Empty:
                try:
                    self.watcher.check()
                except WatchFailure as e:
                    self._on_watch_failure(e, stop)
                continue

            if event is None or stop.is_set():
                continue
            self._debouncer.push(event)

    def _on_watch_failure(self, error: WatchFailure, stop: threading.Event) -> None:
        """Restarts the watcher a bounded number of times, then stops the engine."""
        logger.error(f"WATCH FAILURE {self.name}: {error}")
        self.watcher.stop()

        limit = self.config.daemon.watch_restarts
        delay = self.config.daemon.watch_restart_delay
        while self._restarts < limit:
            self._restarts += 1
            # A root that is briefly missing (branch switch, remount) may return
            if stop.wait(delay):
                return
            try:
                self.watcher.start()
            except WatchFailure as e:
                logger.error(
                    f"WATCH FAILURE {self.name}: Restart {self._restarts}/{limit} failed: {e}"
                )
                continue
            logger.warning(f"WATCH {self.name}: Restarted ({self._restarts}/{limit}).")
            # Changes may have been missed while the watch was down
            self._requests.offer(SyncRequest(reason="watcher restarted"))
            return

        if stop.is_set():
            return
        self.notifier.notify(
            "Auto-sync stopped", f"{self.name}: lost filesystem watch", Severity.ERROR
        )
        self.stop()

    def _sync_worker(self, stop: threading.Event, requests: SyncQueue) -> None:
        """The only thread that runs the pipeline for one engine run."""
        while not stop.is_set():
            request = requests.take()
            if request is None:
                return
            try:
                self._run_sync(request, stop, requests)
            except Exception:
                logger.exception(f"LOOP ERROR {self.name}")

    def _run_sync(
        self, request: SyncRequest, stop: threading.Event, requests: SyncQueue
    ) -> None:
        result = self._pipeline.attempt_sync(request)
        if result.outcome is SyncOutcome.DEFERRED:
            # An attempt abandoned by an earlier stop still owns the work tree
            self._pipeline.take_follow_up()
            logger.info(f"DEFERRED {self.name}: Waiting for an abandoned sync.")
            while not self._pipeline.wait_idle(timeout=1.0):
                if stop.is_set():
                    return
            requests.offer(request)
            return

        with self._state_lock:
            self._last_result = result
        report_result(result, self.name, self.notifier)

        if follow_up := self._pipeline.take_follow_up():
            requests.offer(follow_up)

    def _on_health(self, status: HealthStatus) -> None:
        """Records a health snapshot; notifies once on entering a degraded state."""
        with self._state_lock:
            self._last_health = status
            was_degraded, self._degraded = self._degraded, not status.healthy

        if status.healthy:
            if was_degraded:
                logger.info(f"HEALTH {self.name}: Recovered.")
            return
        if not was_degraded:
            self.notifier.notify(
                "Auto-sync degraded",
                f"{self.name}: {', '.join(status.problems())}",
                Severity.WARNING,
            )


def sync_once(
    config: EngineConfig,
    message: str | None = None,
    notifier: SystemStrategy | None = None,
) -> SyncResult:
    """Runs one immediate sync without starting the engine.

    Args:
        config (EngineConfig): The engine configuration.
        message (str | None): Commit message overriding the template.
        notifier (SystemStrategy | None): Notification sink.

    Returns:
        SyncResult: The pipeline result.
    """
    notifier = notifier or get_system(silent=config.silent_mode)
    pipeline = SyncPipeline(GitRepo.from_config(config), config)
    result = pipeline.attempt_sync(
        SyncRequest(reason="manual sync", message=message, manual=True)
    )
    report_result(result, config.watch_root.name, notifier)
    return result


def setup_logging(
    interactive: bool, config: EngineConfig | None = None, verbose: bool = False
) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr and
                            a rotating file (one backup kept).
        config (EngineConfig | None): Supplies the log size threshold.
        verbose (bool): Enable debug output.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )
    logger.handlers.clear()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Always log to a stream (stderr is captured by service managers).
    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        max_bytes = (config or EngineConfig()).limits.max_log_size
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=max_bytes,
            backupCount=1,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def read_pid(pid_file: Path = PID_FILE) -> tuple[int, Path | None] | None:
    """Returns the PID and watch root of a live daemon, or None."""
    try:
        lines = pid_file.read_text().splitlines()
        pid = int(lines[0].strip())
    except (OSError, ValueError, IndexError):
        return None
    root = Path(lines[1].strip()) if len(lines) > 1 and lines[1].strip() else None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return None
    except PermissionError:
        pass  # Alive, owned by someone else.
    return pid, root


def _write_pid_file(root: Path) -> None:
    try:
        PID_FILE.parent.mkdir(parents=True, exist_ok=True)
        PID_FILE.write_text(f"{os.getpid()}\n{root}\n")
        # Ensure cleanup on exit.
        atexit.register(lambda: PID_FILE.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")


def main(
    config: EngineConfig, interactive: bool = True, verbose: bool = False
) -> int:
    """Runs the engine in the foreground until SIGINT or SIGTERM.

    SIGUSR1 (where available) triggers an immediate sync.

    Args:
        config (EngineConfig): The engine configuration.
        interactive (bool): Log to stdout only instead of stderr plus the log file.
        verbose (bool): Enable debug output.

    Returns:
        int: The process exit code.
    """
    setup_logging(interactive, config, verbose)
    supervisor = Supervisor(config)

    def shutdown_handler(signum: int, _frame: FrameType | None) -> None:
        logger.info(f"Received {signal.Signals(signum).name}. Shutting down...")
        # Stop off the signal frame; stop() joins worker threads.
        threading.Thread(target=supervisor.stop, name="autosync-shutdown").start()

    def trigger_handler(_signum: int, _frame: FrameType | None) -> None:
        threading.Thread(
            target=supervisor.trigger, name="autosync-trigger", daemon=True
        ).start()

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)
    if hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, trigger_handler)

    try:
        supervisor.start()
    except AutosyncError:
        return 1

    _write_pid_file(config.watch_root)

    # Poll so the main thread stays responsive to signals.
    while not supervisor.wait(timeout=1.0):
        pass
    return 0
