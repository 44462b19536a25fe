"""The single-flight stage/commit/push pipeline with bounded retry."""

import datetime
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import replace

from .config import EngineConfig
from .constants import APP_NAME
from .errors import FailureKind
from .git_wrapper import GitRepo, GitResult
from .models import SyncOutcome, SyncRequest, SyncResult

logger = logging.getLogger(APP_NAME)


def coalesce(pending: SyncRequest | None, incoming: SyncRequest) -> SyncRequest:
    """Merges a new request into a waiting one.

    The earliest request time is kept so ordering reflects the first trigger;
    the reason follows the latest change.
    """
    if pending is None:
        return incoming
    return replace(
        incoming,
        requested_at=min(pending.requested_at, incoming.requested_at),
        message=incoming.message or pending.message,
        manual=pending.manual or incoming.manual,
    )


class SyncQueue:
    """A one-slot hand-off between request producers and the sync worker.

    Requests offered while the slot is occupied are coalesced into it, so a
    request that settles while the pipeline is busy waits for the worker and
    is then taken immediately.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._request: SyncRequest | None = None
        self._closed = False

    @property
    def pending(self) -> bool:
        with self._cond:
            return self._request is not None

    def offer(self, request: SyncRequest) -> bool:
        """Queues or coalesces a request. Returns False once closed."""
        with self._cond:
            if self._closed:
                return False
            self._request = coalesce(self._request, request)
            self._cond.notify_all()
            return True

    def take(self, timeout: float | None = None) -> SyncRequest | None:
        """Waits for a request; None on timeout or when closed."""
        with self._cond:
            if not self._cond.wait_for(
                lambda: self._closed or self._request is not None, timeout
            ):
                return None
            if self._closed:
                return None
            request, self._request = self._request, None
            return request

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._request = None
            self._cond.notify_all()


class SyncPipeline:
    """Runs status -> stage -> commit -> push with linear backoff between attempts.

    At most one `attempt_sync` proceeds at a time. A concurrent caller gets a
    `DEFERRED` result and its request is held for `take_follow_up()`.

    Attributes:
        repo (GitRepo): The repository client.
        config (EngineConfig): The engine configuration.
        stop (threading.Event): Shutdown signal, rebound on every engine start.
    """

    def __init__(
        self,
        repo: GitRepo,
        config: EngineConfig,
        stop: threading.Event | None = None,
        wait: Callable[[float], bool] | None = None,
    ) -> None:
        """Initializes the pipeline.

        Args:
            repo (GitRepo): The repository client.
            config (EngineConfig): Retry settings and commit message template.
            stop (threading.Event | None): Shutdown signal checked between attempts.
                A running attempt always finishes its current steps.
            wait (Callable[[float], bool] | None): Backoff wait returning True when
                interrupted. Defaults to `stop.wait`.
        """
        self.repo = repo
        self.config = config
        self.stop = stop or threading.Event()
        self._wait = wait

        self._lock = threading.Lock()
        self._follow_up_lock = threading.Lock()
        self._follow_up: SyncRequest | None = None
        self._unpushed = False

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def wait_idle(self, timeout: float) -> bool:
        """Blocks until no attempt holds the lock. Returns False on timeout."""
        if not self._lock.acquire(timeout=timeout):
            return False
        self._lock.release()
        return True

    def take_follow_up(self) -> SyncRequest | None:
        """Returns (and clears) the request coalesced during the last attempt."""
        with self._follow_up_lock:
            request, self._follow_up = self._follow_up, None
            return request

    def commit_message(self, request: SyncRequest) -> str:
        if request.message:
            return request.message
        timestamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        return self.config.sync.commit_message.format(
            timestamp=timestamp, reason=request.reason
        )

    def attempt_sync(self, request: SyncRequest) -> SyncResult:
        """Synchronizes the working tree, retrying failed attempts.

        Args:
            request (SyncRequest): Why the sync was requested.

        Returns:
            SyncResult: The terminal outcome, or `DEFERRED` if another sync
                        holds the lock.
        """
        if not self._lock.acquire(blocking=False):
            with self._follow_up_lock:
                self._follow_up = coalesce(self._follow_up, request)
            logger.debug(f"Sync in flight; coalesced '{request.reason}'.")
            return SyncResult(SyncOutcome.DEFERRED, reason=request.reason)

        try:
            return self._run(request)
        finally:
            self._lock.release()

    def _run(self, request: SyncRequest) -> SyncResult:
        name = self.repo.path.name
        max_retries = self.config.sync.max_retries
        message = self.commit_message(request)
        self._unpushed = False
        # A later rebinding of `stop` must not revive an abandoned attempt
        stop = self.stop
        wait = self._wait or stop.wait

        attempts = 0
        last_error: str | None = None
        while True:
            if stop.is_set():
                return self._finish(SyncOutcome.INTERRUPTED, attempts, last_error, request)

            attempts += 1
            step = self._attempt(message)
            if isinstance(step, SyncOutcome):
                return self._finish(step, attempts, last_error, request)

            last_error = step.describe()
            if attempts >= max_retries:
                return self._finish(SyncOutcome.FAILED, attempts, last_error, request)

            delay = self.config.sync.retry_backoff * attempts
            logger.warning(
                f"RETRY {name}: Attempt {attempts}/{max_retries} failed "
                f"({last_error}). Retrying in {delay:g}s."
            )
            if wait(delay):
                return self._finish(SyncOutcome.INTERRUPTED, attempts, last_error, request)

    def _attempt(self, message: str) -> SyncOutcome | GitResult:
        """Runs the steps once. Returns an outcome, or the failed step's result."""
        status = self.repo.status()
        if not status.ok:
            return status

        if not status.paths and not status.ahead and not self._unpushed:
            return SyncOutcome.NO_CHANGES

        if status.paths:
            if self.repo.is_busy():
                return GitResult(
                    ok=False,
                    failure=FailureKind.REPO_BUSY,
                    detail="another git operation is in progress",
                )

            staged = self.repo.stage_all()
            if not staged.ok:
                return staged

            committed = self.repo.commit(message)
            if committed.ok:
                self._unpushed = True
            elif committed.failure is FailureKind.NOTHING_TO_COMMIT:
                if not status.ahead and not self._unpushed:
                    return SyncOutcome.NO_CHANGES
            else:
                return committed

        pushed = self.repo.push()
        if not pushed.ok:
            return pushed

        self._unpushed = False
        return SyncOutcome.SUCCESS

    @staticmethod
    def _finish(
        outcome: SyncOutcome,
        attempts: int,
        last_error: str | None,
        request: SyncRequest,
    ) -> SyncResult:
        return SyncResult(
            outcome=outcome,
            attempts=attempts,
            last_error=last_error if outcome is not SyncOutcome.SUCCESS else None,
            finished_at=time.time(),
            reason=request.reason,
        )
