"""In-memory stand-ins for git and the notification sink."""

import threading
import time
from collections import deque
from pathlib import Path

from git_autosync.errors import FailureKind, PushError
from git_autosync.git_wrapper import GitResult
from git_autosync.system import Severity, SystemStrategy

OK = GitResult(ok=True)


def push_failure(error: PushError = PushError.NETWORK) -> GitResult:
    return GitResult(
        ok=False,
        failure=FailureKind.PUSH_FAILED,
        detail="fatal: unable to access remote",
        push_error=error,
    )


class FakeRepo:
    """Simulates a work tree: commits clear changes, pushes clear `ahead`.

    Attributes:
        paths (list[str]): Paths `status()` reports as changed.
        calls (list[str]): Names of mutating operations in call order.
        push_results (deque[GitResult]): Scripted push results, OK once empty.
    """

    def __init__(
        self,
        path: Path = Path("/work/project"),
        paths: list[str] | None = None,
        push_results: list[GitResult] | None = None,
        push_always_fails: bool = False,
        track_upstream: bool = True,
    ) -> None:
        self.path = path
        self.paths = list(paths or [])
        self.ahead = 0
        self.calls: list[str] = []
        self.messages: list[str] = []
        self.push_results = deque(push_results or [])
        self.push_always_fails = push_always_fails
        self.track_upstream = track_upstream
        self.status_results: deque[GitResult] = deque()
        self.busy_results: deque[bool] = deque()
        self.valid = True
        self.reachable = True
        self._lock = threading.Lock()

    def count(self, name: str) -> int:
        with self._lock:
            return self.calls.count(name)

    def _record(self, name: str) -> None:
        with self._lock:
            self.calls.append(name)

    def status(self) -> GitResult:
        self._record("status")
        if self.status_results:
            return self.status_results.popleft()
        return GitResult(ok=True, paths=tuple(self.paths), ahead=self.ahead)

    def is_busy(self) -> bool:
        return self.busy_results.popleft() if self.busy_results else False

    def stage_all(self) -> GitResult:
        self._record("stage")
        return OK

    def commit(self, message: str) -> GitResult:
        self._record("commit")
        if not self.paths:
            return GitResult(
                ok=False, failure=FailureKind.NOTHING_TO_COMMIT, detail="nothing"
            )
        self.messages.append(message)
        self.paths = []
        if self.track_upstream:
            self.ahead += 1
        return OK

    def push(self) -> GitResult:
        self._record("push")
        if self.push_always_fails:
            return push_failure()
        if self.push_results:
            result = self.push_results.popleft()
            if not result.ok:
                return result
        self.ahead = 0
        return OK

    def check_repository(self) -> bool:
        return self.valid

    def check_remote(self) -> bool:
        return self.reachable


class RecordingNotifier(SystemStrategy):
    """Collects notifications instead of showing them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, Severity]] = []

    def notify(
        self, title: str, message: str, severity: Severity = Severity.INFO
    ) -> None:
        self.sent.append((title, message, severity))

    def titles(self) -> list[str]:
        return [title for title, _, _ in self.sent]


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Polls `predicate` until it is true or `timeout` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
