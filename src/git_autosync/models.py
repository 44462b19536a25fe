"""Value types passed between the watcher, debouncer, pipeline and supervisor."""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ChangeKind(Enum):
    """Type of file system change."""

    CREATED = "Created"
    MODIFIED = "Modified"
    DELETED = "Deleted"
    RENAMED = "Renamed"


@dataclass(frozen=True)
class ChangeEvent:
    """A single filtered file system change.

    Attributes:
        path (Path): Absolute path of the changed file (source for renames).
        kind (ChangeKind): What happened to the file.
        observed_at (float): Wall-clock time the event was observed.
        dest_path (Path | None): Destination of a rename, if any.
    """

    path: Path
    kind: ChangeKind
    observed_at: float = field(default_factory=time.time)
    dest_path: Path | None = None


@dataclass(frozen=True)
class SyncRequest:
    """A one-shot request to synchronize the working tree.

    Attributes:
        reason (str): Human-readable cause, used in the commit message.
        requested_at (float): Wall-clock time the request was created.
        message (str | None): Caller-supplied commit message overriding the template.
        manual (bool): True when triggered explicitly rather than by file events.
    """

    reason: str
    requested_at: float = field(default_factory=time.time)
    message: str | None = None
    manual: bool = False


class SyncOutcome(Enum):
    """Terminal (or deferred) result of one pipeline invocation."""

    NO_CHANGES = "no-changes"
    SUCCESS = "success"
    FAILED = "failed"
    DEFERRED = "deferred"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class SyncResult:
    """Immutable record of one `attempt_sync` call.

    Attributes:
        outcome (SyncOutcome): How the call ended.
        attempts (int): Number of failed-or-successful passes through the steps.
        last_error (str | None): Detail of the most recent failure.
        finished_at (float): Wall-clock completion time.
        reason (str): The reason carried by the originating request.
    """

    outcome: SyncOutcome
    attempts: int = 0
    last_error: str | None = None
    finished_at: float = field(default_factory=time.time)
    reason: str = ""


@dataclass(frozen=True)
class HealthStatus:
    """Snapshot of the engine's external dependencies.

    Attributes:
        vcs_available (bool): The git binary runs.
        repo_valid (bool): The watch root is inside a git work tree.
        remote_reachable (bool): The configured remote answers `ls-remote`.
        checked_at (float): Wall-clock time of the check.
    """

    vcs_available: bool
    repo_valid: bool
    remote_reachable: bool
    checked_at: float = field(default_factory=time.time)

    @property
    def healthy(self) -> bool:
        return self.vcs_available and self.repo_valid and self.remote_reachable

    def problems(self) -> list[str]:
        """Lists the degraded aspects in human-readable form."""
        # Dependent probes are skipped once one fails, so only the cause is listed
        if not self.vcs_available:
            return ["git is not available"]
        if not self.repo_valid:
            return ["not a git repository"]
        return [] if self.remote_reachable else ["remote unreachable"]


class EngineState(Enum):
    """Supervisor lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class EngineStatus:
    """What the supervisor reports to an external launcher."""

    state: EngineState
    health: HealthStatus | None = None
    last_result: SyncResult | None = None

    @property
    def running(self) -> bool:
        return self.state is EngineState.RUNNING
