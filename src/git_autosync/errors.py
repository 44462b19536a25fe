"""Exceptions surfaced to the launcher.

Failures inside a sync attempt are not exceptions: they travel as
`FailureKind` values on a `GitResult` and are retried by the pipeline.
"""

from enum import Enum


class AutosyncError(Exception):
    """Base class for fatal engine errors."""


class ConfigInvalid(AutosyncError):
    """The configuration cannot be used. Never retried."""


class WatchFailure(AutosyncError):
    """The filesystem watch was lost and cannot recover by itself."""


class StartupError(AutosyncError):
    """The supervisor could not transition to running."""


class FailureKind(Enum):
    """Why a single git operation failed."""

    VCS_UNAVAILABLE = "vcs-unavailable"
    STAGE_FAILED = "stage-failed"
    NOTHING_TO_COMMIT = "nothing-to-commit"
    COMMIT_FAILED = "commit-failed"
    PUSH_FAILED = "push-failed"
    TIMEOUT = "timeout"
    REPO_BUSY = "repo-busy"


class PushError(Enum):
    """Classification of a rejected push."""

    REJECTED = "rejected"
    NETWORK = "network"
    AUTH = "auth"
