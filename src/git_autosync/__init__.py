"""git-autosync: change-driven commit and push for a git working tree.

This package provides the command-line launcher, the supervisor that runs
the watch/debounce/sync engine, and the git client the engine drives.
"""

from . import (
    cli,
    config,
    constants,
    daemon,
    debouncer,
    errors,
    git_wrapper,
    health,
    models,
    pipeline,
    system,
    watcher,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "daemon",
    "debouncer",
    "errors",
    "git_wrapper",
    "health",
    "models",
    "pipeline",
    "system",
    "watcher",
]
