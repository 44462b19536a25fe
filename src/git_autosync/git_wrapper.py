import logging
import os
import re
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from .config import EngineConfig
from .constants import APP_NAME, GIT_LOCK_FILES
from .errors import FailureKind, PushError

logger = logging.getLogger(APP_NAME)

_AUTH_MARKERS = (
    "authentication failed",
    "permission denied",
    "could not read username",
    "could not read password",
    "invalid username or password",
    "the requested url returned error: 403",
)
_REJECT_MARKERS = (
    "[rejected]",
    "[remote rejected]",
    "non-fast-forward",
    "fetch first",
    "pre-receive hook declined",
)
_NOTHING_MARKERS = (
    "nothing to commit",
    "nothing added to commit",
    "no changes added to commit",
)


@dataclass(frozen=True)
class GitResult:
    """Outcome of a single git invocation.

    Attributes:
        ok (bool): Whether the command succeeded.
        output (str): Captured stdout.
        failure (FailureKind | None): Why the command failed, if it did.
        detail (str): Captured stderr (or stdout) explaining the failure.
        paths (tuple[str, ...]): Changed paths, for `status()`.
        ahead (int): Local commits not on the upstream, for `status()`.
        push_error (PushError | None): Push failure classification.
    """

    ok: bool
    output: str = ""
    failure: FailureKind | None = None
    detail: str = ""
    paths: tuple[str, ...] = ()
    ahead: int = 0
    push_error: PushError | None = None

    def describe(self) -> str:
        """Formats the failure for logs and `SyncResult.last_error`."""
        if self.ok or self.failure is None:
            return "ok"
        kind = self.failure.value
        if self.push_error is not None:
            kind = f"{kind} ({self.push_error.value})"
        return f"{kind}: {self.detail}" if self.detail else kind


def git_available(timeout: float = 10.0) -> bool:
    """Checks that a working git binary is on the PATH.

    Args:
        timeout (float): Seconds to wait for `git --version`.

    Returns:
        bool: True if git ran and exited cleanly.
    """
    try:
        res = subprocess.run(
            ["git", "--version"], capture_output=True, text=True, timeout=timeout
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"git probe failed: {e}")
        return False
    return res.returncode == 0


def classify_push_error(detail: str) -> PushError:
    """Maps push stderr to a rejection category."""
    text = detail.lower()
    if any(marker in text for marker in _AUTH_MARKERS):
        return PushError.AUTH
    if any(marker in text for marker in _REJECT_MARKERS):
        return PushError.REJECTED
    return PushError.NETWORK


def parse_status(output: str) -> tuple[tuple[str, ...], int]:
    """Parses `git status --porcelain --branch` output.

    Args:
        output (str): The raw command output.

    Returns:
        tuple[tuple[str, ...], int]: The changed paths and the ahead count.
    """
    paths: list[str] = []
    ahead = 0
    for line in output.splitlines():
        if line.startswith("## "):
            if match := re.search(r"ahead (\d+)", line):
                ahead = int(match.group(1))
            continue
        if len(line) < 4:
            continue
        path = line[3:]
        # Renames are reported as 'old -> new'
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(path.strip('"'))
    return tuple(paths), ahead


class GitRepo:
    """A wrapper around the Git command-line interface for the watched work tree.

    Every operation returns a `GitResult` instead of raising, so the sync
    pipeline can drive its retry policy from explicit values. All commands
    run with a bounded timeout; expiry is reported as `FailureKind.TIMEOUT`.

    Attributes:
        path (Path): The work tree directory commands run in.
        remote_name (str): The remote pushed to and probed.
        branch (str): Remote branch to push HEAD to, or empty for the upstream.
    """

    def __init__(
        self,
        path: Path,
        remote_name: str = "origin",
        branch: str = "",
        command_timeout: float = 60.0,
        network_timeout: float = 120.0,
    ):
        self.path = path
        self.remote_name = remote_name
        self.branch = branch
        self.command_timeout = command_timeout
        self.network_timeout = network_timeout

    @classmethod
    def from_config(cls, config: EngineConfig) -> "GitRepo":
        return cls(
            config.watch_root,
            remote_name=config.core.remote_name,
            branch=config.core.branch,
            command_timeout=config.sync.command_timeout,
            network_timeout=config.sync.network_timeout,
        )

    @staticmethod
    def _network_env() -> dict[str, str]:
        """Environment for commands that may prompt for credentials."""
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["GIT_SSH_COMMAND"] = "ssh -o BatchMode=yes"
        return env

    def _run(
        self,
        args: list[str],
        failure: FailureKind,
        timeout: float | None = None,
        env: dict | None = None,
    ) -> GitResult:
        """Executes a Git command within the work tree.

        Args:
            args (list[str]): Arguments to pass to the git command.
            failure (FailureKind): The kind reported on a non-zero exit.
            timeout (float | None): Seconds before the command is killed.
                                    Defaults to the command timeout.
            env (dict | None): Environment variables for the subprocess.

        Returns:
            GitResult: The captured outcome.
        """
        logger.debug(f"git {' '.join(args)}")
        try:
            res = subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=True,
                text=True,
                timeout=timeout or self.command_timeout,
                env=env,
            )
        except subprocess.TimeoutExpired:
            return GitResult(
                ok=False,
                failure=FailureKind.TIMEOUT,
                detail=f"git {args[0]} timed out after {timeout or self.command_timeout:g}s",
            )
        except OSError as e:
            return GitResult(
                ok=False, failure=FailureKind.VCS_UNAVAILABLE, detail=str(e)
            )

        if res.returncode != 0:
            detail = (res.stderr or "").strip() or (res.stdout or "").strip()
            return GitResult(
                ok=False,
                output=res.stdout or "",
                failure=failure,
                detail=detail or f"git {args[0]} exited with {res.returncode}",
            )
        return GitResult(ok=True, output=res.stdout or "")

    def status(self) -> GitResult:
        """Lists changed paths and unpushed commits.

        Returns:
            GitResult: `paths` and `ahead` populated on success,
                       `VCS_UNAVAILABLE` on failure.
        """
        res = self._run(
            ["status", "--porcelain", "--branch", "--", "."],
            FailureKind.VCS_UNAVAILABLE,
        )
        if not res.ok:
            return res
        paths, ahead = parse_status(res.output)
        return GitResult(ok=True, output=res.output, paths=paths, ahead=ahead)

    def stage_all(self) -> GitResult:
        """Stages all changes (modified, deleted, and untracked files)."""
        return self._run(["add", "--all", "."], FailureKind.STAGE_FAILED)

    def commit(self, message: str) -> GitResult:
        """Creates a commit from the index.

        Args:
            message (str): The commit message.

        Returns:
            GitResult: `NOTHING_TO_COMMIT` when the index matches HEAD,
                       `COMMIT_FAILED` for any other failure.
        """
        res = self._run(["commit", "-m", message], FailureKind.COMMIT_FAILED)
        if res.ok:
            return res
        text = f"{res.output}\n{res.detail}".lower()
        if any(marker in text for marker in _NOTHING_MARKERS):
            return GitResult(
                ok=False,
                output=res.output,
                failure=FailureKind.NOTHING_TO_COMMIT,
                detail="nothing to commit",
            )
        return res

    def push(self) -> GitResult:
        """Pushes HEAD to the configured remote.

        Returns:
            GitResult: `PUSH_FAILED` with a `push_error` classification on failure.
        """
        refspec = f"HEAD:{self.branch}" if self.branch else "HEAD"
        res = self._run(
            ["push", self.remote_name, refspec],
            FailureKind.PUSH_FAILED,
            timeout=self.network_timeout,
            env=self._network_env(),
        )
        if res.ok or res.failure is not FailureKind.PUSH_FAILED:
            return res
        return GitResult(
            ok=False,
            output=res.output,
            failure=res.failure,
            detail=res.detail,
            push_error=classify_push_error(res.detail),
        )

    def check_remote(self) -> bool:
        """Probes the remote with `ls-remote`. Never raises.

        Returns:
            bool: True if the remote answered.
        """
        res = self._run(
            ["ls-remote", "--heads", self.remote_name],
            FailureKind.PUSH_FAILED,
            timeout=self.network_timeout,
            env=self._network_env(),
        )
        if not res.ok:
            logger.debug(f"Remote probe failed: {res.describe()}")
        return res.ok

    def check_repository(self) -> bool:
        """Checks that the path is inside a git work tree."""
        if not self.path.is_dir():
            return False
        res = self._run(
            ["rev-parse", "--is-inside-work-tree"], FailureKind.VCS_UNAVAILABLE
        )
        return res.ok and res.output.strip() == "true"

    def git_dir(self) -> Path | None:
        """Resolves the repository's git directory."""
        res = self._run(["rev-parse", "--git-dir"], FailureKind.VCS_UNAVAILABLE)
        if not res.ok:
            return None
        return (self.path / res.output.strip()).resolve()

    def is_busy(self) -> bool:
        """Determines if the repository is locked by another Git operation.

        Returns:
            bool: True if a merge, rebase, cherry-pick, bisect or commit is
                  in progress.
        """
        git_dir = self.git_dir()
        if git_dir is None:
            return False

        for name in GIT_LOCK_FILES:
            marker = git_dir / name
            if not marker.exists():
                continue
            if name == "index.lock":
                try:
                    age_hours = (time.time() - marker.stat().st_mtime) / 3600
                    if age_hours > 24:
                        logger.warning(
                            f"Stale lock detected in {self.path.name} "
                            f"({age_hours:.1f}h old). Run 'rm {marker}' to fix."
                        )
                except OSError:
                    continue  # File vanished (race resolved).
            return True
        return False
