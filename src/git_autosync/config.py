import logging
import re
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, ClassVar

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_IGNORES,
    LOCAL_CONFIG_NAME,
)
from .errors import ConfigInvalid

logger = logging.getLogger(APP_NAME)

_DURATION_KEYS = {
    "debounce_window",
    "retry_backoff",
    "command_timeout",
    "network_timeout",
    "interval",
    "shutdown_grace",
    "watch_restart_delay",
}
_SIZE_KEYS = {"max_log_size"}


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_duration(value: int | float | str) -> float:
    """Converts human-readable durations (e.g., '500ms', '5s', '5min') to seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid time format '{value}'")
    if isinstance(value, int | float):
        return float(value)
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(ms|sec|s|min|m|hr|h)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "ms": 0.001,
        "s": 1,
        "sec": 1,
        "m": 60,
        "min": 60,
        "h": 3600,
        "hr": 3600,
    }
    return num * multiplier[unit]


@dataclass(frozen=True)
class CoreConfig:
    """Remote settings.

    Attributes:
        remote_name (str): The git remote to push to and probe.
        branch (str): Remote branch to push HEAD to. Empty pushes to the upstream.
    """

    remote_name: str = "origin"
    branch: str = ""


@dataclass(frozen=True)
class WatchConfig:
    """Filesystem watch settings.

    Attributes:
        root (Path): The working directory to watch.
        ignore (tuple[str, ...]): Patterns appended to the built-in ignores.
    """

    root: Path = field(default_factory=Path.cwd)
    ignore: tuple[str, ...] = ()

    @property
    def patterns(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys([*DEFAULT_IGNORES, *self.ignore]))


@dataclass(frozen=True)
class SyncConfig:
    """Sync pipeline settings.

    Attributes:
        debounce_window (float): Quiet seconds required before a burst settles.
        max_retries (int): Attempts per sync before giving up.
        retry_backoff (float): Base seconds for linear backoff between attempts.
        command_timeout (float): Timeout for local git commands.
        network_timeout (float): Timeout for push and ls-remote.
        commit_message (str): Template with `{timestamp}` and `{reason}` fields.
    """

    debounce_window: float = 5.0
    max_retries: int = 3
    retry_backoff: float = 2.0
    command_timeout: float = 60.0
    network_timeout: float = 120.0
    commit_message: str = "Auto-sync {timestamp}: {reason}"


@dataclass(frozen=True)
class HealthConfig:
    """Health monitor settings.

    Attributes:
        interval (float): Seconds between health checks.
    """

    interval: float = 300.0


@dataclass(frozen=True)
class DaemonConfig:
    """Supervisor settings.

    Attributes:
        silent_mode (bool): Suppress desktop notifications.
        shutdown_grace (float): Seconds to wait for an in-flight sync on stop.
        watch_restarts (int): Watcher restarts allowed before the engine stops.
        watch_restart_delay (float): Seconds to wait before each restart.
    """

    silent_mode: bool = False
    shutdown_grace: float = 30.0
    watch_restarts: int = 3
    watch_restart_delay: float = 2.0


@dataclass(frozen=True)
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for the log file before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass(frozen=True)
class EngineConfig:
    """Immutable configuration snapshot handed to every engine component.

    Loaded once at startup; changing it requires a restart.

    Attributes:
        core (CoreConfig): Remote settings.
        watch (WatchConfig): Watch root and ignore patterns.
        sync (SyncConfig): Debounce and retry behaviour.
        health (HealthConfig): Health check schedule.
        daemon (DaemonConfig): Supervisor behaviour.
        limits (LimitsConfig): Log size limits.
    """

    core: CoreConfig = field(default_factory=CoreConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    # Cache for the base global configuration
    _global_cache: ClassVar["EngineConfig | None"] = None

    @property
    def watch_root(self) -> Path:
        return self.watch.root

    @property
    def ignore_patterns(self) -> tuple[str, ...]:
        return self.watch.patterns

    @property
    def debounce_window(self) -> float:
        return self.sync.debounce_window

    @property
    def max_retries(self) -> int:
        return self.sync.max_retries

    @property
    def retry_backoff(self) -> float:
        return self.sync.retry_backoff

    @property
    def health_check_interval(self) -> float:
        return self.health.interval

    @property
    def silent_mode(self) -> bool:
        return self.daemon.silent_mode

    @classmethod
    def load(
        cls,
        root: Path | None = None,
        config_file: Path | None = None,
        overrides: dict[str, dict[str, Any]] | None = None,
    ) -> "EngineConfig":
        """Loads and merges configuration from defaults, global, local and CLI sources.

        Args:
            root (Path | None): The watch root. Defaults to the configured root.
            config_file (Path | None): An explicit file merged after the global one.
            overrides (dict | None): Section-keyed values applied last.

        Returns:
            EngineConfig: The fully merged configuration.

        Raises:
            ConfigInvalid: If a configuration file is not valid TOML.
        """
        # 1. Load or Retrieve Global Config
        if cls._global_cache is None:
            instance = cls()
            if CONFIG_FILE.exists():
                instance = instance._merge_from_file(CONFIG_FILE)
            cls._global_cache = instance

        instance = cls._global_cache

        if config_file:
            instance = instance._merge_from_file(config_file)

        # 2. Resolve the root, then layer the repository-local file on top
        if root is not None:
            instance = instance._merge({"watch": {"root": root}})
        watch_root = instance.watch.root

        local_toml = watch_root / LOCAL_CONFIG_NAME
        pyproject = watch_root / "pyproject.toml"
        if local_toml.exists():
            instance = instance._merge_from_file(local_toml)
        elif pyproject.exists():
            instance = instance._merge_from_file(pyproject, section="tool.autosync")

        # The local file may not move the root it was found in
        if instance.watch.root != watch_root:
            logger.warning(
                f"Ignoring [watch].root in {watch_root}: the local config cannot move the root."
            )
            instance = replace(instance, watch=replace(instance.watch, root=watch_root))

        if overrides:
            instance = instance._merge(overrides)

        return instance

    def _merge_from_file(
        self, path: Path, section: str | None = None
    ) -> "EngineConfig":
        """Parses a TOML file and returns a copy with its values merged in.

        Args:
            path (Path): Path to the TOML file.
            section (str | None): Dot-separated section path (e.g., 'tool.autosync').
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigInvalid(f"Config syntax error in {path}: {e}") from e
        except OSError as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return self

        if section:
            for key in section.split("."):
                data = data.get(key, {})

        if not data:
            return self

        return self._merge(data, source=path.parent)

    def _merge(
        self, data: dict[str, Any], source: Path | None = None
    ) -> "EngineConfig":
        """Merges section-keyed values into a copy of this configuration."""
        sections = {f.name for f in fields(self)}
        unknown = set(data) - sections
        if unknown:
            logger.warning(
                f"Unknown config sections: {', '.join(sorted(unknown))}. Ignoring."
            )

        updates: dict[str, Any] = {}
        for name in sections & set(data):
            values = dict(data[name])
            current = getattr(self, name)

            if name == "watch":
                # Ignore lists accumulate across layers instead of replacing
                new_ignores = values.pop("ignore", [])
                if "root" in values:
                    root = Path(values["root"]).expanduser()
                    if not root.is_absolute() and source is not None:
                        root = source / root
                    values["root"] = root.resolve()
                current = self._update_dataclass(name, current, values)
                if new_ignores:
                    merged = tuple(dict.fromkeys([*current.ignore, *new_ignores]))
                    current = replace(current, ignore=merged)
            else:
                current = self._update_dataclass(name, current, values)
            updates[name] = current

        return replace(self, **updates)

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        # 1. Catch and warn about typos / unknown keys
        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        # 2. Process valid keys
        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k in _SIZE_KEYS:
                    filtered_updates[k] = parse_size(v)
                elif k in _DURATION_KEYS:
                    filtered_updates[k] = parse_duration(v)
                else:
                    filtered_updates[k] = v
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)

    def validate(self) -> None:
        """Checks the configuration can drive the engine.

        Raises:
            ConfigInvalid: Describing every problem found.
        """
        problems = []
        root = self.watch.root
        if not root.exists():
            problems.append(f"watch root does not exist: {root}")
        elif not root.is_dir():
            problems.append(f"watch root is not a directory: {root}")
        if self.sync.debounce_window <= 0:
            problems.append("sync.debounce_window must be positive")
        if not isinstance(self.sync.max_retries, int) or self.sync.max_retries < 1:
            problems.append("sync.max_retries must be an integer >= 1")
        if self.sync.retry_backoff < 0:
            problems.append("sync.retry_backoff must not be negative")
        if self.sync.command_timeout <= 0 or self.sync.network_timeout <= 0:
            problems.append("sync timeouts must be positive")
        if self.health.interval <= 0:
            problems.append("health.interval must be positive")
        if self.daemon.shutdown_grace < 0:
            problems.append("daemon.shutdown_grace must not be negative")
        if self.daemon.watch_restart_delay < 0:
            problems.append("daemon.watch_restart_delay must not be negative")
        try:
            self.sync.commit_message.format(timestamp="", reason="")
        except (KeyError, IndexError, ValueError) as e:
            problems.append(f"sync.commit_message is not a valid template: {e}")
        if self.limits.max_log_size <= 0:
            problems.append("limits.max_log_size must be positive")

        if problems:
            raise ConfigInvalid("; ".join(problems))
