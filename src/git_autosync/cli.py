import argparse
import datetime
import os
import signal
import subprocess
import sys
from dataclasses import fields
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import daemon
from .config import EngineConfig
from .constants import LOG_FILE
from .errors import ConfigInvalid
from .git_wrapper import GitRepo
from .health import HealthMonitor
from .models import SyncOutcome

console = Console()


def _load_config(args: argparse.Namespace) -> EngineConfig:
    """Builds the engine configuration from files and command-line overrides.

    Exits with status 1 if the configuration is invalid.
    """
    overrides: dict[str, dict[str, Any]] = {}
    if args.silent:
        overrides.setdefault("daemon", {})["silent_mode"] = True
    if args.debounce is not None:
        overrides.setdefault("sync", {})["debounce_window"] = args.debounce

    try:
        return EngineConfig.load(
            root=args.root, config_file=args.config, overrides=overrides
        )
    except ConfigInvalid as e:
        console.print(f"[bold red]CONFIG ERROR:[/bold red] {e}")
        sys.exit(1)


def _format_ts(ts: float) -> str:
    return datetime.datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def show_status(config: EngineConfig) -> None:
    """Displays daemon liveness and a fresh health check for the watch root."""
    content = Text()
    content.append("Daemon: ", style="bold")
    if running := daemon.read_pid():
        pid, root = running
        content.append(f"Running (PID {pid})\n", style="bold green")
        if root is not None:
            content.append("Root:   ", style="bold")
            content.append(f"{root}\n")
    else:
        content.append("Stopped\n", style="bold red")
    content.append("Log:    ", style="bold")
    content.append(str(LOG_FILE))
    console.print(Panel(content, title="Engine Status", expand=False))

    with console.status("Checking repository health...", spinner="dots"):
        health = HealthMonitor(GitRepo.from_config(config), config).check()

    table = Table(title=f"Health: {config.watch_root}", show_header=True)
    table.add_column("Check", style="bold")
    table.add_column("Result")
    for label, ok in (
        ("Git available", health.vcs_available),
        ("Repository valid", health.repo_valid),
        (f"Remote '{config.core.remote_name}' reachable", health.remote_reachable),
    ):
        table.add_row(label, "[green]OK[/green]" if ok else "[red]FAILED[/red]")
    table.caption = f"Checked at {_format_ts(health.checked_at)}"
    console.print(table)


def sync_now(config: EngineConfig, message: str | None = None) -> int:
    """Runs one immediate sync, delegating to a running daemon for the same root.

    Returns:
        int: 1 if the sync failed, else 0.
    """
    running = daemon.read_pid()
    if running and running[1] == config.watch_root and hasattr(signal, "SIGUSR1"):
        if message:
            console.print(
                "[yellow]NOTE:[/yellow] The running daemon uses its own commit message."
            )
        os.kill(running[0], signal.SIGUSR1)
        console.print(
            f"[bold green]SUCCESS:[/bold green] Sync requested from daemon (PID {running[0]})."
        )
        return 0

    daemon.setup_logging(interactive=True, config=config)
    with console.status(f"Syncing {config.watch_root.name}...", spinner="dots"):
        result = daemon.sync_once(config, message=message)

    if result.outcome is SyncOutcome.SUCCESS:
        console.print("[bold green]✔ Changes pushed.[/bold green]")
    elif result.outcome is SyncOutcome.NO_CHANGES:
        console.print("[dim]Nothing to sync.[/dim]")
    else:
        console.print(f"[bold red]SYNC FAILED:[/bold red] {result.last_error}")
        return 1
    return 0


def stop_daemon() -> int:
    """Sends SIGTERM to the running daemon."""
    running = daemon.read_pid()
    if not running:
        console.print("[yellow]No running daemon found.[/yellow]")
        return 1
    pid, _ = running
    os.kill(pid, signal.SIGTERM)
    console.print(f"[bold green]SUCCESS:[/bold green] Stop signal sent to PID {pid}.")
    return 0


def tail_log(follow: bool = False, lines: int = 50) -> None:
    """Prints (or follows) the end of the daemon log file."""
    if not LOG_FILE.exists():
        console.print(f"[red]No log file found yet at {LOG_FILE}.[/red]")
        return

    if follow:
        console.print(f"Tailing [bold cyan]{LOG_FILE}[/bold cyan] (Ctrl+C to stop)...")
        try:
            subprocess.run(["tail", "-n", str(lines), "-f", str(LOG_FILE)])
        except KeyboardInterrupt:
            console.print("\nStopped.", style="dim")
        return

    with open(LOG_FILE, errors="replace") as f:
        content = f.readlines()
    for line in content[-lines:]:
        console.print(line.rstrip("\n"), markup=False, highlight=False)


def show_config(config: EngineConfig) -> None:
    """Prints the effective configuration, section by section."""
    table = Table(title="Effective Configuration", show_header=True)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for section in fields(config):
        values = getattr(config, section.name)
        for option in fields(values):
            value = getattr(values, option.name)
            if isinstance(value, tuple):
                value = ", ".join(value) or "(none)"
            table.add_row(f"{section.name}.{option.name}", str(value))
    table.add_row("watch.patterns", ", ".join(config.ignore_patterns))
    console.print(table)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="git-autosync",
        description="Watch a git work tree and commit/push changes automatically.",
    )
    parser.add_argument(
        "--root", type=Path, default=None, help="Directory to watch (default: cwd)"
    )
    parser.add_argument(
        "--config", type=Path, default=None, help="Extra TOML config file"
    )
    parser.add_argument(
        "--silent", action="store_true", help="Disable desktop notifications"
    )
    parser.add_argument(
        "--debounce", default=None, help="Debounce window, e.g. '5s' or '500ms'"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Watch and sync in the foreground")
    run_parser.add_argument(
        "--daemon",
        action="store_true",
        help="Log to the rotating log file (for service managers)",
    )
    now_parser = subparsers.add_parser("now", help="Sync immediately (no debounce)")
    now_parser.add_argument("-m", "--message", help="Commit message to use")
    subparsers.add_parser("status", help="Show daemon state and repository health")
    subparsers.add_parser("stop", help="Stop the running daemon")
    log_parser = subparsers.add_parser("log", help="Show the daemon log")
    log_parser.add_argument(
        "-f", "--follow", action="store_true", help="Follow the log"
    )
    log_parser.add_argument(
        "-n", "--lines", type=int, default=50, help="Lines to show (default: 50)"
    )
    subparsers.add_parser("config", help="Show the effective configuration")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the git-autosync CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "stop":
        sys.exit(stop_daemon())
    elif args.command == "log":
        tail_log(follow=args.follow, lines=args.lines)
        return

    config = _load_config(args)

    if args.command == "status":
        show_status(config)
        return
    elif args.command == "now":
        sys.exit(sync_now(config, message=args.message))
    elif args.command == "config":
        show_config(config)
        return

    # Default Action: run the engine in the foreground
    interactive = not getattr(args, "daemon", False)
    sys.exit(daemon.main(config, interactive=interactive, verbose=args.verbose))


if __name__ == "__main__":
    main()
