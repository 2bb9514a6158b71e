import argparse
import subprocess
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from . import daemon, service
from .config import Config, find_config
from .constants import APP_NAME, LOG_FILE
from .errors import ConfigError

console = Console()


def show_config(config_path: Path | None) -> None:
    """Prints the resolved configuration and where it was loaded from."""
    try:
        path = config_path or find_config()
        config = Config.load(path)
    except ConfigError as e:
        console.print(f"[bold red]FATAL:[/bold red] {e}")
        sys.exit(1)

    table = Table(title=f"{APP_NAME} ({path})", show_header=True)
    table.add_column("Key", style="bold cyan")
    table.add_column("Value")

    table.add_row("interval_minutes", str(config.interval_minutes))
    table.add_row("repo_path", str(config.repo_path))
    table.add_row("branch_name", config.branch_name)
    table.add_row("remote_name", config.remote_name)
    table.add_row("alert", str(config.alert).lower())
    table.add_row("max_log_size", f"{config.max_log_size} bytes")

    console.print(table)


def tail_log() -> None:
    """Follows the daemon log file in real-time."""
    if not LOG_FILE.exists():
        console.print(f"[red]No log file found yet at {LOG_FILE}.[/red]")
        return

    console.print(f"Tailing [bold cyan]{LOG_FILE}[/bold cyan] (Ctrl+C to stop)...")
    try:
        subprocess.run(["tail", "-n", "1000", "-f", str(LOG_FILE)])
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Periodically commit, pull, and push a git working tree.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to git-auto-sync.toml (default: search PATH)",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("now", help="Run one synchronization attempt and exit")
    subparsers.add_parser("config", help="Show the resolved configuration")
    subparsers.add_parser("log", help="Tail the daemon log file")
    subparsers.add_parser("install-service", help="Install the systemd user service")
    subparsers.add_parser("uninstall-service", help="Remove the systemd user service")
    return parser


def main() -> None:
    """Main entry point for the git-auto-sync CLI."""
    args = build_parser().parse_args()

    if args.command == "now":
        sys.exit(daemon.main(args.config, once=True, interactive=True))
    elif args.command == "config":
        show_config(args.config)
        return
    elif args.command == "log":
        tail_log()
        return
    elif args.command == "install-service":
        try:
            path = args.config or find_config()
        except ConfigError as e:
            console.print(f"[bold red]FATAL:[/bold red] {e}")
            sys.exit(1)
        with console.status("Installing background service...", spinner="dots"):
            service.install(path)
        return
    elif args.command == "uninstall-service":
        with console.status("Uninstalling service...", spinner="dots"):
            service.uninstall()
        return

    # Default Action (no subcommand): run the daemon in the foreground.
    sys.exit(daemon.main(args.config))


if __name__ == "__main__":
    main()
