import shutil
import subprocess
import sys
from pathlib import Path

from rich.console import Console

from .constants import APP_LABEL

console = Console()


def get_executable() -> str:
    """Locates the installed executable in the system path.

    Returns:
        str: The absolute path to the 'git-auto-sync' executable.

    Raises:
        SystemExit: If the executable is not found in the PATH.
    """
    exe = shutil.which("git-auto-sync")
    if not exe:
        console.print(
            "[bold red]ERROR:[/bold red] Could not find 'git-auto-sync'. "
            "Ensure the package is installed."
        )
        sys.exit(1)
    return exe


def get_unit_path() -> Path:
    """Resolves the systemd user unit path.

    Raises:
        NotImplementedError: On platforms without systemd user services.
    """
    if sys.platform.startswith("linux"):
        return Path.home() / f".config/systemd/user/{APP_LABEL}.service"

    raise NotImplementedError("Service installation is only supported on Linux.")


def render_unit(executable: str, config_path: Path) -> str:
    """Builds the unit file for the long-running daemon.

    The config path is baked in because systemd does not share the login
    shell's PATH.
    """
    return f"""[Unit]
Description=git-auto-sync working tree synchronization
After=network-online.target

[Service]
ExecStart={executable} --config {config_path}
Restart=on-failure
RestartSec=30

[Install]
WantedBy=default.target
"""


def install(config_path: Path) -> None:
    """Installs and starts the daemon as a systemd user service.

    Args:
        config_path (Path): The resolved configuration file for the service.
    """
    if sys.platform == "darwin":
        console.print(
            "\n[bold yellow]NOTE:[/bold yellow] Service installation is not "
            "supported on macOS."
        )
        console.print("Run the daemon from a login item instead:")
        console.print(f"   [green]git-auto-sync --config {config_path}[/green]\n")
        return

    unit_path = get_unit_path()
    unit_path.parent.mkdir(parents=True, exist_ok=True)
    unit_path.write_text(render_unit(get_executable(), config_path.resolve()))

    subprocess.run(["systemctl", "--user", "daemon-reload"], check=True)
    subprocess.run(
        ["systemctl", "--user", "enable", "--now", f"{APP_LABEL}.service"], check=True
    )
    console.print(
        f"[bold green]SUCCESS:[/bold green] {APP_LABEL} service active.\n"
        f"Check status: systemctl --user status {APP_LABEL}.service"
    )


def uninstall() -> None:
    """Stops and removes the systemd user service."""
    if sys.platform == "darwin":
        console.print(
            "\n[bold yellow]NOTE:[/bold yellow] No service is installed on macOS.\n"
        )
        return

    unit_path = get_unit_path()
    subprocess.run(
        ["systemctl", "--user", "disable", "--now", f"{APP_LABEL}.service"],
        stderr=subprocess.DEVNULL,
    )
    unit_path.unlink(missing_ok=True)
    subprocess.run(["systemctl", "--user", "daemon-reload"])

    console.print("[bold green]SUCCESS:[/bold green] Service uninstalled.")
