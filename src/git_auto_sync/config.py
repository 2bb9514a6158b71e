import logging
import os
import re
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from .constants import APP_NAME, CONFIG_FILENAME, DEFAULT_REMOTE
from .errors import ConfigError

logger = logging.getLogger(APP_NAME)


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid size format '{value}'")
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


def find_config(
    filename: str = CONFIG_FILENAME, search_path: str | None = None
) -> Path:
    """Locates the configuration file on the executable search path.

    Each directory listed in `PATH` is checked in order, the same way the
    shell resolves a command name.

    Args:
        filename (str): The file name to look for.
        search_path (str | None): A PATH-style string. Defaults to `$PATH`.

    Returns:
        Path: The first matching regular file.

    Raises:
        ConfigError: If no directory on the path contains the file.
    """
    if search_path is None:
        search_path = os.environ.get("PATH", "")

    for entry in search_path.split(os.pathsep):
        if not entry:
            continue
        candidate = Path(entry) / filename
        if candidate.is_file():
            return candidate

    raise ConfigError(f"Config file not found: '{filename}' is not on PATH")


@dataclass
class Config:
    """Daemon configuration.

    Attributes:
        interval_minutes (int): Minutes between synchronization attempts.
        repo_path (Path): The working tree root to synchronize.
        branch_name (str): The branch synchronized with the remote.
        remote_name (str): The remote fetched from and pushed to.
        alert (bool): Whether failures trigger the audible alert.
        max_log_size (int): Max bytes for the log file before rotation.
    """

    interval_minutes: int
    repo_path: Path
    branch_name: str
    remote_name: str = DEFAULT_REMOTE
    alert: bool = True
    max_log_size: int = 5 * 1024 * 1024

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60.0

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Reads and validates the configuration file.

        Args:
            path (Path | None): An explicit config file. When omitted the file
                is located with `find_config`.

        Returns:
            Config: The validated configuration.

        Raises:
            ConfigError: If the file is missing, unreadable, or malformed.
        """
        if path is None:
            path = find_config()

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Config syntax error in {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Error reading config file {path}: {e}") from e

        return cls.from_dict(data, source=path)

    @classmethod
    def from_dict(cls, data: dict[str, Any], source: Path | None = None) -> "Config":
        """Builds a Config from parsed TOML, enforcing required keys."""
        where = f" in {source}" if source else ""

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(
                f"Unknown config keys{where}: {', '.join(sorted(unknown))}. Ignoring."
            )

        interval = data.get("interval_minutes")
        if isinstance(interval, bool) or not isinstance(interval, int) or interval <= 0:
            raise ConfigError(
                f"'interval_minutes' must be a positive integer{where}, got {interval!r}"
            )

        repo_path = data.get("repo_path")
        if not isinstance(repo_path, str) or not repo_path.strip():
            raise ConfigError(f"'repo_path' must be a non-empty string{where}")

        branch_name = data.get("branch_name")
        if not isinstance(branch_name, str) or not branch_name.strip():
            raise ConfigError(f"'branch_name' must be a non-empty string{where}")

        instance = cls(
            interval_minutes=interval,
            repo_path=Path(repo_path).expanduser(),
            branch_name=branch_name.strip(),
        )
        instance._apply_optional(data)
        return instance

    def _apply_optional(self, data: dict[str, Any]) -> None:
        """Applies optional keys, falling back to defaults on bad values."""
        if "remote_name" in data:
            value = data["remote_name"]
            if isinstance(value, str) and value.strip():
                self.remote_name = value.strip()
            else:
                logger.warning(
                    f"Config error in remote_name: {value!r}. Falling back to default."
                )

        if "alert" in data:
            value = data["alert"]
            if isinstance(value, bool):
                self.alert = value
            else:
                logger.warning(
                    f"Config error in alert: {value!r}. Falling back to default."
                )

        if "max_log_size" in data:
            try:
                self.max_log_size = parse_size(data["max_log_size"])
            except ValueError as e:
                logger.warning(
                    f"Config error in max_log_size: {e}. Falling back to default."
                )
