import logging
import subprocess
import sys
from pathlib import Path

from .constants import ALERT_SOUND, APP_NAME

logger = logging.getLogger(APP_NAME)


class SystemStrategy:
    """Base class defining the interface for desktop side effects."""

    def play_sound(self, path: Path) -> None:
        """Plays an audio file.

        Args:
            path (Path): The sound file.

        Raises:
            OSError: If no player is available or the file cannot be played.
        """
        raise OSError("Audio playback is not supported on this platform")

    def notify(self, title: str, message: str) -> None:
        """Sends a desktop notification.

        Args:
            title (str): The notification title.
            message (str): The notification body text.
        """
        pass


class MacOSStrategy(SystemStrategy):
    """System strategy implementation for macOS."""

    def play_sound(self, path: Path) -> None:
        """Plays the file with `afplay`."""
        subprocess.run(["afplay", str(path)], check=True, stderr=subprocess.DEVNULL)

    def notify(self, title: str, message: str) -> None:
        """Sends a notification using AppleScript."""
        # Sanitize quotes to prevent AppleScript syntax errors.
        clean_msg = message.replace('"', "'")
        script = f'display notification "{clean_msg}" with title "{title}"'
        try:
            subprocess.run(["osascript", "-e", script], stderr=subprocess.DEVNULL)
        except OSError as e:
            logger.debug(f"Notification failed: {e}")


class LinuxStrategy(SystemStrategy):
    """System strategy implementation for Linux."""

    PLAYERS = ["paplay", "aplay"]

    def play_sound(self, path: Path) -> None:
        """Plays the file with the first available of `paplay` / `aplay`."""
        last_error: Exception | None = None
        for player in self.PLAYERS:
            try:
                subprocess.run(
                    [player, str(path)], check=True, stderr=subprocess.DEVNULL
                )
                return
            except (OSError, subprocess.CalledProcessError) as e:
                last_error = e
        raise OSError(f"No audio player could play {path}: {last_error}")

    def notify(self, title: str, message: str) -> None:
        """Sends a notification using `notify-send`."""
        try:
            subprocess.run(["notify-send", title, message], stderr=subprocess.DEVNULL)
        except FileNotFoundError:
            pass


def get_system() -> SystemStrategy:
    """Factory function to retrieve the platform-specific system strategy.

    Returns:
        SystemStrategy: An instance of MacOSStrategy, LinuxStrategy, or the base
        SystemStrategy depending on the operating system.
    """
    if sys.platform == "darwin":
        return MacOSStrategy()
    elif sys.platform.startswith("linux"):
        return LinuxStrategy()
    else:
        return SystemStrategy()


def resolve_alert_asset(executable: Path | None = None) -> Path:
    """Locates the alert sound shipped next to the executable.

    When the executable lives in a directory literally named `debug` (a
    development build), the asset is looked up one level higher.

    Args:
        executable (Path | None): The running executable. Defaults to argv[0].

    Returns:
        Path: The expected location of the alert sound.
    """
    if executable is None:
        executable = Path(sys.argv[0]).resolve()
    base = executable.parent
    if base.name == "debug":
        base = base.parent
    return base / ALERT_SOUND


class Notifier:
    """Receives failure alerts from the scheduler."""

    def alert(self, title: str, message: str) -> None:
        """Delivers a failure alert. The base implementation does nothing.

        Args:
            title (str): Short summary, e.g. "Sync Failed".
            message (str): The outcome description.
        """
        pass


class NullNotifier(Notifier):
    """Discards alerts."""

    def alert(self, title: str, message: str) -> None:
        pass


class SoundNotifier(Notifier):
    """Plays the alert sound and posts a desktop notification.

    Failures are logged and swallowed; an alert never fails an attempt.
    """

    def __init__(self, strategy: SystemStrategy | None = None, asset: Path | None = None):
        self.strategy = strategy or get_system()
        self.asset = asset or resolve_alert_asset()

    def alert(self, title: str, message: str) -> None:
        try:
            if self.asset.exists():
                self.strategy.play_sound(self.asset)
            else:
                logger.debug(f"Alert sound missing at {self.asset}")
        except Exception as e:
            logger.debug(f"Could not play alert sound: {e}")

        try:
            self.strategy.notify(title, message)
        except Exception as e:
            logger.debug(f"Could not send notification: {e}")
