import asyncio
import logging
import math
import sys
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable

from rich.console import Console

from . import ops
from .config import Config
from .constants import APP_NAME, LOG_FILE
from .errors import AttemptInFlightError, ConfigError, RepositoryOpenError
from .git_wrapper import GitRepo
from .ops import CancelToken, Outcome, OutcomeKind
from .system import Notifier, NullNotifier, SoundNotifier

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)

err_console = Console(stderr=True)

Attempt = Callable[[CancelToken], Outcome]


class SyncScheduler:
    """Runs attempts on a fixed interval, one at a time, each under a deadline.

    The first attempt runs immediately; later ones start on the boundaries
    `start + k * interval`. An attempt runs on a dedicated worker thread and
    is raced against a deadline of half the interval. When the deadline wins,
    the attempt is reported as timed out, its cancel token is set so it stops
    at its next phase boundary, and its eventual result is discarded.

    Attributes:
        interval (float): Seconds between attempt starts.
        deadline (float): Seconds an attempt may run before it is abandoned.
    """

    def __init__(
        self,
        interval: float,
        attempt: Attempt,
        notifier: Notifier | None = None,
        on_outcome: Callable[[Outcome], None] | None = None,
    ):
        if interval <= 0:
            raise ValueError(f"Interval must be positive, got {interval}")
        self.interval = interval
        self.deadline = interval / 2
        self.attempt = attempt
        self.notifier = notifier or NullNotifier()
        self.on_outcome = on_outcome
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=APP_NAME)
        self._worker: Future | None = None

    async def handled_run(self) -> Outcome:
        """Runs a single attempt under the deadline and reports its outcome.

        Never raises; every failure becomes an Outcome.
        """
        if self._worker is not None and not self._worker.done():
            outcome = Outcome.error(
                AttemptInFlightError("Previous attempt is still running")
            )
        else:
            token = CancelToken()
            self._worker = self._executor.submit(self.attempt, token)
            try:
                outcome = await asyncio.wait_for(
                    asyncio.wrap_future(self._worker), timeout=self.deadline
                )
            except asyncio.TimeoutError:
                token.cancel()
                outcome = Outcome.timed_out()
            except Exception as e:
                logger.exception("LOOP ERROR")
                outcome = Outcome.error(e)

        self._report(outcome)
        return outcome

    def _report(self, outcome: Outcome) -> None:
        if outcome.kind is OutcomeKind.SUCCESS:
            logger.info("SUCCESS: synchronized.")
        elif outcome.kind is OutcomeKind.NO_CHANGES:
            logger.info("SKIPPED: no changes.")
        elif outcome.kind is OutcomeKind.TIMED_OUT:
            logger.warning(f"TIMEOUT: attempt exceeded {self.deadline:g}s. Abandoned.")
        elif outcome.kind is OutcomeKind.CONFLICTS_DETECTED:
            logger.error(
                f"CONFLICT: {len(outcome.paths)} path(s) need manual resolution: "
                f"{', '.join(outcome.paths)}"
            )
        else:
            logger.error(f"ERROR: {outcome.describe()}")

        if outcome.is_failure:
            try:
                self.notifier.alert("Sync Failed", outcome.describe())
            except Exception as e:
                logger.warning(f"Alert failed: {e}")

        if self.on_outcome:
            self.on_outcome(outcome)

    async def run(self, ticks: int | None = None) -> None:
        """Runs attempts until `ticks` have completed, or forever when None."""
        loop = asyncio.get_running_loop()
        start = loop.time()
        completed = 0

        while True:
            await self.handled_run()
            completed += 1
            if ticks is not None and completed >= ticks:
                return

            # Skip boundaries already passed; never compress the schedule.
            elapsed = loop.time() - start
            next_tick = start + (math.floor(elapsed / self.interval) + 1) * self.interval
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def setup_logging(interactive: bool, max_log_size: int = 5 * 1024 * 1024) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr
            and to a rotating log file.
        max_log_size (int): Bytes before the log file rotates.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    # Always log to a stream (stderr is captured by systemd).
    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        try:
            LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                LOG_FILE, maxBytes=max_log_size, backupCount=5
            )
        except OSError as e:
            logger.warning(f"Could not open log file {LOG_FILE}: {e}")
            return
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def main(
    config_path: Path | None = None, once: bool = False, interactive: bool = False
) -> int:
    """The daemon entry point.

    Loads the configuration, opens the repository, and runs the scheduler
    until interrupted (or for a single attempt when `once` is set).

    Args:
        config_path (Path | None): Explicit config file; searched on PATH if None.
        once (bool): Run one attempt and return.
        interactive (bool): Log to stdout instead of stderr and the log file.

    Returns:
        int: The process exit status.
    """
    try:
        config = Config.load(config_path)
    except ConfigError as e:
        err_console.print(f"[bold red]FATAL:[/bold red] {e}")
        return 1

    setup_logging(interactive, config.max_log_size)

    try:
        repo = GitRepo(config.repo_path)
    except RepositoryOpenError as e:
        logger.critical(f"FATAL: Error opening repository: {e}")
        return 1

    outcomes: list[Outcome] = []
    scheduler = SyncScheduler(
        config.interval_seconds,
        partial(ops.run_attempt, repo, config.branch_name, config.remote_name),
        notifier=SoundNotifier() if config.alert else NullNotifier(),
        on_outcome=outcomes.append if once else None,
    )

    logger.info(
        f"STARTED: {repo.path} ({config.branch_name} <-> {config.remote_name}) "
        f"every {config.interval_minutes} min."
    )
    try:
        asyncio.run(scheduler.run(ticks=1 if once else None))
    except KeyboardInterrupt:
        logger.info("STOPPED: interrupted.")
    finally:
        scheduler.shutdown()

    if once and outcomes and outcomes[-1].is_failure:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
