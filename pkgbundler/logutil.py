"""Logging configuration and progress reporting for long waits."""

import datetime
import logging
import threading
import time

# ----------------------------------------------------------------------------
# Progress indicator


class ProgressReporter:
    """Report a long-running operation through logging while it runs.

    Pipelines run on worker threads, so progress goes through the logging
    handlers instead of being drawn on the terminal.

    Example:
        with ProgressReporter("Waiting for notarization"):
            run_command(["xcrun", "notarytool", ...])
    """

    def __init__(
        self,
        message: str = "",
        interval: float = 30.0,
        log: logging.Logger | None = None,
    ):
        self.message = message
        self.interval = interval
        self.log = log or logging.getLogger(self.__class__.__name__)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._started = 0.0

    def _report(self) -> None:
        while not self._stop_event.wait(self.interval):
            elapsed = time.monotonic() - self._started
            self.log.info("%s (%ds elapsed)", self.message, elapsed)

    def start(self) -> None:
        """Start reporting."""
        self._started = time.monotonic()
        self._stop_event.clear()
        self.log.info("%s...", self.message)
        self._thread = threading.Thread(
            target=self._report,
            name=f"{threading.current_thread().name}-progress",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop reporting."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=1.0)
        self.log.info(
            "%s done after %ds", self.message, time.monotonic() - self._started
        )

    def __enter__(self) -> "ProgressReporter":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        cyan = "\x1b[36;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(threadName)s:%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(threadName)s:%(name)s.%(funcName)s"
            " - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS[record.levelno]
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = True, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )
