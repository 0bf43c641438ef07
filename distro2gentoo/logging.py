from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

# Kept under /root so the log survives the root swap.
DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "DISTRO2GENTOO_LOG_DIR",
        Path("/root") / ".local" / "state" / "distro2gentoo" / "logs",
    )
)


def _should_log_command_output(record) -> bool:
    """Keep raw stdout/stderr of external tools out of the console below TRACE."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "output" in tags:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _console_filter(record) -> bool:
    return _should_log_command_output(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup logging sinks for a migration run.

    Logging Tiers:
    - CRITICAL/ERROR: precondition, integrity and bootloader failures
    - WARNING: translation warnings, tolerated I/O failures, point of no return
    - SUCCESS/INFO: stage progress
    - DEBUG: every external command line
    - TRACE: external command output

    Log Files:
    - operations.log: INFO+ events
    - debug.log: DEBUG+ events when --debug or --trace is enabled
    - structured.jsonl: structured JSON records for later analysis

    Args:
        debug: Enable DEBUG level logging on the console
        trace: Enable TRACE level logging (command output)
        log_dir: Custom log directory
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "d2g"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_console_filter,
        colorize=True,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "<level>{message}</level>"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="30 days",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <18} | "
            "{message}"
        ),
    )

    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="20 MB",
            retention="30 days",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <18} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="30 days",
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking a migration run
        tags: Tags for filtering (e.g., ["storage", "output"])
        source: Source component (e.g., "storage", "boot")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking a pipeline stage with automatic timing.

    Logs stage start, completion and failure with the elapsed time.

    Args:
        operation: Stage name (e.g., "unpack", "bootloader", "swap")
        **details: Stage-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("unpack", tarball="/stage3.tar.xz") as log:
            log.debug("Extracting")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating component loggers with automatic context.

    Each factory method returns a logger pre-configured with the
    component's source name and tags.
    """

    @staticmethod
    def for_storage() -> Logger:
        """Logger for mount table and block-device inspection."""
        return logger.bind(source="storage", tags=["storage"])

    @staticmethod
    def for_staging() -> Logger:
        """Logger for the staged root lifecycle."""
        return logger.bind(source="staging", tags=["storage", "staging"])

    @staticmethod
    def for_boot() -> Logger:
        """Logger for kernel command-line translation."""
        return logger.bind(source="boot", tags=["boot", "cmdline"])

    @staticmethod
    def for_bootloader() -> Logger:
        """Logger for grub installation."""
        return logger.bind(source="bootloader", tags=["boot", "grub"])

    @staticmethod
    def for_network() -> Logger:
        """Logger for network topology translation."""
        return logger.bind(source="network", tags=["network"])

    @staticmethod
    def for_swap() -> Logger:
        """Logger for the destructive root swap."""
        return logger.bind(source="swap", tags=["storage", "swap"])

    @staticmethod
    def for_release(job_id: str | None = None) -> Logger:
        """Logger for mirror selection, downloads and verification."""
        if job_id is None:
            job_id = f"release-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="release", tags=["release"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for host and target system configuration."""
        return logger.bind(source="system", tags=["system"])

    @staticmethod
    def for_command_output() -> Logger:
        """Logger for raw output of external commands."""
        return logger.bind(source="command", tags=["command", "output"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for download progress, which would otherwise log every chunk.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        """Log at DEBUG level, throttled by key."""
        self._throttled_log("DEBUG", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        """Log at INFO level, throttled by key."""
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now
