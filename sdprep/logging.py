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

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "SDPREP_LOG_DIR",
        Path.home() / ".local" / "state" / "sdprep" / "logs",
    )
)


def _should_log_poll(record) -> bool:
    """Filter device-node polling chatter - only show in TRACE mode."""
    tags = record["extra"].get("tags", [])
    if "poll" in tags:
        return record["level"].no <= logger.level("TRACE").no or (
            record["level"].no >= logger.level("WARNING").no
        )
    return True


def _should_log_ws(record) -> bool:
    """Filter routine WebSocket connect/disconnect logs."""
    message = record["message"].lower()
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "ws" in tags and ("connected" in message or "disconnected" in message):
        return record["level"].no >= logger.level("DEBUG").no

    return True


def _combined_filter(record) -> bool:
    return _should_log_poll(record) and _should_log_ws(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/sdprep/logs)
        file_logging: Set to False to only log to the console
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "<blue>{extra[job_id]: <15}</blue> | "
            "{message}"
        ),
    )

    if not file_logging:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logger.warning("File logging disabled, cannot create {}: {}", log_dir, error)
        return logger

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
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
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["format", "storage"])
        source: Source component (e.g., "format", "inventory", "web")
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def new_job_id(operation: str = "format") -> str:
    return f"{operation}-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking an operation with automatic timing.

    Logs operation start, completion, and failure with duration tracking.

    Example:
        with operation_context("refresh", device_count=3) as log:
            log.debug("Reading inventory")
    """
    job_id = new_job_id(operation)

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])
        log.debug(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.bind(duration_seconds=round(duration, 2)).debug(
                "{} completed", operation.capitalize()
            )
        except Exception as e:
            duration = time.time() - start_time
            log.bind(
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            ).error("{} failed: {}", operation.capitalize(), e)
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_format(job_id: str | None = None) -> Logger:
        """Logger for format jobs."""
        if job_id is None:
            job_id = new_job_id()
        return logger.bind(job_id=job_id, source="format", tags=["format", "storage"])

    @staticmethod
    def for_inventory() -> Logger:
        """Logger for block device inventory and classification."""
        return logger.bind(source="inventory", tags=["inventory", "storage"])

    @staticmethod
    def for_guard() -> Logger:
        """Logger for root device resolution."""
        return logger.bind(source="guard", tags=["guard", "safety"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for unmount operations."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_web(connection_id: str | None = None) -> Logger:
        """Logger for web server operations."""
        if connection_id is None:
            connection_id = "-"
        return logger.bind(source="web", tags=["web", "ws"], connection_id=connection_id)

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return logger.bind(source="system", tags=["system"])
