"""Loguru configuration and logging helpers for znx.

The console stays quiet unless ``--debug``/``--trace`` is given: command
output and ``znx: error:`` lines are the user interface, logs are for
post-mortems. File sinks live under ``$ZNX_LOG_DIR`` (default
``~/.local/state/znx/logs``):

- operations.log: INFO+, one line per transition start/finish
- debug.log: DEBUG+ (TRACE with --trace), only with --debug/--trace
- structured.jsonl: INFO+ as serialized JSON records

Every record carries ``source`` (component), ``job_id`` (one per
transition, ``-`` outside of one) and ``tags`` in its extra dict.
"""

from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator

from loguru import logger

if TYPE_CHECKING:
    from loguru import Logger

DEFAULT_LOG_DIR = Path(
    os.environ.get("ZNX_LOG_DIR", Path.home() / ".local" / "state" / "znx" / "logs")
)

_CONTEXT_COLUMNS = "{extra[source]: <10} | {extra[job_id]: <17} | {message}"

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[source]: <10}</cyan> | <blue>{extra[job_id]: <17}</blue> | {message}"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | " + _CONTEXT_COLUMNS

DEFAULT_EXTRA = {"job_id": "-", "tags": [], "source": "znx"}


def _should_log_command_output(record) -> bool:
    """Raw tool output (zsync, mkfs) only reaches the console in TRACE mode."""
    if "output" not in record["extra"].get("tags", []):
        return True
    level_no = record["level"].no
    return level_no <= logger.level("TRACE").no or level_no >= logger.level("WARNING").no


def _file_sinks(log_dir: Path, verbose_level: str | None) -> list[tuple[Path, dict]]:
    common = {"compression": "zip", "backtrace": False, "diagnose": False}
    sinks = [
        (
            log_dir / "operations.log",
            dict(common, level="INFO", rotation="5 MB", retention="7 days", format=FILE_FORMAT),
        ),
        (
            log_dir / "structured.jsonl",
            dict(
                common,
                level="INFO",
                rotation="10 MB",
                retention="7 days",
                serialize=True,
                format="{message}",
            ),
        ),
    ]
    if verbose_level is not None:
        sinks.append(
            (
                log_dir / "debug.log",
                dict(
                    common,
                    level=verbose_level,
                    rotation="10 MB",
                    retention="3 days",
                    backtrace=True,
                    diagnose=True,
                    format=FILE_FORMAT + " | {extra[tags]}",
                ),
            )
        )
    return sinks


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """Install the console sink and, when the log directory is writable, the file sinks.

    Args:
        debug: DEBUG on the console plus debug.log
        trace: TRACE on the console plus debug.log, including raw tool output
        log_dir: Overrides ``DEFAULT_LOG_DIR``
    """
    logger.remove()
    logger.configure(extra=dict(DEFAULT_EXTRA))

    verbose_level = "TRACE" if trace else "DEBUG" if debug else None
    logger.add(
        sys.stderr,
        level=verbose_level or "WARNING",
        format=CONSOLE_FORMAT,
        filter=_should_log_command_output,
        colorize=True,
        backtrace=False,
        diagnose=False,
    )

    log_dir = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        # Live media often has a read-only home; keep going with console only.
        logger.warning(f"File logging disabled, cannot create {log_dir}: {error}")
        return logger

    for path, options in _file_sinks(log_dir, verbose_level):
        logger.add(path, **options)
    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """Return the global logger bound with whichever context values are given."""
    context = {"job_id": job_id, "tags": list(tags) if tags is not None else None, "source": source}
    return logger.bind(**{key: value for key, value in context.items() if value is not None})


@contextmanager
def operation_context(operation: str, **details) -> Iterator[Logger]:
    """
    Log one transition (``deploy``, ``update``, ``init`` ...) with a job id and timing.

    Records emitted anywhere inside the block, including from other modules,
    carry the job id through ``logger.contextualize``.

    Example:
        with operation_context("deploy", image="nitrux/rolling") as log:
            log.debug("Copying artifact")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"
    title = operation.capitalize()
    started = time.monotonic()

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        op_log = get_logger(job_id=job_id, tags=[operation], source=operation)
        op_log.info("{} started", title)
        try:
            yield op_log
        except Exception as e:
            op_log.bind(
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(time.monotonic() - started, 2),
            ).error("{} failed", title)
            raise
        op_log.bind(duration_seconds=round(time.monotonic() - started, 2)).success(
            "{} completed", title
        )


class LoggerFactory:
    """Component loggers: each binds ``source`` and a fixed tag set."""

    @staticmethod
    def _component(source: str, *tags: str, job_id: str | None = None) -> Logger:
        return get_logger(job_id=job_id, tags=tags, source=source)

    @classmethod
    def for_device(cls) -> Logger:
        """Block device discovery, partitioning and mounting."""
        return cls._component("device", "device", "storage")

    @classmethod
    def for_lifecycle(cls, job_id: str | None = None) -> Logger:
        """Image lifecycle transitions."""
        return cls._component("lifecycle", "lifecycle", "image", job_id=job_id)

    @classmethod
    def for_transfer(cls) -> Logger:
        """Downloads and delta-sync runs."""
        return cls._component("transfer", "transfer", "network")

    @classmethod
    def for_system(cls) -> Logger:
        """Startup, configuration and signals."""
        return cls._component("system", "system")


class ThrottledLogger:
    """Emit at most one record per key every ``interval_seconds`` (download progress)."""

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self._last_emitted: dict[str, float] = {}

    def info(self, key: str, message: str, **kwargs) -> None:
        now = time.monotonic()
        last = self._last_emitted.get(key)
        if last is not None and now - last < self.interval:
            return
        self._last_emitted[key] = now
        self.log.bind(**kwargs).info("{}", message)


class EventLogger:
    """Structured records with a fixed ``event_type`` for analysis of structured.jsonl."""

    @staticmethod
    def log_transition(
        log: Logger, image: str, from_state: str, to_state: str, **extra
    ) -> None:
        log.bind(
            event_type="image_transition",
            image=image,
            from_state=from_state,
            to_state=to_state,
            **extra,
        ).info("Image {}: {} -> {}", image, from_state, to_state)

    @staticmethod
    def log_command(
        log: Logger, command: list[str], returncode: int | None, duration: float, **extra
    ) -> None:
        log.bind(
            event_type="command",
            command=command,
            returncode=returncode,
            duration_seconds=round(duration, 2),
            **extra,
        ).debug("Command finished: {} (rc={})", " ".join(command), returncode)

    @staticmethod
    def log_download_progress(
        log: ThrottledLogger, url: str, bytes_done: int, total_bytes: int | None
    ) -> None:
        """Download progress, throttled per URL."""
        if not total_bytes:
            log.info(url, f"Downloaded {bytes_done} bytes", event_type="download_progress")
            return
        percent = bytes_done / total_bytes * 100
        log.info(
            url,
            f"Downloaded {bytes_done} of {total_bytes} bytes ({percent:.1f}%)",
            event_type="download_progress",
            percent=round(percent, 2),
        )
