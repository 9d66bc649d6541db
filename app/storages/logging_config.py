"""Logging setup for the storage tooling.

Library modules only ever call `logging.getLogger(__name__)`; handlers are
installed once, by the entry point, through `configure_logging`:

- a TRACE level below DEBUG for per-chunk transfer progress,
- console output,
- optionally, size-rotated files in a log directory, with errors duplicated
  into their own file.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


TRACE_LEVEL_NUM = 5

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# SDK loggers that flood DEBUG with request dumps.
VENDOR_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3", "google", "paramiko")

_CONFIGURED_FLAG = "_storages_logging_configured"


def _install_trace_level() -> None:
    """Register TRACE and add a `Logger.trace` method."""

    if logging.getLevelName(TRACE_LEVEL_NUM) != "TRACE":
        logging.addLevelName(TRACE_LEVEL_NUM, "TRACE")

    if hasattr(logging.Logger, "trace"):
        return

    def trace(self: logging.Logger, message: str, *args, **kwargs) -> None:
        if self.isEnabledFor(TRACE_LEVEL_NUM):
            self._log(TRACE_LEVEL_NUM, message, args, **kwargs)

    logging.Logger.trace = trace  # type: ignore[attr-defined]


_install_trace_level()


def resolve_level(log_level: str, *, debug: bool = False) -> int:
    """Translate a level name (including TRACE) into its numeric value.

    Args:
        log_level: Level name; empty selects INFO, or DEBUG when `debug` is set.
        debug: Fallback to DEBUG when no level is given.

    Returns:
        int: Numeric log level.

    Raises:
        ValueError: When the level name is unknown.
    """

    name = str(log_level or "").strip().upper() or ("DEBUG" if debug else "INFO")
    if name == "TRACE":
        return TRACE_LEVEL_NUM

    level = logging.getLevelName(name)
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {log_level}")
    return level


def _rotating_handler(
    path: Path,
    level: int,
    formatter: logging.Formatter,
    *,
    max_bytes: int,
    backup_count: int,
) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        filename=str(path),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    *,
    log_dir: Optional[str] = None,
    log_level: str = "INFO",
    debug: bool = False,
    log_filename: str = "storage-tool.log",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Install root handlers. Later calls are no-ops.

    Args:
        log_dir: Directory for log files; console only when None.
        log_level: Root level name (e.g. INFO, DEBUG, TRACE).
        debug: Use DEBUG when `log_level` is empty.
        log_filename: Main log file name; the error file is derived from it
            ("storage-tool.log" -> "storage-tool.error.log").
        max_bytes: Rotation threshold per file.
        backup_count: Rotated files kept per log.

    Raises:
        ValueError: When `log_level` is not a known level.
    """

    root = logging.getLogger()
    if getattr(root, _CONFIGURED_FLAG, False):
        return

    level = resolve_level(log_level, debug=debug)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    root.setLevel(level)

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_dir:
        directory = Path(log_dir)
        main_file = Path(log_filename)
        error_file = f"{main_file.stem}.error{main_file.suffix or '.log'}"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            root.addHandler(
                _rotating_handler(
                    directory / main_file, level, formatter, max_bytes=max_bytes, backup_count=backup_count
                )
            )
            root.addHandler(
                _rotating_handler(
                    directory / error_file, logging.ERROR, formatter, max_bytes=max_bytes, backup_count=backup_count
                )
            )
        except OSError:
            logging.getLogger(__name__).warning(
                "Failed to configure file logging under %s; continuing with console-only logging",
                log_dir,
            )

    for name in VENDOR_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))

    logging.captureWarnings(True)
    setattr(root, _CONFIGURED_FLAG, True)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return the named logger, or this module's logger."""

    return logging.getLogger(name or __name__)
