"""Logging setup for lexbill.

The CLI prints JSON on stdout, so console logs always go to stderr.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import Config, LoggingConfig

ROOT_LOGGER = "lexbill"
CONSOLE_FORMAT = "%(levelname)-5s [%(name)-18s] %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)-5s [%(name)-18s] %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_initialized = False


def _file_handler(log_config: LoggingConfig) -> logging.Handler:
    path = Path(log_config.file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    if not log_config.rotate:
        return logging.FileHandler(path)
    return RotatingFileHandler(
        path,
        maxBytes=log_config.max_size_mb * 1024 * 1024,
        backupCount=log_config.backup_count,
    )


def setup_logging(config: Config, verbose: bool = False) -> None:
    """Attach handlers to the ``lexbill`` logger. Later calls are no-ops.

    ``verbose`` forces DEBUG regardless of ``[logging] level``.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_config = config.logging
    level = logging.DEBUG if verbose else getattr(logging, log_config.level.upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()

    handlers: list[tuple[logging.Handler, logging.Formatter]] = []
    if log_config.output in ("console", "both"):
        handlers.append((logging.StreamHandler(sys.stderr), logging.Formatter(CONSOLE_FORMAT)))
    if log_config.output in ("file", "both") and log_config.file:
        handlers.append((_file_handler(log_config), logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT)))

    for handler, formatter in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    # request lines from the HTTP client would drown the CLI output
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


def reset_logging() -> None:
    """Forget previous setup; used by the test suite."""
    global _initialized
    _initialized = False
    for handler in logging.getLogger(ROOT_LOGGER).handlers:
        handler.close()
    logging.getLogger(ROOT_LOGGER).handlers.clear()
