"""
Process-wide logging for the authorization server.

`configure_logging_from_settings` is called once by the server entry point;
library code only ever calls `get_logger(__name__)`. A TRACE level (5) sits
below DEBUG for the per-hop flow traces enabled with ``LOG_LEVEL=trace``.
"""

import logging
from logging.handlers import RotatingFileHandler
from typing import Optional, Union


TRACE = 5
logging.addLevelName(TRACE, "TRACE")


_LEVEL_MAP = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "TRACE": TRACE,
}


def _to_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    return _LEVEL_MAP.get(level.upper(), logging.INFO)


def configure_logging(
    *,
    level: Union[int, str] = "INFO",
    console_level: Optional[Union[int, str]] = None,
    file_level: Optional[Union[int, str]] = None,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    fmt: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt: str = "%Y-%m-%d %H:%M:%S",
    clear_existing: bool = True,
) -> None:
    """
    Installs a console handler on the root logger, plus a rotating file
    handler when `log_file` is set. Per-handler levels fall back to `level`.
    Existing root handlers are dropped unless `clear_existing` is False.
    """
    root = logging.getLogger()
    root.setLevel(_to_level(level))

    if clear_existing:
        for h in list(root.handlers):
            root.removeHandler(h)

    formatter = logging.Formatter(fmt=fmt, datefmt=datefmt)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(_to_level(console_level or level))
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        file_handler = RotatingFileHandler(
            filename=log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(_to_level(file_level or level))
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def configure_logging_from_settings(settings) -> None:
    """LOG_LEVEL / LOG_FILE from Settings, 5 MB files, 3 backups."""
    configure_logging(
        level=settings.LOG_LEVEL,
        console_level=settings.LOG_LEVEL,
        log_file=settings.LOG_FILE,
        max_bytes=5 * 1024 * 1024,
        backup_count=3,
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)
