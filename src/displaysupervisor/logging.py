"""Helper log sink: ``[hh:mm:ss.zzz] (II) HELPER: message`` lines."""

from __future__ import annotations

import logging as py_logging
import sys
from pathlib import Path
from typing import TextIO

LOG_LEVELS = {
    "DEBUG": py_logging.DEBUG,
    "INFO": py_logging.INFO,
    "WARN": py_logging.WARNING,
    "ERROR": py_logging.ERROR,
}
LOGGER_NAME = "displaysupervisor"
DEFAULT_LOG_PATH = Path("~/.local/state/displaysupervisor/helper.log")
_FALLBACK_LOG_PATH = Path(".displaysupervisor/helper.log")
_PRIORITY_TAGS = ((py_logging.ERROR, "(EE)"), (py_logging.WARNING, "(WW)"))


class HelperFormatter(py_logging.Formatter):
    def __init__(self, prefix: str = "HELPER: ") -> None:
        super().__init__(
            "[%(asctime)s.%(msecs)03d] %(priority)s %(prefix)s%(message)s",
            datefmt="%H:%M:%S",
        )
        self.prefix = prefix

    def format(self, record: py_logging.LogRecord) -> str:
        record.priority = next(
            (tag for threshold, tag in _PRIORITY_TAGS if record.levelno >= threshold),
            "(II)",
        )
        record.prefix = self.prefix
        return super().format(record)


def resolve_level(level: str) -> int:
    """Map a level name to its numeric value; ``WARNING`` aliases ``WARN``."""
    name = level.strip().upper()
    if name == "WARNING":
        name = "WARN"
    return LOG_LEVELS.get(name, py_logging.INFO)


def _absolute(path: Path) -> Path:
    try:
        path = path.expanduser()
    except RuntimeError:
        pass
    return path if path.is_absolute() else path.resolve()


def default_log_path() -> Path:
    try:
        return _absolute(DEFAULT_LOG_PATH.expanduser())
    except RuntimeError:
        # No home directory to expand ``~`` against.
        return _absolute(Path.cwd() / _FALLBACK_LOG_PATH)


def _open_file_handler(log_file: str | Path) -> py_logging.Handler | None:
    path = _absolute(Path(log_file))
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return py_logging.FileHandler(path, encoding="utf-8")
    except OSError:
        return None


def configure_logging(
    level: str = "INFO",
    stream: TextIO | None = None,
    *,
    log_file: str | Path | None = None,
) -> py_logging.Logger:
    """(Re)configure the helper logger.

    Console output honours ``level``; the optional log file always receives
    DEBUG records. A log file that cannot be opened is skipped silently.
    """
    threshold = resolve_level(level)
    logger = py_logging.getLogger(LOGGER_NAME)
    shutdown_logging(logger)
    formatter = HelperFormatter()

    console = py_logging.StreamHandler(stream or sys.stderr)
    console.setLevel(threshold)
    console.setFormatter(formatter)
    logger.addHandler(console)

    sink = _open_file_handler(log_file) if log_file else None
    if sink is not None:
        sink.setLevel(py_logging.DEBUG)
        sink.setFormatter(formatter)
        logger.addHandler(sink)

    logger.setLevel(py_logging.DEBUG if sink is not None else threshold)
    logger.propagate = False
    return logger


def shutdown_logging(logger: py_logging.Logger | None = None) -> None:
    """Flush, close and detach every handler of the helper logger."""
    target = logger or py_logging.getLogger(LOGGER_NAME)
    for handler in list(target.handlers):
        target.removeHandler(handler)
        handler.flush()
        handler.close()
