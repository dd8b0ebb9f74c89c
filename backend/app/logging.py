"""structlog setup for the API process and the planning pipeline tasks it spawns.

Development gets the colored console renderer; every other environment emits
JSON lines. Setting LOG_FILE mirrors output into that file so a full planning
run (phases, tool calls, price lookups) can be inspected after the fact.
"""

from __future__ import annotations

import logging
import sys
from typing import IO

import structlog

from app.config import settings

_LEVELS: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class _MirroredStdout:
    """File-like sink that writes to stdout and, while it can, to a log file.

    A file that cannot be opened or written is dropped with a one-line notice
    on stderr; stdout output is never interrupted.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._mirror: IO[str] | None = None
        try:
            self._mirror = open(path, "a")  # noqa: SIM115
        except OSError as exc:
            self._notice(f"could not open log file {path!r}: {exc}")

    @staticmethod
    def _notice(message: str) -> None:
        # structlog is not configured yet when this runs from configure_logging
        print(f"WARNING: {message}; logging to stdout only.", file=sys.stderr)

    def _drop_mirror(self, action: str) -> None:
        self._mirror = None
        self._notice(f"log file {action} failed for {self._path!r}")

    def write(self, data: str) -> None:
        sys.stdout.write(data)
        if self._mirror is None:
            return
        try:
            self._mirror.write(data)
            self._mirror.flush()
        except (OSError, ValueError):
            self._drop_mirror("write")

    def flush(self) -> None:
        sys.stdout.flush()
        if self._mirror is None:
            return
        try:
            self._mirror.flush()
        except (OSError, ValueError):
            self._drop_mirror("flush")


def _renderer() -> structlog.types.Processor:
    if settings.environment == "development":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def configure_logging() -> None:
    """Configure structlog once for the whole process.

    Context variables (request_id, run_id, phase) bound by the middleware and
    the run coordinator are merged into every event.
    """
    level = _LEVELS.get(settings.log_level.upper(), logging.INFO)

    if settings.log_file:
        # PrintLoggerFactory only needs write() and flush()
        factory = structlog.PrintLoggerFactory(file=_MirroredStdout(settings.log_file))  # type: ignore[arg-type]
    else:
        factory = structlog.PrintLoggerFactory()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _renderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=factory,
        cache_logger_on_first_use=True,
    )
