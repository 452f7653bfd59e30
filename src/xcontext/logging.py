from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from pathlib import Path

LOGGER_NAME = "xcontext"

_LOGGING_CONFIGURED = False

_PROCESSORS: list[Any] = [
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.add_log_level,
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.JSONRenderer(),
]


def verbosity_to_level(verbosity: int, *, quiet: bool = False) -> int:
    """Map CLI style verbosity to a stdlib logging level.

    Args:
        verbosity (int): number of `-v` flags (0 means default).
        quiet (bool): whether only warnings and errors should be emitted.

    Returns:
        int: the logging level to filter on.
    """
    if quiet:
        return logging.WARNING
    if verbosity <= 0:
        return logging.INFO
    return logging.DEBUG


def setup_logging(filename: str | Path | None = None) -> logging.Logger:
    """Set up the stdlib handler that structured xcontext logs are written to.

    Args:
        filename: Optional path to a log file. If None, logs are written to stderr.

    Returns:
        The stdlib logger backing every xcontext structlog logger.
    """
    global _LOGGING_CONFIGURED  # noqa: PLW0603
    stdlib_logger = logging.getLogger(LOGGER_NAME)
    if not _LOGGING_CONFIGURED or filename:
        for handler in list(stdlib_logger.handlers):
            stdlib_logger.removeHandler(handler)
        handler: logging.Handler
        if filename:
            handler = logging.FileHandler(str(filename), encoding="utf-8")
        else:
            handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(message)s"))
        stdlib_logger.addHandler(handler)
        stdlib_logger.setLevel(logging.DEBUG)
        stdlib_logger.propagate = False
        _LOGGING_CONFIGURED = True
    return stdlib_logger


def get_logger(level: int = logging.INFO, **initial_values: Any) -> structlog.typing.FilteringBoundLogger:  # noqa: ANN401
    """Build a structlog logger filtering at `level`.

    The level is carried by the returned logger itself rather than by global
    structlog configuration, so two runs with different verbosity can coexist.

    Args:
        level (int): minimum stdlib level that is emitted.
        **initial_values: key/values bound to every event.

    Returns:
        structlog.typing.FilteringBoundLogger: the bound logger.
    """
    return structlog.wrap_logger(
        setup_logging(),
        processors=_PROCESSORS,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        **initial_values,
    )


@dataclass(frozen=True)
class RunContext:
    """Explicit per-run context handed to every pipeline stage.

    Attributes:
        verbosity: number of `-v` flags requested by the caller.
        quiet: suppress informational output.
        max_workers: upper bound on parallel workers for traversal and reads.
        log: the structured logger, already filtered for the verbosity.
    """

    verbosity: int = 0
    quiet: bool = False
    max_workers: int | None = None
    log: structlog.typing.FilteringBoundLogger = field(default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.log is None:
            object.__setattr__(
                self,
                "log",
                get_logger(verbosity_to_level(self.verbosity, quiet=self.quiet)),
            )
