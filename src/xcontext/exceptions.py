from __future__ import annotations

import errno
from dataclasses import dataclass
from enum import StrEnum, auto
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


@dataclass(eq=False)
class XContextError(Exception):
    """Base exception for errors in the xcontext package."""

    message: str = "xcontext failed."

    def __str__(self) -> str:
        return self.message


@dataclass(eq=False)
class ConfigError(XContextError):
    """Raised when the effective configuration cannot be resolved."""


@dataclass(eq=False)
class ConfigParseError(ConfigError):
    """Raised when the configuration file is present but malformed or unreadable."""

    path: Path | None = None


@dataclass(eq=False)
class InvalidConfigValueError(ConfigError):
    """Raised for out-of-domain configuration values (unknown keys, bad sizes, bad globs)."""

    key: str = ""


@dataclass(eq=False)
class FilterError(XContextError):
    """Raised when filter rules cannot be compiled."""


@dataclass(eq=False)
class InvalidPatternError(FilterError):
    """Raised when a glob pattern is not valid gitignore syntax."""

    pattern: str = ""


@dataclass(eq=False)
class WalkError(XContextError):
    """Raised when the project tree cannot be traversed at all."""


@dataclass(eq=False)
class RootUnreadableError(WalkError):
    """Raised when the project root itself cannot be listed."""

    root: Path | None = None


@dataclass(eq=False)
class RuleError(XContextError):
    """Raised for explicit rule misconfiguration."""


@dataclass(eq=False)
class UnknownStaticRuleError(RuleError):
    """Raised when `include_static` names a rule set that is not packaged."""

    name: str = ""


class WriteFailureReason(StrEnum):
    """Why a write to disk failed."""

    DISK_FULL = auto()
    PERMISSION_DENIED = auto()
    IO_ERROR = auto()

    @classmethod
    def from_os_error(cls, exc: OSError) -> WriteFailureReason:
        """Classify an OSError raised while writing output.

        Args:
            exc (OSError): the error raised by the failing write or rename.

        Returns:
            WriteFailureReason: the matching failure reason.
        """
        if exc.errno in {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}:
            return cls.DISK_FULL
        if isinstance(exc, PermissionError) or exc.errno in {errno.EACCES, errno.EPERM, errno.EROFS}:
            return cls.PERMISSION_DENIED
        return cls.IO_ERROR


@dataclass(eq=False)
class ChunkWriteError(XContextError):
    """Raised when chunk files cannot be written; prior chunks on disk are left untouched."""

    path: Path | None = None
    reason: WriteFailureReason = WriteFailureReason.IO_ERROR


@dataclass(eq=False)
class OutputWriteError(XContextError):
    """Raised when the context document cannot be written to its sink."""

    path: Path | None = None
    reason: WriteFailureReason = WriteFailureReason.IO_ERROR
