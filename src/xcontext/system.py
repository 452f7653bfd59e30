from __future__ import annotations

import os
import platform
import socket

from pydantic import BaseModel, ConfigDict


class SystemInfo(BaseModel):
    """Description of the machine the document was generated on."""

    model_config = ConfigDict(frozen=True)

    os_name: str | None = None
    os_version: str | None = None
    kernel_version: str | None = None
    hostname: str | None = None
    shell: str | None = None
    term: str | None = None
    error: str | None = None

    def as_payload(self) -> dict[str, str]:
        """Fields that are known, in declaration order."""
        return {key: value for key, value in self.model_dump().items() if value is not None}


def _os_version(system: str, fallback: str) -> str | None:
    match system:
        case "Darwin":
            return platform.mac_ver()[0] or None
        case "Linux":
            try:
                return platform.freedesktop_os_release().get("PRETTY_NAME")
            except OSError:
                return None
        case _:
            return fallback or None


def gather_system_info() -> SystemInfo:
    """Collect OS, host and terminal details; unknown values are left out."""
    uname = platform.uname()
    os_name = uname.system or None
    hostname = uname.node or socket.gethostname() or None
    return SystemInfo(
        os_name=os_name,
        os_version=_os_version(uname.system, uname.version),
        kernel_version=uname.release or None,
        hostname=hostname,
        shell=os.environ.get("SHELL") or os.environ.get("COMSPEC"),
        term=os.environ.get("TERM"),
        error=None if os_name or hostname else "Failed to retrieve OS name and hostname.",
    )
