from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from xcontext import system
from xcontext.system import SystemInfo, gather_system_info

if TYPE_CHECKING:
    from pytest_mock import MockerFixture


@pytest.mark.unit
def test_payload_leaves_out_unknown_fields() -> None:
    info = SystemInfo(os_name="Linux", hostname="box", shell=None)

    assert info.as_payload() == {"os_name": "Linux", "hostname": "box"}


@pytest.mark.unit
def test_gather_system_info_reads_environment(mocker: MockerFixture) -> None:
    mocker.patch.dict("os.environ", {"SHELL": "/bin/zsh", "TERM": "xterm-256color"})

    info = gather_system_info()

    assert info.shell == "/bin/zsh"
    assert info.term == "xterm-256color"
    assert info.error is None


@pytest.mark.unit
def test_gather_system_info_reports_missing_identity(mocker: MockerFixture) -> None:
    mocker.patch.object(system.platform, "uname", return_value=system.platform.uname_result("", "", "", "", ""))
    mocker.patch.object(system.socket, "gethostname", return_value="")

    info = gather_system_info()

    assert info.os_name is None
    assert info.hostname is None
    assert info.error == "Failed to retrieve OS name and hostname."
