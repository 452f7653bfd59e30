from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from xcontext import __version__, cli

if TYPE_CHECKING:
    from pytest_mock import MockerFixture


@pytest.mark.unit
def test_parse_args_defaults_to_generate() -> None:
    settings = cli.parse_args(["--format", "yaml", "--no-use-gitignore", "-i", "src/", "-i", "docs/"])

    assert settings.command == "generate"
    assert settings.format == "yaml"
    assert settings.use_gitignore is False
    assert settings.include == ["src/", "docs/"]
    assert settings.minify is None


@pytest.mark.unit
def test_parse_args_watch_with_delay(tmp_path: Path) -> None:
    settings = cli.parse_args(["watch", str(tmp_path), "--delay", "500ms", "--source-exclude", "*.log"])

    assert settings.command == "watch"
    assert settings.project_root == tmp_path
    assert settings.delay == "500ms"
    assert settings.overrides() == {"delay": "500ms", "source.exclude": ["*.log"]}


@pytest.mark.unit
def test_parse_args_finds_subcommand_after_options(tmp_path: Path) -> None:
    watch = cli.parse_args(["-v", "-c", "ci.toml", "watch", str(tmp_path)])
    generate = cli.parse_args(["-o", "watch", str(tmp_path)])

    assert watch.command == "watch"
    assert watch.verbose == 1
    assert watch.config_file == "ci.toml"
    assert watch.project_root == tmp_path
    assert generate.command == "generate"
    assert generate.output_file == Path("watch")
    assert generate.project_root == tmp_path


@pytest.mark.unit
def test_parse_args_version_flag(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc_info:
        cli.parse_args(["--version"])

    assert exc_info.value.code == 0
    assert __version__ in capsys.readouterr().out


@pytest.mark.unit
def test_main_writes_document_and_reports(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / "app.py").write_text("print('hi')\n", encoding="utf-8")

    exit_code = cli.main([str(tmp_path), "--project-name", "demo", "--set", "output.include_system_info=false"])

    assert exit_code == 0
    output = tmp_path / ".xtools" / "xcontext" / "cache" / "demo.json"
    payload = json.loads(output.read_text(encoding="utf-8"))
    assert "system_info" not in payload
    assert payload["source"]["files"] == [{"path": "app.py", "content": "print('hi')\n"}]
    assert "format=json" in capsys.readouterr().out


@pytest.mark.unit
def test_main_returns_error_code_on_invalid_config(tmp_path: Path) -> None:
    config = tmp_path / ".xtools" / "xcontext" / "xcontext.toml"
    config.parent.mkdir(parents=True)
    config.write_text("[general]\nmax_file_size = \"huge\"\n", encoding="utf-8")

    assert cli.main([str(tmp_path)]) == 1


@pytest.mark.unit
def test_main_watch_builds_session(tmp_path: Path, mocker: MockerFixture) -> None:
    watch_project = mocker.patch.object(cli, "watch_project", return_value=0)

    assert cli.main(["watch", str(tmp_path), "--delay", "1s", "-q"]) == 0

    session = watch_project.call_args.args[0]
    assert session.config.watch.delay == pytest.approx(1.0)
    assert session.overrides == {"delay": "1s"}
