from __future__ import annotations

from pathlib import Path

import pytest

from xcontext.config import (
    Config,
    IgnoreSection,
    IgnoreSetting,
    OutputFormat,
    default_layer,
    load_config_file,
    merge_layers,
    parse_byte_size,
    parse_duration,
    resolve_config,
    split_overrides,
)
from xcontext.exceptions import ConfigParseError, InvalidConfigValueError


@pytest.mark.unit
@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("5MB", 5_000_000),
        ("500kb", 500_000),
        ("1KiB", 1024),
        ("2 MiB", 2 * 1024 * 1024),
        ("1.5k", 1500),
        ("42", 42),
        (1024, 1024),
    ],
)
def test_parse_byte_size_accepts_decimal_and_binary_units(value: str | int, expected: int) -> None:
    assert parse_byte_size(value) == expected


@pytest.mark.unit
@pytest.mark.parametrize("value", ["", "abc", "5XB", "0", "0MB", -1, True])
def test_parse_byte_size_rejects_invalid_values(value: str | int | bool) -> None:  # noqa: FBT001
    with pytest.raises(ValueError, match="yte size"):
        parse_byte_size(value)


@pytest.mark.unit
def test_parse_duration_units() -> None:
    assert parse_duration("300ms") == pytest.approx(0.3)
    assert parse_duration("2s") == pytest.approx(2.0)
    assert parse_duration("1m") == pytest.approx(60.0)
    assert parse_duration(5) == pytest.approx(5.0)

    with pytest.raises(ValueError, match="Invalid duration"):
        parse_duration("soon")


@pytest.mark.unit
def test_default_config_values(tmp_path: Path) -> None:
    config = Config(project_root=tmp_path)

    assert config.output.format is OutputFormat.JSON
    assert config.output.minify is True
    assert config.general.use_gitignore is True
    assert config.general.max_file_size == 10_000_000
    assert config.prompts.enabled is False
    assert config.watch.delay == pytest.approx(0.3)
    assert config.docs.include == ["*.md", "*.org", "*.rst", "*.adoc", "docs/"]
    assert config.save_dir == tmp_path / ".xtools" / "xcontext" / "cache"
    assert config.project_name == tmp_path.name
    assert config.filename_base == tmp_path.name
    assert config.chunk_mode is False


@pytest.mark.unit
def test_merge_layers_merges_tables_and_replaces_lists() -> None:
    low = {"general": {"use_gitignore": True, "project_name": "low"}, "tree": {"exclude": ["a", "b"]}}
    high = {"general": {"use_gitignore": False}, "tree": {"exclude": ["c"]}}

    merged = merge_layers(low, None, high)

    assert merged == {
        "general": {"use_gitignore": False, "project_name": "low"},
        "tree": {"exclude": ["c"]},
    }
    assert low["general"]["use_gitignore"] is True


@pytest.mark.unit
def test_split_overrides_separates_cli_filters() -> None:
    nested, cli_filters = split_overrides(
        {
            "use_gitignore": False,
            "format": None,
            "output.include_system_info": False,
            "common_filters.include": "src/",
            "source.exclude": ["*.log"],
        },
    )

    assert nested == {"general": {"use_gitignore": False}, "output": {"include_system_info": False}}
    assert cli_filters[IgnoreSection.COMMON] == {"include": ["src/"], "exclude": []}
    assert cli_filters[IgnoreSection.SOURCE] == {"include": [], "exclude": ["*.log"]}


@pytest.mark.unit
def test_cli_override_beats_file_layer_per_key(tmp_path: Path) -> None:
    file_layer = {"general": {"use_gitignore": True, "project_name": "demo"}}

    config = resolve_config(default_layer(), file_layer, {"use_gitignore": False}, project_root=tmp_path)

    assert config.general.use_gitignore is False
    assert config.general.project_name == "demo"


@pytest.mark.unit
def test_unset_override_falls_through_to_file_layer(tmp_path: Path) -> None:
    file_layer = {"output": {"format": "yaml"}}

    config = resolve_config(default_layer(), file_layer, {"format": None}, project_root=tmp_path)

    assert config.output.format is OutputFormat.YAML


@pytest.mark.unit
def test_yml_is_an_alias_of_yaml(tmp_path: Path) -> None:
    config = resolve_config(default_layer(), None, {"format": "yml"}, project_root=tmp_path)

    assert config.output.format is OutputFormat.YAML
    assert config.save_extension == "yaml"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("file_layer", "key"),
    [
        ({"general": {"unknown": 1}}, "general.unknown"),
        ({"output": {"format": "toml"}}, "output.format"),
        ({"general": {"max_file_size": "lots"}}, "general.max_file_size"),
        ({"tree": {"exclude": ["[broken"]}}, "tree.exclude"),
        ({"nonsense": {}}, "nonsense"),
    ],
)
def test_invalid_values_raise_invalid_config_value_error(tmp_path: Path, file_layer: dict, key: str) -> None:
    with pytest.raises(InvalidConfigValueError) as exc_info:
        resolve_config(default_layer(), file_layer, None, project_root=tmp_path)

    assert exc_info.value.key == key


@pytest.mark.unit
def test_runtime_fields_cannot_come_from_a_layer(tmp_path: Path) -> None:
    with pytest.raises(InvalidConfigValueError):
        resolve_config(default_layer(), {"project_root": "/elsewhere"}, None, project_root=tmp_path)


@pytest.mark.unit
def test_chunk_size_requires_json(tmp_path: Path) -> None:
    with pytest.raises(InvalidConfigValueError, match="json"):
        resolve_config(default_layer(), None, {"chunk_size": "5MB", "format": "xml"}, project_root=tmp_path)

    config = resolve_config(default_layer(), None, {"chunk_size": "5MB"}, project_root=tmp_path)

    assert config.source.chunk_size == 5_000_000
    assert config.chunk_mode is True


@pytest.mark.unit
def test_section_gitignore_setting_inherits_or_overrides(tmp_path: Path) -> None:
    file_layer = {
        "general": {"use_gitignore": False},
        "tree": {"use_gitignore": True},
        "docs": {"use_gitignore": "inherit"},
    }

    config = resolve_config(default_layer(), file_layer, None, project_root=tmp_path)

    assert config.tree.use_gitignore is IgnoreSetting.TRUE
    assert config.effective_gitignore(IgnoreSection.TREE) is True
    assert config.effective_gitignore(IgnoreSection.DOCS) is False
    assert config.effective_gitignore(IgnoreSection.SOURCE) is False


@pytest.mark.unit
def test_meta_rules_and_prompts_collect_custom_keys(tmp_path: Path) -> None:
    file_layer = {
        "meta": {"team": "core", "version": 3},
        "rules": {"include_static": ["python"], "import": ["rules/extra.md"], "mine": ["be nice"]},
        "prompts": {"enabled": True, "greet": "Say hello"},
    }

    config = resolve_config(default_layer(), file_layer, None, project_root=tmp_path)

    assert config.meta.custom == {"team": "core", "version": "3"}
    assert config.rules.include_static == ["python"]
    assert config.rules.imports == [Path("rules/extra.md")]
    assert config.rules.custom == {"mine": ["be nice"]}
    assert config.prompts.custom == {"greet": "Say hello"}


@pytest.mark.unit
def test_filename_base_prefers_save_then_project_name(tmp_path: Path) -> None:
    named = resolve_config(default_layer(), {"general": {"project_name": "demo"}}, None, project_root=tmp_path)
    saved = resolve_config(
        default_layer(),
        {"general": {"project_name": "demo"}, "save": {"filename_base": "ctx", "output_dir": "out"}},
        None,
        project_root=tmp_path,
    )

    assert named.filename_base == "demo"
    assert saved.filename_base == "ctx"
    assert saved.save_dir == tmp_path / "out"


@pytest.mark.unit
def test_load_config_file_preserves_declaration_order(tmp_path: Path) -> None:
    path = tmp_path / "xcontext.toml"
    path.write_text('[meta]\nzeta = "z"\nalpha = "a"\n', encoding="utf-8")

    layer = load_config_file(path)

    assert list(layer["meta"]) == ["zeta", "alpha"]


@pytest.mark.unit
def test_load_config_file_reports_malformed_toml(tmp_path: Path) -> None:
    path = tmp_path / "xcontext.toml"
    path.write_text("[general\nuse_gitignore = ", encoding="utf-8")

    with pytest.raises(ConfigParseError) as exc_info:
        load_config_file(path)

    assert exc_info.value.path == path
