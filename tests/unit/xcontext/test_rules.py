from __future__ import annotations

from pathlib import Path

import pytest

from xcontext.config import default_layer, resolve_config
from xcontext.exceptions import UnknownStaticRuleError
from xcontext.logging import RunContext
from xcontext.rules import (
    RulePrefix,
    RuleSet,
    available_static_rules,
    characteristic_rule_stems,
    detect_characteristics,
    load_static_rules,
    merge_rule_sets,
    parse_line_rules,
    parse_org_rules,
    parse_rule_file,
    resolve_prompts,
    resolve_rules,
)

ORG_TEXT = """#+TITLE: Demo rules

* Style
- Keep functions short.
- Wrap long
  explanations like this one.
  - nested detail
* Testing
Write a test for every bug fix.
1. Run the suite before pushing.
"""


def make_config(root: Path, file_layer: dict | None = None):  # noqa: ANN201
    return resolve_config(default_layer(), file_layer, None, project_root=root)


@pytest.mark.unit
def test_parse_org_rules_folds_wrapped_lines_into_list_items() -> None:
    assert parse_org_rules(ORG_TEXT) == [
        "Keep functions short.",
        "Wrap long explanations like this one. nested detail",
        "Write a test for every bug fix.",
        "Run the suite before pushing.",
    ]


@pytest.mark.unit
def test_parse_line_rules_skips_blank_and_comment_lines() -> None:
    assert parse_line_rules("# heading\nFirst rule\n\n  Second rule  \n") == ["First rule", "Second rule"]
    assert parse_rule_file("team.org", "* H\n- one\n") == ["one"]
    assert parse_rule_file("team.md", "- one\n") == ["- one"]


@pytest.mark.unit
def test_every_packaged_rule_file_has_rules() -> None:
    stems = available_static_rules()

    assert {"general", "guidelines", "documentation", "python", "rust"} <= stems
    assert all(load_static_rules(stem) for stem in stems)


@pytest.mark.unit
def test_unknown_static_rule_cannot_be_loaded() -> None:
    with pytest.raises(UnknownStaticRuleError):
        load_static_rules("cobol")


@pytest.mark.unit
def test_characteristics_map_to_rule_stems() -> None:
    characteristics = detect_characteristics(["src/main.rs", "lib/app.PY", "Rakefile", "README"])

    assert characteristics == {"rs", "py", "Rakefile"}
    assert characteristic_rule_stems(characteristics) == {"rust", "python", "rakefile"}


@pytest.mark.unit
def test_resolve_rules_orders_static_imported_custom(tmp_path: Path) -> None:
    imported = tmp_path / ".xtools" / "xcontext" / "team.org"
    imported.parent.mkdir(parents=True)
    imported.write_text("* Team\n- Review every change.\n", encoding="utf-8")
    config = make_config(
        tmp_path,
        {"rules": {"import": ["team.org", "missing.org"], "exclude": ["guidelines"], "mine": ["Be kind."]}},
    )

    rule_sets = resolve_rules(config, characteristics={"py"}, ctx=RunContext())

    assert [r.key for r in rule_sets] == [
        "static:documentation",
        "static:general",
        "static:python",
        "imported:team",
        "custom:mine",
    ]
    assert rule_sets[3].rules == ("Review every change.",)


@pytest.mark.unit
def test_include_static_adds_rule_sets_and_rejects_unknown_names(tmp_path: Path) -> None:
    config = make_config(tmp_path, {"rules": {"include_static": ["go"]}})

    keys = [r.key for r in resolve_rules(config, characteristics=set(), ctx=RunContext())]

    assert "static:go" in keys
    with pytest.raises(UnknownStaticRuleError) as exc_info:
        resolve_rules(
            make_config(tmp_path, {"rules": {"include_static": ["cobol"]}}),
            characteristics=set(),
            ctx=RunContext(),
        )
    assert exc_info.value.name == "cobol"


@pytest.mark.unit
def test_disabled_rules_resolve_to_nothing(tmp_path: Path) -> None:
    config = make_config(tmp_path, {"rules": {"enabled": False, "mine": ["x"]}})

    assert resolve_rules(config, characteristics={"py"}, ctx=RunContext()) == []


@pytest.mark.unit
def test_same_custom_name_defined_twice_yields_one_entry() -> None:
    first = RuleSet(name="style", prefix=RulePrefix.CUSTOM, rules=("old",))
    other = RuleSet(name="style", prefix=RulePrefix.STATIC, rules=("static",))
    second = RuleSet(name="style", prefix=RulePrefix.CUSTOM, rules=("new",))

    merged = merge_rule_sets([first, other, second])

    assert [r.key for r in merged] == ["custom:style", "static:style"]
    assert merged[0].rules == ("new",)


@pytest.mark.unit
def test_prompts_are_opt_in(tmp_path: Path) -> None:
    assert resolve_prompts(make_config(tmp_path, {"prompts": {"greet": "Hello"}}), ctx=RunContext()) == {}

    config = make_config(tmp_path, {"prompts": {"enabled": True, "greet": "Hello"}})
    prompts = resolve_prompts(config, ctx=RunContext())

    assert "static:refactor" in prompts
    assert prompts["custom:greet"] == "Hello"
    assert list(prompts)[-1] == "custom:greet"
