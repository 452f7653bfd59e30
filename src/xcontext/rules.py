from __future__ import annotations

import re
from enum import StrEnum, auto
from functools import lru_cache
from importlib import resources
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

import yaml
from pydantic import BaseModel, ConfigDict, Field

from xcontext.config import DEFAULT_CONFIG_DIR
from xcontext.exceptions import UnknownStaticRuleError

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from xcontext.config import Config
    from xcontext.logging import RunContext

RULES_RESOURCE_DIR = "data/rules"
PROMPTS_RESOURCE = "data/prompts.yaml"
DEFAULT_RULE_STEMS = ("general", "guidelines", "documentation")

EXTENSION_RULE_STEMS: dict[str, str] = {
    "py": "python",
    "pyi": "python",
    "rs": "rust",
    "rb": "ruby",
    "c": "c",
    "h": "c",
    "cpp": "cpp",
    "hpp": "cpp",
    "go": "go",
    "js": "javascript",
    "cjs": "javascript",
    "mjs": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "php": "php",
    "org": "documentation",
    "md": "documentation",
    "json": "config_file",
    "yaml": "config_file",
    "yml": "config_file",
    "toml": "config_file",
    "xml": "config_file",
    "rake": "rakefile",
}

FILENAME_RULE_STEMS: dict[str, str] = {
    "Rakefile": "rakefile",
    "Gemfile": "ruby",
}

_ORG_HEADLINE = re.compile(r"^\*+\s")
_LIST_ITEM = re.compile(r"^(?P<indent>\s*)(?:[-+]|\d+[.)])\s+(?P<text>.*)$")


class RulePrefix(StrEnum):
    """Namespace of a rule set; the same name may exist once per prefix."""

    STATIC = auto()
    IMPORTED = auto()
    CUSTOM = auto()


class RuleSet(BaseModel):
    """A named list of rules."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Rule set name.")
    prefix: RulePrefix = Field(..., description="Where the rule set came from.")
    rules: tuple[str, ...] = Field(default=(), description="Rules in source order.")

    @property
    def key(self) -> str:
        return f"{self.prefix}:{self.name}"


def parse_org_rules(text: str) -> list[str]:
    """Extract rules from an Org outline.

    Headlines and `#` lines are structure, not rules. Every list item is one
    rule; lines indented deeper than the item (wrapped text, nested items)
    fold into it. Free-standing paragraph lines are one rule each.

    Args:
        text (str): the Org document.

    Returns:
        list[str]: the rules, in order.
    """
    rules: list[str] = []
    current: list[str] = []
    item_indent: int | None = None

    def flush() -> None:
        nonlocal current, item_indent
        if current:
            rules.append(" ".join(current))
        current, item_indent = [], None

    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("#") or _ORG_HEADLINE.match(line):
            flush()
            continue
        indent = len(line) - len(line.lstrip())
        item = _LIST_ITEM.match(line)
        if item_indent is not None and indent > item_indent:
            current.append(item.group("text").strip() if item else stripped)
            continue
        flush()
        if item:
            item_indent = indent
            current = [item.group("text").strip()]
        else:
            rules.append(stripped)
    flush()
    return [rule for rule in rules if rule]


def parse_line_rules(text: str) -> list[str]:
    """One rule per non-empty line; lines starting with `#` are comments."""
    return [line.strip() for line in text.splitlines() if line.strip() and not line.strip().startswith("#")]


def parse_rule_file(name: str, text: str) -> list[str]:
    if name.lower().endswith(".org"):
        return parse_org_rules(text)
    return parse_line_rules(text)


@lru_cache(maxsize=1)
def available_static_rules() -> frozenset[str]:
    """Stems of the rule files packaged with xcontext."""
    directory = resources.files("xcontext").joinpath(RULES_RESOURCE_DIR)
    return frozenset(
        entry.name.removesuffix(".org") for entry in directory.iterdir() if entry.name.endswith(".org")
    )


@lru_cache(maxsize=64)
def load_static_rules(stem: str) -> tuple[str, ...]:
    """Read one packaged rule file.

    Raises:
        UnknownStaticRuleError: if no rule file with this stem is packaged.
    """
    if stem not in available_static_rules():
        raise UnknownStaticRuleError(message=f"Static rule set {stem!r} does not exist", name=stem)
    text = resources.files("xcontext").joinpath(f"{RULES_RESOURCE_DIR}/{stem}.org").read_text(encoding="utf-8")
    return tuple(parse_org_rules(text))


def detect_characteristics(paths: Iterable[str]) -> set[str]:
    """Collect lowercase extensions and well-known file names from project paths.

    Args:
        paths (Iterable[str]): relative POSIX paths seen by the walker.

    Returns:
        set[str]: the characteristics.
    """
    characteristics: set[str] = set()
    for path in paths:
        name = PurePosixPath(path).name
        if name in FILENAME_RULE_STEMS:
            characteristics.add(name)
        suffix = PurePosixPath(name).suffix
        if suffix:
            characteristics.add(suffix[1:].lower())
    return characteristics


def characteristic_rule_stems(characteristics: Iterable[str]) -> set[str]:
    stems = set()
    for characteristic in characteristics:
        stem = FILENAME_RULE_STEMS.get(characteristic) or EXTENSION_RULE_STEMS.get(characteristic.lower())
        if stem:
            stems.add(stem)
    return stems


def find_import(path: Path, config: Config) -> Path | None:
    """Locate an imported file relative to the project root, then the config directory."""
    if path.is_absolute():
        candidates = [path]
    else:
        candidates = [config.project_root / path, config.project_root / DEFAULT_CONFIG_DIR / path]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def merge_rule_sets(rule_sets: Iterable[RuleSet]) -> list[RuleSet]:
    """Collapse rule sets sharing a key; the later definition wins.

    The surviving definition keeps the position of the first occurrence, so
    the output never contains duplicate keys.
    """
    merged: dict[str, RuleSet] = {}
    for rule_set in rule_sets:
        merged[rule_set.key] = rule_set
    return list(merged.values())


def resolve_rules(config: Config, *, characteristics: Iterable[str], ctx: RunContext) -> list[RuleSet]:
    """Aggregate static, imported and custom rule sets.

    Static rule sets are the defaults plus those implied by the project's
    characteristics, minus `rules.exclude`, plus `rules.include_static`. Names
    requested explicitly must exist; implied ones that are missing are skipped
    with a warning. Imported files that cannot be found or read are skipped
    with a warning.

    Args:
        config (Config): the effective configuration.
        characteristics (Iterable[str]): extensions and file names seen in the project.
        ctx (RunContext): run context carrying the logger.

    Raises:
        UnknownStaticRuleError: if `include_static` names a rule set that is not packaged.

    Returns:
        list[RuleSet]: static (sorted by name), then imported, then custom rule sets.
    """
    settings = config.rules
    if not settings.enabled:
        ctx.log.debug("rules_disabled")
        return []

    packaged = available_static_rules()
    for name in settings.include_static:
        if name not in packaged:
            raise UnknownStaticRuleError(
                message=f"Static rule set {name!r} listed in rules.include_static does not exist",
                name=name,
            )

    implied = (set(DEFAULT_RULE_STEMS) | characteristic_rule_stems(characteristics)) - set(settings.exclude)
    stems = implied | set(settings.include_static)
    static: list[RuleSet] = []
    for stem in sorted(stems):
        if stem not in packaged:
            ctx.log.warning("static_rule_missing", rule=stem)
            continue
        static.append(RuleSet(name=stem, prefix=RulePrefix.STATIC, rules=load_static_rules(stem)))

    imported: list[RuleSet] = []
    for import_path in settings.imports:
        found = find_import(import_path, config)
        if found is None:
            ctx.log.warning("rule_import_not_found", path=str(import_path))
            continue
        try:
            text = found.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            ctx.log.warning("rule_import_unreadable", path=str(found), error=str(exc))
            continue
        rules = tuple(parse_rule_file(found.name, text))
        imported.append(RuleSet(name=found.stem, prefix=RulePrefix.IMPORTED, rules=rules))

    custom = [
        RuleSet(name=name, prefix=RulePrefix.CUSTOM, rules=tuple(rules))
        for name, rules in settings.custom.items()
    ]
    resolved = merge_rule_sets([*static, *imported, *custom])
    ctx.log.info("rules_resolved", count=len(resolved))
    return resolved


@lru_cache(maxsize=1)
def load_packaged_prompts() -> dict[str, str]:
    """Read the packaged prompt texts once per process."""
    text = resources.files("xcontext").joinpath(PROMPTS_RESOURCE).read_text(encoding="utf-8")
    raw = yaml.safe_load(text) or {}
    return {str(name): str(prompt) for name, prompt in raw.items()}


def resolve_prompts(config: Config, *, ctx: RunContext) -> dict[str, str]:
    """Aggregate packaged, imported and custom prompts when prompts are enabled.

    Args:
        config (Config): the effective configuration.
        ctx (RunContext): run context carrying the logger.

    Returns:
        dict[str, str]: prompt text keyed by `<prefix>:<name>`, empty when disabled.
    """
    settings = config.prompts
    if not settings.enabled:
        return {}
    prompts: dict[str, str] = {
        f"{RulePrefix.STATIC}:{name}": text for name, text in sorted(load_packaged_prompts().items())
    }
    for import_path in settings.imports:
        found = find_import(import_path, config)
        if found is None:
            ctx.log.warning("prompt_import_not_found", path=str(import_path))
            continue
        try:
            text = found.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            ctx.log.warning("prompt_import_unreadable", path=str(found), error=str(exc))
            continue
        if text.strip():
            prompts[f"{RulePrefix.IMPORTED}:{found.stem}"] = text
    for name, text in settings.custom.items():
        if text.strip():
            prompts[f"{RulePrefix.CUSTOM}:{name}"] = text
    ctx.log.info("prompts_resolved", count=len(prompts))
    return prompts
