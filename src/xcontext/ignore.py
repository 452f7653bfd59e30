"""Layered include/exclude decisions per output section.

Each section (tree, source, docs, and the shared common section) gets one
ordered rule list built from these layers, lowest precedence first:

1. built-in ignores (common list, then the section's list),
2. `.git/info/exclude`, `.gitignore` and `.ignore` files, when gitignore
   applies; files in subdirectories are added by the walker as it reaches
   them, anchored to their directory, after those of their parents,
3. `[common_filters]`,
4. the section's own `include`/`exclude`,
5. include/exclude patterns given as CLI overrides,
6. reserved paths (`.git/`, the save directory, the output file and its
   temporaries), always excluded.

Inside a layer include patterns come before exclude patterns and a leading
`!` flips a pattern's polarity. The last matching rule decides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from enum import StrEnum, auto
from functools import lru_cache
from importlib import resources
from typing import TYPE_CHECKING

import yaml

from xcontext.config import IgnoreSection
from xcontext.patterns import CompiledPattern, anchor_pattern, compile_pattern, escape_glob, normalize_path

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from xcontext.config import Config

__all__ = [
    "IGNORE_FILE_NAMES",
    "Decision",
    "FilterLayer",
    "IgnoreRegistry",
    "IgnoreSection",
    "PatternRule",
    "Polarity",
    "ReservedPaths",
    "SectionRules",
    "load_builtin_ignores",
    "read_gitignore_patterns",
    "read_ignore_file",
    "reserved_patterns",
]

BUILTIN_IGNORES_RESOURCE = "data/builtin_ignores.yaml"
GIT_DIR = ".git"
IGNORE_FILE_NAMES = (".gitignore", ".ignore")


class Polarity(StrEnum):
    """Whether a matching rule includes or excludes the path."""

    INCLUDE = auto()
    EXCLUDE = auto()

    def flipped(self) -> Polarity:
        """Return the opposite polarity."""
        return Polarity.EXCLUDE if self is Polarity.INCLUDE else Polarity.INCLUDE


class FilterLayer(StrEnum):
    """Origin of a rule, in increasing precedence order."""

    BUILTIN = auto()
    GITIGNORE = auto()
    COMMON_FILTERS = auto()
    SECTION = auto()
    CLI = auto()
    RESERVED = auto()


class Decision(StrEnum):
    """Outcome of filtering one path for one section."""

    INCLUDE = auto()
    EXCLUDE = auto()

    @property
    def included(self) -> bool:
        """Whether the path is kept."""
        return self is Decision.INCLUDE


@dataclass(frozen=True)
class PatternRule:
    """One compiled pattern with its effective polarity and origin layer."""

    pattern: CompiledPattern
    polarity: Polarity
    layer: FilterLayer

    @property
    def directory_recursive(self) -> bool:
        """Whether the source pattern ended with `/`."""
        return self.pattern.directory_recursive

    @classmethod
    def from_text(cls, text: str, *, polarity: Polarity, layer: FilterLayer) -> PatternRule:
        """Compile a pattern, flipping `polarity` when it starts with `!`.

        Args:
            text (str): the gitignore-style pattern.
            polarity (Polarity): polarity of the list the pattern came from.
            layer (FilterLayer): the layer the pattern belongs to.

        Returns:
            PatternRule: the compiled rule.
        """
        compiled = compile_pattern(text)
        effective = polarity.flipped() if compiled.negated else polarity
        return cls(pattern=compiled, polarity=effective, layer=layer)


@dataclass(frozen=True)
class SectionRules:
    """The ordered rule list of one section.

    Attributes:
        section: the section these rules filter.
        rules: rules in increasing precedence.
        whitelist: whether an include list exists, making unmatched files excluded.
        use_gitignore: whether ignore files found during the walk apply.
    """

    section: IgnoreSection
    rules: tuple[PatternRule, ...] = ()
    whitelist: bool = False
    use_gitignore: bool = False

    def with_ignore_rules(self, extra: tuple[PatternRule, ...]) -> SectionRules:
        """Insert rules from a nested ignore file at the end of the gitignore layer."""
        if not extra or not self.use_gitignore:
            return self
        cut = next(
            (i for i, rule in enumerate(self.rules) if rule.layer not in {FilterLayer.BUILTIN, FilterLayer.GITIGNORE}),
            len(self.rules),
        )
        return replace(self, rules=(*self.rules[:cut], *extra, *self.rules[cut:]))

    def last_match(self, path: str, *, is_directory: bool) -> tuple[int, PatternRule | None]:
        """Find the highest-precedence rule matching `path`.

        Returns:
            tuple[int, PatternRule | None]: the rule's index and the rule, or (-1, None).
        """
        for index in range(len(self.rules) - 1, -1, -1):
            rule = self.rules[index]
            if rule.pattern.matches(path, is_directory=is_directory):
                return index, rule
        return -1, None

    def decide(self, path: str, *, is_directory: bool) -> Decision:
        _, rule = self.last_match(path, is_directory=is_directory)
        if rule is not None:
            return Decision.INCLUDE if rule.polarity is Polarity.INCLUDE else Decision.EXCLUDE
        if self.whitelist and not is_directory:
            return Decision.EXCLUDE
        return Decision.INCLUDE

    def should_descend(self, directory: str) -> bool:
        index, rule = self.last_match(directory, is_directory=True)
        if rule is None or rule.polarity is Polarity.INCLUDE:
            return True
        inside = normalize_path(directory) + "/"
        return any(
            _reaches_inside(later.pattern, inside)
            for later in self.rules[index + 1 :]
            if later.polarity is Polarity.INCLUDE
        )


def _reaches_inside(pattern: CompiledPattern, inside: str) -> bool:
    prefix = pattern.literal_prefix
    if not prefix:
        return False
    if prefix.startswith(inside):
        return True
    has_glob_tail = prefix != pattern.body.lstrip("/")
    return has_glob_tail and inside.startswith(prefix)


@lru_cache(maxsize=1)
def load_builtin_ignores() -> dict[IgnoreSection, tuple[str, ...]]:
    """Read the packaged built-in ignore lists once per process.

    Returns:
        dict[IgnoreSection, tuple[str, ...]]: patterns per section.
    """
    text = resources.files("xcontext").joinpath(BUILTIN_IGNORES_RESOURCE).read_text(encoding="utf-8")
    raw = yaml.safe_load(text) or {}
    return {section: tuple(raw.get(section.value) or ()) for section in IgnoreSection}


def read_ignore_file(path: Path) -> list[str]:
    """Read the patterns of one ignore file, skipping blanks and comments.

    Unreadable files are treated as empty.
    """
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    patterns = []
    for line in text.splitlines():
        stripped = line.rstrip()
        if not stripped or stripped.startswith("#"):
            continue
        patterns.append(stripped)
    return patterns


def read_gitignore_patterns(root: Path) -> list[str]:
    """Collect the patterns of `.git/info/exclude` and the root ignore files.

    Args:
        root (Path): the project root.

    Returns:
        list[str]: patterns in increasing precedence: `.git/info/exclude`,
            then `.gitignore`, then `.ignore`.
    """
    patterns = read_ignore_file(root / GIT_DIR / "info" / "exclude")
    for name in IGNORE_FILE_NAMES:
        patterns += read_ignore_file(root / name)
    return patterns


def _root_relative(path: Path, root: Path) -> str | None:
    try:
        relative = normalize_path(os.path.relpath(path, root))
    except ValueError:
        return None
    if relative.startswith(".."):
        return None
    return "" if relative == "." else relative


def _temporary_siblings(relative_file: str) -> str:
    parent, _, name = relative_file.rpartition("/")
    temporary = f".{escape_glob(name)}.*.tmp"
    return f"/{escape_glob(parent)}/{temporary}" if parent else f"/{temporary}"


def reserved_patterns(config: Config, output_file: Path | None = None) -> list[str]:
    """Paths the tool never reads: the VCS directory and everything it writes.

    Args:
        config (Config): the effective configuration.
        output_file (Path | None): where the document will be saved.

    Returns:
        list[str]: anchored exclude patterns.
    """
    patterns = [f"{GIT_DIR}/"]
    save_relative = _root_relative(config.save_dir, config.project_root)
    if save_relative:
        patterns.append(f"/{escape_glob(save_relative)}/")
    elif save_relative == "":
        base = escape_glob(config.filename_base)
        patterns += [f"/{base}_chunk_*.json", f"/.{base}_chunk_*.json.*.tmp"]
    if output_file is not None:
        output_relative = _root_relative(output_file, config.project_root)
        if output_relative:
            patterns += [f"/{escape_glob(output_relative)}", _temporary_siblings(output_relative)]
    return patterns


def _rules(patterns: Iterable[str], polarity: Polarity, layer: FilterLayer) -> list[PatternRule]:
    return [PatternRule.from_text(p, polarity=polarity, layer=layer) for p in patterns]


@dataclass(frozen=True)
class ReservedPaths:
    """Matcher for the paths of `reserved_patterns`, on absolute paths."""

    root: Path
    patterns: tuple[CompiledPattern, ...] = ()

    @classmethod
    def for_config(cls, config: Config, output_file: Path | None = None) -> ReservedPaths:
        patterns = tuple(compile_pattern(p) for p in reserved_patterns(config, output_file))
        return cls(root=config.project_root, patterns=patterns)

    def contains(self, path: Path) -> bool:
        """Whether `path` is reserved; paths outside the root never are."""
        relative = _root_relative(path, self.root)
        if not relative:
            return False
        return any(pattern.matches(relative, is_directory=True) for pattern in self.patterns)


@dataclass(frozen=True)
class IgnoreRegistry:
    """Compiled, read-only filter rules for every section of one run."""

    sections: dict[IgnoreSection, SectionRules] = field(default_factory=dict)

    @classmethod
    def compile(cls, config: Config, *, output_file: Path | None = None) -> IgnoreRegistry:
        """Build every section's rule list from a resolved configuration.

        Args:
            config (Config): the effective configuration.
            output_file (Path | None): where the document will be saved; never read back.

        Raises:
            InvalidPatternError: if any pattern, including gitignore lines, is invalid.

        Returns:
            IgnoreRegistry: the compiled registry.
        """
        builtins = load_builtin_ignores() if config.general.enable_builtin_ignore else {}
        gitignore = read_gitignore_patterns(config.project_root)
        reserved = reserved_patterns(config, output_file)
        return cls(
            sections={
                section: _compile_section(section, config, builtins, gitignore, reserved)
                for section in IgnoreSection
            },
        )

    @property
    def uses_gitignore(self) -> bool:
        """Whether any section applies ignore files."""
        return any(rules.use_gitignore for rules in self.sections.values())

    def with_ignore_file(self, relative_directory: str, patterns: Iterable[str]) -> IgnoreRegistry:
        """Return a registry extended with the patterns of a nested ignore file.

        Args:
            relative_directory (str): directory holding the ignore file.
            patterns (Iterable[str]): the file's patterns, relative to that directory.

        Raises:
            InvalidPatternError: if a pattern is invalid.

        Returns:
            IgnoreRegistry: the registry for the directory and its descendants.
        """
        if not self.uses_gitignore:
            return self
        anchored = [anchor_pattern(p, relative_directory) for p in patterns]
        extra = tuple(_rules(anchored, Polarity.EXCLUDE, FilterLayer.GITIGNORE))
        if not extra:
            return self
        return IgnoreRegistry(
            sections={section: rules.with_ignore_rules(extra) for section, rules in self.sections.items()},
        )

    def rules_for(self, section: IgnoreSection) -> SectionRules:
        return self.sections[section]

    def decide(self, section: IgnoreSection, relative_path: str, *, is_directory: bool = False) -> Decision:
        """Decide whether a path is kept in a section.

        Args:
            section (IgnoreSection): the section asking.
            relative_path (str): path relative to the project root.
            is_directory (bool): whether the path is a directory.

        Returns:
            Decision: the verdict of the last matching rule, or the default.
        """
        return self.sections[section].decide(relative_path, is_directory=is_directory)

    def should_descend(self, section: IgnoreSection, relative_directory: str) -> bool:
        """Whether the walker must look inside a directory for this section.

        An excluded directory is still entered when a later include rule names
        something inside it (`target/` followed by `!target/keep.txt`).
        """
        return self.sections[section].should_descend(relative_directory)

    def is_whitelist(self, section: IgnoreSection) -> bool:
        return self.sections[section].whitelist


def _compile_section(
    section: IgnoreSection,
    config: Config,
    builtins: dict[IgnoreSection, tuple[str, ...]],
    gitignore: list[str],
    reserved: list[str],
) -> SectionRules:
    rules: list[PatternRule] = []
    include_lists: list[list[str]] = []

    match section:
        case IgnoreSection.COMMON:
            own_builtin: tuple[str, ...] = ()
            own_filters = None
        case IgnoreSection.TREE | IgnoreSection.SOURCE | IgnoreSection.DOCS:
            own_builtin = builtins.get(section, ())
            own_filters = config.section_filters(section)

    rules += _rules(builtins.get(IgnoreSection.COMMON, ()), Polarity.EXCLUDE, FilterLayer.BUILTIN)
    rules += _rules(own_builtin, Polarity.EXCLUDE, FilterLayer.BUILTIN)

    use_gitignore = config.effective_gitignore(section)
    if use_gitignore:
        rules += _rules(gitignore, Polarity.EXCLUDE, FilterLayer.GITIGNORE)

    layered = [(FilterLayer.COMMON_FILTERS, config.common_filters)]
    if own_filters is not None:
        layered.append((FilterLayer.SECTION, own_filters))
    cli_common = config.cli_filters.get(IgnoreSection.COMMON)
    if cli_common is not None:
        layered.append((FilterLayer.CLI, cli_common))
    cli_own = config.cli_filters.get(section) if section is not IgnoreSection.COMMON else None
    if cli_own is not None:
        layered.append((FilterLayer.CLI, cli_own))

    for layer, filters in layered:
        include_lists.append(filters.include)
        rules += _rules(filters.include, Polarity.INCLUDE, layer)
        rules += _rules(filters.exclude, Polarity.EXCLUDE, layer)

    rules += _rules(reserved, Polarity.EXCLUDE, FilterLayer.RESERVED)

    whitelist = any(not compile_pattern(p).negated for patterns in include_lists for p in patterns)
    return SectionRules(section=section, rules=tuple(rules), whitelist=whitelist, use_gitignore=use_gitignore)
