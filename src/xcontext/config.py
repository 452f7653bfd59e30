from __future__ import annotations

import copy
import re
from enum import StrEnum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Any

import tomlkit
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from tomlkit.exceptions import TOMLKitError

from xcontext.exceptions import ConfigParseError, InvalidConfigValueError, InvalidPatternError
from xcontext.patterns import validate_patterns

if TYPE_CHECKING:
    from collections.abc import Mapping

DEFAULT_CONFIG_DIR = ".xtools/xcontext"
DEFAULT_CONFIG_FILENAME = "xcontext.toml"
DEFAULT_CACHE_DIR = ".xtools/xcontext/cache"
DEFAULT_WATCH_DELAY = "300ms"
DEFAULT_MAX_FILE_SIZE = "10MB"
DEFAULT_DOCS_INCLUDE = ["*.md", "*.org", "*.rst", "*.adoc", "docs/"]

# Shorthand override keys accepted in addition to dotted `section.key` paths.
OVERRIDE_ALIASES: dict[str, str] = {
    "project_name": "general.project_name",
    "use_gitignore": "general.use_gitignore",
    "enable_builtin_ignore": "general.enable_builtin_ignore",
    "max_file_size": "general.max_file_size",
    "chunk_size": "source.chunk_size",
    "format": "output.format",
    "minify": "output.minify",
    "xml_pretty_print": "output.xml_pretty_print",
    "output_dir": "save.output_dir",
    "filename_base": "save.filename_base",
    "delay": "watch.delay",
}

_BYTE_SIZE_PATTERN = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>[kmgtp]?i?b?)\s*$", re.IGNORECASE)
_BYTE_UNITS: dict[str, int] = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "m": 1000**2,
    "mb": 1000**2,
    "g": 1000**3,
    "gb": 1000**3,
    "t": 1000**4,
    "tb": 1000**4,
    "p": 1000**5,
    "pb": 1000**5,
    "ki": 1024,
    "kib": 1024,
    "mi": 1024**2,
    "mib": 1024**2,
    "gi": 1024**3,
    "gib": 1024**3,
    "ti": 1024**4,
    "tib": 1024**4,
    "pi": 1024**5,
    "pib": 1024**5,
}

_DURATION_PATTERN = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h)?\s*$", re.IGNORECASE)
_DURATION_UNITS: dict[str, float] = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class IgnoreSection(StrEnum):
    """Output sections that carry their own filter rules.

    `COMMON` rules apply to every other section in addition to its own.
    """

    COMMON = auto()
    TREE = auto()
    SOURCE = auto()
    DOCS = auto()


class IgnoreSetting(StrEnum):
    """Per-section gitignore switch; `INHERIT` defers to `[general].use_gitignore`."""

    INHERIT = auto()
    TRUE = auto()
    FALSE = auto()


class OutputFormat(StrEnum):
    """Serialization formats for the context document."""

    JSON = auto()
    YAML = auto()
    XML = auto()

    @property
    def extension(self) -> str:
        """File extension used when saving a document in this format."""
        return self.value


def parse_byte_size(value: str | int | float) -> int:
    """Parse a byte quantity such as ``"5MB"``, ``"512 KiB"`` or ``1024``.

    Decimal units (KB, MB, ...) are powers of 1000, binary units (KiB, MiB, ...)
    powers of 1024. A bare number is a byte count.

    Args:
        value (str | int | float): the quantity to parse.

    Raises:
        ValueError: if the value cannot be parsed or is not positive.

    Returns:
        int: the number of bytes.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid byte size {value!r}")
    if isinstance(value, int | float):
        size = int(value)
    else:
        match = _BYTE_SIZE_PATTERN.match(value)
        if not match:
            raise ValueError(f"Invalid byte size {value!r}; use a value such as '500KB' or '5MB'")
        unit = match.group("unit").lower()
        if unit not in _BYTE_UNITS:
            raise ValueError(f"Invalid byte size unit in {value!r}")
        size = int(float(match.group("value")) * _BYTE_UNITS[unit])
    if size <= 0:
        raise ValueError(f"Byte size must be greater than 0, got {value!r}")
    return size


def parse_duration(value: str | int | float) -> float:
    """Parse a duration such as ``"300ms"`` or ``"2s"`` into seconds.

    Args:
        value (str | int | float): the duration; bare numbers are seconds.

    Raises:
        ValueError: if the value cannot be parsed or is negative.

    Returns:
        float: the duration in seconds.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration {value!r}")
    if isinstance(value, int | float):
        seconds = float(value)
    else:
        match = _DURATION_PATTERN.match(value)
        if not match:
            raise ValueError(f"Invalid duration {value!r}; use a value such as '500ms' or '2s'")
        unit = (match.group("unit") or "s").lower()
        seconds = float(match.group("value")) * _DURATION_UNITS[unit]
    if seconds < 0:
        raise ValueError(f"Duration must not be negative, got {value!r}")
    return seconds


def _check_patterns(patterns: list[str]) -> list[str]:
    try:
        return validate_patterns(patterns)
    except InvalidPatternError as exc:
        raise ValueError(str(exc)) from exc


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)


class FilterPatterns(_Section):
    """Include/exclude glob lists for one filter layer."""

    include: list[str] = Field(default_factory=list, description="Glob patterns to include.")
    exclude: list[str] = Field(default_factory=list, description="Glob patterns to exclude.")

    @field_validator("include", "exclude")
    @classmethod
    def _validate_globs(cls, value: list[str]) -> list[str]:
        return _check_patterns(value)


class GeneralConfig(_Section):
    """General settings shared by every section."""

    project_name: str | None = Field(default=None, description="Project name; defaults to the root folder name.")
    use_gitignore: bool = Field(default=True, description="Apply .gitignore rules.")
    enable_builtin_ignore: bool = Field(default=True, description="Apply the packaged built-in ignore lists.")
    max_file_size: int | None = Field(
        default=parse_byte_size(DEFAULT_MAX_FILE_SIZE),
        description="Files above this many bytes are skipped; None means no limit.",
    )

    @field_validator("max_file_size", mode="before")
    @classmethod
    def _parse_max_file_size(cls, value: Any) -> int | None:  # noqa: ANN401
        if value is None or value == "":
            return None
        return parse_byte_size(value)


class CommonFiltersConfig(FilterPatterns):
    """Filters applied to every section."""


class SectionConfig(FilterPatterns):
    """Settings shared by the tree, source and docs sections."""

    enabled: bool = Field(default=True, description="Emit this section.")
    use_gitignore: IgnoreSetting = Field(default=IgnoreSetting.INHERIT, description="Gitignore switch.")

    @field_validator("use_gitignore", mode="before")
    @classmethod
    def _coerce_gitignore(cls, value: Any) -> Any:  # noqa: ANN401
        if isinstance(value, bool):
            return IgnoreSetting.TRUE if value else IgnoreSetting.FALSE
        if isinstance(value, str):
            return value.strip().lower()
        return value


class TreeConfig(SectionConfig):
    """Directory tree section."""


class DocsConfig(SectionConfig):
    """Documentation section; files selected here are not repeated in source."""

    include: list[str] = Field(default_factory=lambda: list(DEFAULT_DOCS_INCLUDE))


class SourceConfig(SectionConfig):
    """Source section; `chunk_size` switches from inline files to chunk files."""

    chunk_size: int | None = Field(default=None, description="Target chunk size in bytes.")

    @field_validator("chunk_size", mode="before")
    @classmethod
    def _parse_chunk_size(cls, value: Any) -> int | None:  # noqa: ANN401
        if value is None or value == "":
            return None
        return parse_byte_size(value)


class _CustomKeysSection(_Section):
    """Section whose unknown keys are user-defined entries collected in `custom`."""

    @model_validator(mode="before")
    @classmethod
    def _collect_custom_keys(cls, data: Any) -> Any:  # noqa: ANN401
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        known |= {f.alias for f in cls.model_fields.values() if f.alias}
        out: dict[str, Any] = {}
        custom: dict[str, Any] = dict(data.get("custom") or {})
        for key, value in data.items():
            if key == "custom":
                continue
            if key in known:
                out[key] = value
            else:
                custom[key] = value
        out["custom"] = custom
        return out


class MetaConfig(_CustomKeysSection):
    """Free-form string metadata copied into the document."""

    enabled: bool = True
    custom: dict[str, str] = Field(default_factory=dict)

    @field_validator("custom", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:  # noqa: ANN401
        if isinstance(value, dict):
            return {str(k): v if isinstance(v, str) else str(v) for k, v in value.items()}
        return value


class RulesConfig(_CustomKeysSection):
    """Rule selection: packaged static rules, imported rule files, custom rule lists."""

    enabled: bool = True
    include_static: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    imports: list[Path] = Field(default_factory=list, alias="import")
    custom: dict[str, list[str]] = Field(default_factory=dict)


class PromptsConfig(_CustomKeysSection):
    """Prompt selection; off unless explicitly enabled."""

    enabled: bool = False
    imports: list[Path] = Field(default_factory=list, alias="import")
    custom: dict[str, str] = Field(default_factory=dict)


class OutputConfig(_Section):
    """Serialization settings."""

    format: OutputFormat = OutputFormat.JSON
    minify: bool = True
    xml_pretty_print: bool = False
    include_project_name: bool = True
    include_project_root: bool = True
    include_system_info: bool = True
    include_timestamp: bool = True

    @field_validator("format", mode="before")
    @classmethod
    def _normalize_format(cls, value: Any) -> Any:  # noqa: ANN401
        if isinstance(value, str):
            lowered = value.strip().lower()
            return "yaml" if lowered == "yml" else lowered
        return value


class SaveConfig(_Section):
    """Where documents and chunk files are saved."""

    output_dir: Path = Path(DEFAULT_CACHE_DIR)
    filename_base: str | None = None
    extension: str | None = None


class WatchConfig(_Section):
    """Watch mode settings."""

    delay: float = Field(default=parse_duration(DEFAULT_WATCH_DELAY), description="Debounce delay in seconds.")

    @field_validator("delay", mode="before")
    @classmethod
    def _parse_delay(cls, value: Any) -> float:  # noqa: ANN401
        return parse_duration(value)


class Config(BaseModel):
    """Immutable, fully resolved configuration for one pipeline run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    common_filters: CommonFiltersConfig = Field(default_factory=CommonFiltersConfig)
    meta: MetaConfig = Field(default_factory=MetaConfig)
    docs: DocsConfig = Field(default_factory=DocsConfig)
    tree: TreeConfig = Field(default_factory=TreeConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    rules: RulesConfig = Field(default_factory=RulesConfig)
    prompts: PromptsConfig = Field(default_factory=PromptsConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    save: SaveConfig = Field(default_factory=SaveConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)

    project_root: Path = Field(default_factory=Path.cwd, description="Absolute project root.")
    config_path: Path | None = Field(default=None, description="Config file the File layer came from.")
    cli_filters: dict[IgnoreSection, FilterPatterns] = Field(
        default_factory=dict,
        description="Include/exclude patterns supplied as CLI overrides, per section.",
    )

    @model_validator(mode="after")
    def _check_chunk_mode(self) -> Config:
        if self.source.chunk_size is None:
            return self
        if not self.source.enabled:
            raise ValueError("source.chunk_size cannot be used when the source section is disabled")
        if self.output.format is not OutputFormat.JSON:
            raise ValueError(f"source.chunk_size requires the json output format, got {self.output.format}")
        return self

    @property
    def chunk_mode(self) -> bool:
        """Whether source files are written to chunk files instead of inline."""
        return self.source.chunk_size is not None

    @property
    def project_name(self) -> str:
        """Configured project name, falling back to the root folder name."""
        return self.general.project_name or self.project_root.name or "UnknownProject"

    @property
    def config_dir(self) -> Path:
        """The default configuration directory under the project root."""
        return self.project_root / DEFAULT_CONFIG_DIR

    @property
    def save_dir(self) -> Path:
        """Absolute directory where saved documents and chunks land."""
        if self.save.output_dir.is_absolute():
            return self.save.output_dir
        return self.project_root / self.save.output_dir

    @property
    def filename_base(self) -> str:
        """Base name for saved documents and chunk files."""
        return self.save.filename_base or self.general.project_name or self.project_root.name or "context"

    @property
    def save_extension(self) -> str:
        """Extension for the saved document."""
        return (self.save.extension or self.output.format.extension).lstrip(".")

    def section_filters(self, section: IgnoreSection) -> FilterPatterns:
        """Return the user filters configured for a section.

        Args:
            section (IgnoreSection): the section to look up.

        Returns:
            FilterPatterns: the section's include/exclude lists.
        """
        match section:
            case IgnoreSection.COMMON:
                return self.common_filters
            case IgnoreSection.TREE:
                return self.tree
            case IgnoreSection.SOURCE:
                return self.source
            case IgnoreSection.DOCS:
                return self.docs

    def section_enabled(self, section: IgnoreSection) -> bool:
        """Whether a section is emitted (`COMMON` always is)."""
        match section:
            case IgnoreSection.COMMON:
                return True
            case IgnoreSection.TREE:
                return self.tree.enabled
            case IgnoreSection.SOURCE:
                return self.source.enabled
            case IgnoreSection.DOCS:
                return self.docs.enabled

    def effective_gitignore(self, section: IgnoreSection) -> bool:
        """Resolve a section's gitignore switch against the general default."""
        match section:
            case IgnoreSection.COMMON:
                return self.general.use_gitignore
            case IgnoreSection.TREE | IgnoreSection.SOURCE | IgnoreSection.DOCS:
                setting = self.section_filters(section).use_gitignore  # type: ignore[attr-defined]
        match setting:
            case IgnoreSetting.TRUE:
                return True
            case IgnoreSetting.FALSE:
                return False
            case IgnoreSetting.INHERIT:
                return self.general.use_gitignore


_RUNTIME_FIELDS = {"project_root", "config_path", "cli_filters"}
_FILTER_OVERRIDE_SECTIONS: dict[str, IgnoreSection] = {
    "common_filters": IgnoreSection.COMMON,
    "tree": IgnoreSection.TREE,
    "source": IgnoreSection.SOURCE,
    "docs": IgnoreSection.DOCS,
}


def default_layer() -> dict[str, Any]:
    """Return the Defaults layer as a plain nested mapping.

    Returns:
        dict[str, Any]: every configurable key with its default value.
    """
    return Config().model_dump(by_alias=True, exclude=_RUNTIME_FIELDS)


def merge_layers(*layers: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge configuration layers, later layers winning per individual key.

    Nested mappings are merged key by key; any other value (including lists)
    replaces the earlier one wholesale. Layers are never mutated.

    Args:
        *layers: mappings in increasing precedence; None layers are skipped.

    Returns:
        dict[str, Any]: the merged mapping.
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            current = merged.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                merged[key] = merge_layers(current, value)
            else:
                merged[key] = copy.deepcopy(value)
    return merged


def split_overrides(
    overrides: Mapping[str, Any] | None,
) -> tuple[dict[str, Any], dict[IgnoreSection, dict[str, list[str]]]]:
    """Turn a flat override record into a nested layer plus the CLI filter layer.

    Keys are dotted paths (`general.use_gitignore`) or one of the shorthands in
    `OVERRIDE_ALIASES`. A value of None means "not given" and falls through to
    lower layers. `include`/`exclude` keys of the filter sections are not merged
    over the file values; they form their own, higher-precedence filter layer.

    Args:
        overrides (Mapping[str, Any] | None): the flat override record.

    Returns:
        tuple[dict[str, Any], dict[IgnoreSection, dict[str, list[str]]]]: the nested
            override layer and the CLI filter patterns per section.
    """
    nested: dict[str, Any] = {}
    cli_filters: dict[IgnoreSection, dict[str, list[str]]] = {}
    for raw_key, value in (overrides or {}).items():
        if value is None:
            continue
        key = OVERRIDE_ALIASES.get(raw_key, raw_key)
        parts = key.split(".")
        if len(parts) == 2 and parts[0] in _FILTER_OVERRIDE_SECTIONS and parts[1] in {"include", "exclude"}:  # noqa: PLR2004
            patterns = [value] if isinstance(value, str) else list(value)
            bucket = cli_filters.setdefault(_FILTER_OVERRIDE_SECTIONS[parts[0]], {"include": [], "exclude": []})
            bucket[parts[1]].extend(patterns)
            continue
        cursor = nested
        for part in parts[:-1]:
            cursor = cursor.setdefault(part, {})
            if not isinstance(cursor, dict):
                raise InvalidConfigValueError(message=f"Conflicting override key {raw_key!r}", key=raw_key)
        cursor[parts[-1]] = value
    return nested, cli_filters


def _describe_validation_error(exc: ValidationError) -> tuple[str, str]:
    first = exc.errors()[0]
    key = ".".join(str(p) for p in first.get("loc", ()))
    return key, f"Invalid configuration value for {key or 'config'!r}: {first.get('msg', exc)}"


def resolve_config(
    defaults: Mapping[str, Any] | None,
    file_layer: Mapping[str, Any] | None,
    overrides: Mapping[str, Any] | None,
    *,
    project_root: Path,
    config_path: Path | None = None,
) -> Config:
    """Resolve Defaults → File → CLI overrides into one immutable Config.

    Args:
        defaults (Mapping[str, Any] | None): the Defaults layer (see `default_layer`).
        file_layer (Mapping[str, Any] | None): parsed config file, or None when there is none.
        overrides (Mapping[str, Any] | None): flat CLI override record.
        project_root (Path): absolute project root.
        config_path (Path | None): the file the File layer came from.

    Raises:
        InvalidConfigValueError: for unknown keys and out-of-domain values, including invalid globs.

    Returns:
        Config: the effective configuration.
    """
    nested, cli_filters = split_overrides(overrides)
    merged = merge_layers(defaults, file_layer, nested)
    for runtime_key in _RUNTIME_FIELDS:
        if runtime_key in merged:
            raise InvalidConfigValueError(message=f"Unknown configuration key {runtime_key!r}", key=runtime_key)
    try:
        return Config.model_validate({
            **merged,
            "project_root": project_root,
            "config_path": config_path,
            "cli_filters": cli_filters,
        })
    except ValidationError as exc:
        key, message = _describe_validation_error(exc)
        raise InvalidConfigValueError(message=message, key=key) from exc


def load_config_file(path: Path) -> dict[str, Any]:
    """Read and parse a TOML configuration file.

    Args:
        path (Path): the file to read.

    Raises:
        ConfigParseError: if the file cannot be read or is not valid TOML.

    Returns:
        dict[str, Any]: the parsed table, with declaration order preserved.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigParseError(message=f"Cannot read config file {path}: {exc}", path=path) from exc
    try:
        return tomlkit.parse(text).unwrap()
    except TOMLKitError as exc:
        raise ConfigParseError(
            message=f"Error parsing config file {path}: {exc}. Check TOML syntax and structure.",
            path=path,
        ) from exc
