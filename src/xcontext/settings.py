from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import tomlkit
from dotenv import dotenv_values, find_dotenv
from pydantic import BaseModel, ConfigDict, Field
from tomlkit.exceptions import TOMLKitError

from xcontext.config import (
    DEFAULT_CONFIG_DIR,
    DEFAULT_CONFIG_FILENAME,
    Config,
    default_layer,
    load_config_file,
    resolve_config,
)
from xcontext.exceptions import ConfigParseError, InvalidConfigValueError

ENV_FILE = find_dotenv(usecwd=True)
PROJECT_ROOT_ENV = "PROJECT_ROOT"


def determine_project_root(path: str | Path | None = None, *, env_file: str | None = None) -> Path:
    """Pick the project root: explicit path, then `PROJECT_ROOT`, then the CWD.

    `PROJECT_ROOT` is read from the process environment first and from the
    nearest `.env` file second.

    Args:
        path (str | Path | None): explicit root given by the caller.
        env_file (str | None): `.env` file to consult; defaults to the one found from the CWD.

    Returns:
        Path: the absolute project root.
    """
    if path:
        return Path(path).expanduser().resolve()
    from_env = os.environ.get(PROJECT_ROOT_ENV)
    if not from_env:
        dotenv_path = ENV_FILE if env_file is None else env_file
        if dotenv_path:
            from_env = dotenv_values(dotenv_path).get(PROJECT_ROOT_ENV)
    if from_env:
        return Path(from_env).expanduser().resolve()
    return Path.cwd().resolve()


def resolve_config_path(
    project_root: Path,
    config_file: str | Path | None = None,
    *,
    disable: bool = False,
) -> Path | None:
    """Find the configuration file for a run.

    A bare name (`custom` or `custom.toml`) is looked up in the project's
    config directory; any other explicit path is taken relative to the CWD.
    `.toml` is appended when the explicit path has no suffix. Without an
    explicit path the default file is used if it exists.

    Args:
        project_root (Path): the project root.
        config_file (str | Path | None): explicit config file or name.
        disable (bool): ignore every config file.

    Raises:
        ConfigParseError: if an explicitly requested file does not exist.

    Returns:
        Path | None: the config file to load, or None to run on defaults.
    """
    if disable:
        return None
    config_dir = project_root / DEFAULT_CONFIG_DIR
    if config_file is None:
        default = config_dir / DEFAULT_CONFIG_FILENAME
        return default if default.is_file() else None

    requested = Path(config_file).expanduser()
    if not requested.suffix:
        requested = requested.with_suffix(".toml")
    if not requested.is_absolute() and len(requested.parts) == 1:
        candidate = config_dir / requested
        if candidate.is_file():
            return candidate
    if requested.is_file():
        return requested.resolve()
    raise ConfigParseError(message=f"Config file not found: {config_file}", path=requested)


class Settings(BaseModel):
    """Options of one CLI invocation, before they become config overrides."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    command: str = Field(default="generate", description="generate or watch.")
    project_root: Path | None = Field(default=None, description="Project root directory.")
    config_file: str | None = Field(default=None, description="Config file path or name.")
    no_config: bool = Field(default=False, description="Ignore every config file.")
    log_file: str = Field(default="", description="Log file path.")
    verbose: int = Field(default=0, description="Number of -v flags.")
    quiet: bool = Field(default=False, description="Only log warnings and errors.")
    max_workers: int | None = Field(default=None, description="Upper bound on worker threads.")

    stdout: bool = Field(default=False, description="Print the document instead of saving it.")
    output_file: Path | None = Field(default=None, description="Explicit output file.")

    format: str | None = Field(default=None, description="json, yaml or xml.")
    minify: bool | None = Field(default=None, description="Minify JSON output.")
    chunk_size: str | None = Field(default=None, description="Split source into chunks, e.g. 5MB.")
    use_gitignore: bool | None = Field(default=None, description="Apply .gitignore rules.")
    enable_builtin_ignore: bool | None = Field(default=None, description="Apply built-in ignores.")
    project_name: str | None = Field(default=None, description="Project name.")
    output_dir: str | None = Field(default=None, description="Save directory.")
    delay: str | None = Field(default=None, description="Watch debounce delay, e.g. 300ms.")

    include: list[str] = Field(default_factory=list, description="Include glob for every section.")
    exclude: list[str] = Field(default_factory=list, description="Exclude glob for every section.")
    source_include: list[str] = Field(default_factory=list, description="Include glob for source.")
    source_exclude: list[str] = Field(default_factory=list, description="Exclude glob for source.")
    tree_include: list[str] = Field(default_factory=list, description="Include glob for tree.")
    tree_exclude: list[str] = Field(default_factory=list, description="Exclude glob for tree.")
    docs_include: list[str] = Field(default_factory=list, description="Include glob for docs.")
    docs_exclude: list[str] = Field(default_factory=list, description="Exclude glob for docs.")
    set: list[str] = Field(default_factory=list, description="Raw key=value overrides.")

    def overrides(self) -> dict[str, Any]:
        """Build the flat override record handed to the config resolver.

        Unset flags are left out so lower layers show through. `--set key=value`
        values are parsed as TOML scalars when possible (`true`, `3`, `"x"`).

        Returns:
            dict[str, Any]: the override record.
        """
        record: dict[str, Any] = {
            "format": self.format,
            "minify": self.minify,
            "chunk_size": self.chunk_size,
            "use_gitignore": self.use_gitignore,
            "enable_builtin_ignore": self.enable_builtin_ignore,
            "project_name": self.project_name,
            "output_dir": self.output_dir,
            "delay": self.delay,
        }
        filters = {
            "common_filters.include": self.include,
            "common_filters.exclude": self.exclude,
            "source.include": self.source_include,
            "source.exclude": self.source_exclude,
            "tree.include": self.tree_include,
            "tree.exclude": self.tree_exclude,
            "docs.include": self.docs_include,
            "docs.exclude": self.docs_exclude,
        }
        record.update({key: value for key, value in filters.items() if value})
        for item in self.set:
            key, sep, raw = item.partition("=")
            if not sep:
                raise InvalidConfigValueError(message=f"Invalid --set value {item!r}; expected key=value", key=item)
            record[key.strip()] = _parse_scalar(raw.strip())
        return {key: value for key, value in record.items() if value is not None}


def _parse_scalar(raw: str) -> Any:  # noqa: ANN401
    try:
        return tomlkit.parse(f"value = {raw}").unwrap()["value"]
    except TOMLKitError:
        return raw


def load_config(
    project_root: Path,
    overrides: dict[str, Any] | None = None,
    *,
    config_file: str | Path | None = None,
    disable_config: bool = False,
) -> Config:
    """Discover, read and resolve the configuration for a project.

    Args:
        project_root (Path): the absolute project root.
        overrides (dict[str, Any] | None): flat CLI override record.
        config_file (str | Path | None): explicit config file or name.
        disable_config (bool): run on defaults and overrides only.

    Returns:
        Config: the effective configuration.
    """
    config_path = resolve_config_path(project_root, config_file, disable=disable_config)
    file_layer = load_config_file(config_path) if config_path else None
    return resolve_config(
        default_layer(),
        file_layer,
        overrides,
        project_root=project_root,
        config_path=config_path,
    )
