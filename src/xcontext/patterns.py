"""Gitignore-compatible glob matching.

Patterns follow gitignore syntax: `*` matches a run of non-separator
characters, `**` matches across separators, `?` one character, `[...]` a
character class. A pattern containing a separator (other than a trailing one)
is anchored to the filter root; a pattern without one matches the basename at
any depth. A leading `!` only flips the rule's polarity, which the ignore
registry consumes; matching itself ignores it.

A pattern ending in `/` is directory-recursive: it matches the named directory
and every descendant. It is rewritten once, at compile time, to
`<pattern>**` (keeping its anchoring), so per-path matching is a single regex
search.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache

from pathspec.patterns.gitwildmatch import GitWildMatchPattern, GitWildMatchPatternError

from xcontext.exceptions import InvalidPatternError


@dataclass(frozen=True)
class CompiledPattern:
    """A pattern translated to a regular expression, ready for matching.

    Attributes:
        source: the pattern as written by the user (including any `!`).
        body: the pattern with negation stripped and whitespace trimmed.
        negated: whether the source started with `!`.
        directory_recursive: whether the source ended with `/`.
        regex: the compiled expression matched against normalized paths.
    """

    source: str
    body: str
    negated: bool
    directory_recursive: bool
    regex: re.Pattern[str]

    def matches(self, path: str, *, is_directory: bool = False) -> bool:
        """Match a relative POSIX path against this pattern.

        Args:
            path (str): path relative to the filter root.
            is_directory (bool): whether `path` names a directory.

        Returns:
            bool: True when the pattern matches the path.
        """
        rel = normalize_path(path)
        if not rel:
            return False
        if self.regex.match(rel):
            return True
        return is_directory and bool(self.regex.match(rel + "/"))

    @property
    def literal_prefix(self) -> str:
        """Leading part of an anchored pattern that contains no glob characters.

        Used by the registry to tell whether a re-inclusion rule can reach
        anything inside an excluded directory. Unanchored patterns have no
        prefix.
        """
        body = self.body.lstrip("/")
        if "/" not in self.body.rstrip("/"):
            return ""
        prefix = []
        for char in body:
            if char in "*?[\\":
                break
            prefix.append(char)
        return "".join(prefix)


def normalize_path(path: str) -> str:
    """Normalize a relative path for matching: POSIX separators, no `./`, no trailing `/`.

    Args:
        path (str): the path to normalize.

    Returns:
        str: the normalized path.
    """
    rel = path.replace("\\", "/")
    while rel.startswith("./"):
        rel = rel[2:]
    return rel.strip("/")


def _check_character_classes(body: str) -> None:
    i = 0
    while i < len(body):
        char = body[i]
        if char == "\\":
            i += 2
            continue
        if char == "[":
            close = i + 1
            if close < len(body) and body[close] in "!^":
                close += 1
            if close < len(body) and body[close] == "]":
                close += 1
            end = body.find("]", close)
            if end == -1:
                raise InvalidPatternError(
                    message=f"Invalid glob pattern {body!r}: unterminated character class",
                    pattern=body,
                )
            i = end + 1
            continue
        i += 1


def _expand_directory_pattern(body: str) -> str:
    base = body.rstrip("/")
    if "/" in base:
        return f"{base}/**"
    return f"**/{base}/**"


@lru_cache(maxsize=4096)
def compile_pattern(pattern: str) -> CompiledPattern:
    """Compile a gitignore-style pattern.

    Args:
        pattern (str): the pattern, optionally starting with `!` and/or ending with `/`.

    Raises:
        InvalidPatternError: if the pattern is empty or not valid glob syntax.

    Returns:
        CompiledPattern: the compiled pattern.
    """
    source = pattern
    text = pattern.strip()
    negated = text.startswith("!")
    body = text[1:] if negated else text
    if not body or body in {"/", "!"}:
        raise InvalidPatternError(message=f"Invalid glob pattern {source!r}: empty pattern", pattern=source)
    _check_character_classes(body)

    directory_recursive = body.endswith("/")
    translated = _expand_directory_pattern(body) if directory_recursive else body
    try:
        regex, include = GitWildMatchPattern.pattern_to_regex(translated)
    except GitWildMatchPatternError as exc:
        raise InvalidPatternError(message=f"Invalid glob pattern {source!r}: {exc}", pattern=source) from exc
    if regex is None or include is None:
        raise InvalidPatternError(message=f"Invalid glob pattern {source!r}: matches nothing", pattern=source)
    try:
        compiled = re.compile(regex)
    except re.error as exc:
        raise InvalidPatternError(message=f"Invalid glob pattern {source!r}: {exc}", pattern=source) from exc

    return CompiledPattern(
        source=source,
        body=body,
        negated=negated,
        directory_recursive=directory_recursive,
        regex=compiled,
    )


def matches(path: str, pattern: str, *, is_directory: bool = False) -> bool:
    """Check whether `path` matches the gitignore-style `pattern`.

    Negation is a polarity concern and is ignored here: `!foo` matches what
    `foo` matches.

    Args:
        path (str): path relative to the filter root.
        pattern (str): the glob pattern.
        is_directory (bool): whether `path` names a directory.

    Returns:
        bool: True when the pattern matches.
    """
    return compile_pattern(pattern).matches(path, is_directory=is_directory)


def validate_patterns(patterns: list[str]) -> list[str]:
    """Compile every pattern eagerly so a broken filter fails before any traversal.

    Args:
        patterns (list[str]): the patterns to check.

    Raises:
        InvalidPatternError: on the first invalid pattern.

    Returns:
        list[str]: the same patterns, stripped of surrounding whitespace.
    """
    cleaned = [p.strip() for p in patterns]
    for pattern in cleaned:
        compile_pattern(pattern)
    return cleaned


_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def escape_glob(text: str) -> str:
    """Escape glob metacharacters so `text` only matches itself."""
    return _GLOB_SPECIAL.sub(r"\\\1", text)


def anchor_pattern(pattern: str, directory: str) -> str:
    """Rewrite a pattern read from `<directory>/.gitignore` relative to the filter root.

    A pattern without an inner separator matches at any depth below
    `directory`; an anchored one is joined to it. Negation is kept.

    Args:
        pattern (str): the pattern as written in the nested ignore file.
        directory (str): the ignore file's directory, relative to the filter root.

    Raises:
        InvalidPatternError: if the pattern is invalid.

    Returns:
        str: the equivalent pattern for the filter root.
    """
    compiled = compile_pattern(pattern)
    prefix = escape_glob(normalize_path(directory))
    if not prefix:
        return compiled.source.strip()
    body = compiled.body
    if "/" in body.rstrip("/"):
        anchored = f"{prefix}/{body.lstrip('/')}"
    else:
        anchored = f"{prefix}/**/{body}"
    return f"!{anchored}" if compiled.negated else anchored
