from __future__ import annotations

import pytest

from xcontext.exceptions import InvalidPatternError
from xcontext.patterns import anchor_pattern, compile_pattern, escape_glob, matches, normalize_path, validate_patterns


@pytest.mark.unit
def test_normalize_path_strips_dot_slash_and_separators() -> None:
    assert normalize_path("./src\\app.py") == "src/app.py"
    assert normalize_path("docs/") == "docs"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("path", "pattern", "expected"),
    [
        ("app.py", "*.py", True),
        ("src/deep/app.py", "*.py", True),
        ("src/app.pyc", "*.py", False),
        ("src/app.py", "src/*.py", True),
        ("src/deep/app.py", "src/*.py", False),
        ("src/deep/app.py", "src/**/*.py", True),
        ("a.rs", "?.rs", True),
        ("ab.rs", "?.rs", False),
        ("b.txt", "[ab].txt", True),
        ("c.txt", "[ab].txt", False),
        ("nested/build/out.o", "/build/out.o", False),
        ("build/out.o", "/build/out.o", True),
    ],
)
def test_matches_follows_gitignore_globs(path: str, pattern: str, expected: bool) -> None:  # noqa: FBT001
    assert matches(path, pattern) is expected


@pytest.mark.unit
def test_directory_pattern_matches_directory_and_descendants_at_any_depth() -> None:
    assert matches("node_modules", "node_modules/", is_directory=True)
    assert matches("node_modules/pkg/index.js", "node_modules/")
    assert matches("web/node_modules/pkg/index.js", "node_modules/")
    assert not matches("node_modules", "node_modules/", is_directory=False)
    assert not matches("node_modules_backup/x.js", "node_modules/")


@pytest.mark.unit
def test_anchored_directory_pattern_only_matches_from_root() -> None:
    assert matches("target/keep.txt", "target/keep.txt")
    assert matches("build/x", "/build/")
    assert not matches("sub/build/x", "/build/")


@pytest.mark.unit
def test_negation_is_ignored_by_matching() -> None:
    pattern = compile_pattern("!target/keep.txt")

    assert pattern.negated
    assert pattern.body == "target/keep.txt"
    assert matches("target/keep.txt", "!target/keep.txt")


@pytest.mark.unit
def test_literal_prefix_of_anchored_and_unanchored_patterns() -> None:
    assert compile_pattern("target/keep.txt").literal_prefix == "target/keep.txt"
    assert compile_pattern("target/*.log").literal_prefix == "target/"
    assert compile_pattern("*.log").literal_prefix == ""


@pytest.mark.unit
@pytest.mark.parametrize("pattern", ["", "   ", "!", "src/[ab.py"])
def test_compile_pattern_rejects_invalid_patterns(pattern: str) -> None:
    with pytest.raises(InvalidPatternError):
        compile_pattern(pattern)


@pytest.mark.unit
def test_validate_patterns_strips_and_fails_fast() -> None:
    assert validate_patterns(["  *.py ", "docs/"]) == ["*.py", "docs/"]

    with pytest.raises(InvalidPatternError) as exc_info:
        validate_patterns(["*.py", "[oops"])

    assert exc_info.value.pattern == "[oops"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("pattern", "expected"),
    [
        ("secret.py", "pkg/**/secret.py"),
        ("/build/", "pkg/build/"),
        ("gen/", "pkg/**/gen/"),
        ("data/*.csv", "pkg/data/*.csv"),
        ("!keep.py", "!pkg/**/keep.py"),
    ],
)
def test_anchor_pattern_joins_nested_ignore_lines_to_their_directory(pattern: str, expected: str) -> None:
    assert anchor_pattern(pattern, "pkg") == expected
    assert anchor_pattern(pattern, "") == pattern


@pytest.mark.unit
def test_escaped_directory_only_matches_itself() -> None:
    anchored = anchor_pattern("*.py", "odd[1]")

    assert anchored == f"{escape_glob('odd[1]')}/**/*.py"
    assert matches("odd[1]/app.py", anchored)
    assert not matches("odd1/app.py", anchored)
