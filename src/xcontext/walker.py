from __future__ import annotations

import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from xcontext.config import IgnoreSection
from xcontext.exceptions import InvalidPatternError, RootUnreadableError
from xcontext.ignore import IGNORE_FILE_NAMES, read_ignore_file
from xcontext.patterns import compile_pattern

if TYPE_CHECKING:
    from xcontext.ignore import IgnoreRegistry
    from xcontext.logging import RunContext

DEFAULT_MAX_WORKERS = 12
WALKED_SECTIONS = (IgnoreSection.TREE, IgnoreSection.SOURCE, IgnoreSection.DOCS)


def default_max_workers() -> int:
    """Return the default size of the traversal and read pools."""
    return min(DEFAULT_MAX_WORKERS, os.cpu_count() or 1)


class TreeNode(BaseModel):
    """One entry of the project tree; directory children are ordered by path."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Entry name.")
    relative_path: str = Field(..., description="POSIX path relative to the project root.")
    is_directory: bool = Field(default=False)
    is_symlink: bool = Field(default=False)
    children: tuple[TreeNode, ...] = Field(default=())

    @property
    def kind(self) -> str:
        if self.is_symlink:
            return "symlink"
        return "directory" if self.is_directory else "file"


@dataclass(frozen=True)
class WalkEntry:
    """A directory entry and the sections that keep it."""

    relative_path: str
    name: str
    is_directory: bool
    is_symlink: bool
    size: int = 0
    sections: frozenset[IgnoreSection] = frozenset()


@dataclass(frozen=True)
class WalkIssue:
    """A per-entry failure that did not stop the walk."""

    relative_path: str
    message: str

    def __str__(self) -> str:
        return f"{self.relative_path or '.'}: {self.message}"


@dataclass(frozen=True)
class DirectoryListing:
    """What one worker found in one directory.

    `registry` is the filter in effect below the directory, including its own
    ignore files.
    """

    relative_path: str
    entries: tuple[WalkEntry, ...] = ()
    subdirectories: tuple[tuple[str, frozenset[IgnoreSection]], ...] = ()
    issues: tuple[WalkIssue, ...] = ()
    registry: IgnoreRegistry | None = None


@dataclass(frozen=True)
class ScanResult:
    """Deterministically ordered outcome of a project scan.

    Attributes:
        root: the scanned project root.
        tree: top-level tree nodes kept by the tree section.
        source_files: files kept by the source section and not by docs.
        docs_files: files kept by the docs section.
        symlinks: symlinks encountered (never followed).
        errors: per-entry failures.
    """

    root: Path
    tree: tuple[TreeNode, ...] = ()
    source_files: tuple[WalkEntry, ...] = ()
    docs_files: tuple[WalkEntry, ...] = ()
    symlinks: tuple[WalkEntry, ...] = ()
    errors: tuple[WalkIssue, ...] = field(default=())
    file_names: tuple[str, ...] = ()

    @property
    def all_files(self) -> tuple[str, ...]:
        """Relative paths of every regular file kept by at least one section."""
        return self.file_names


def _join(parent: str, name: str) -> str:
    return f"{parent}/{name}" if parent else name


def _apply_ignore_files(
    root: Path,
    relative_path: str,
    names: set[str],
    registry: IgnoreRegistry,
) -> tuple[IgnoreRegistry, list[WalkIssue]]:
    issues: list[WalkIssue] = []
    if not relative_path or not registry.uses_gitignore:
        return registry, issues
    for name in IGNORE_FILE_NAMES:
        if name not in names:
            continue
        patterns: list[str] = []
        for pattern in read_ignore_file(root / relative_path / name):
            try:
                compile_pattern(pattern)
            except InvalidPatternError as exc:
                issues.append(WalkIssue(relative_path=_join(relative_path, name), message=str(exc)))
                continue
            patterns.append(pattern)
        registry = registry.with_ignore_file(relative_path, patterns)
    return registry, issues


def list_directory(
    root: Path,
    relative_path: str,
    live: frozenset[IgnoreSection],
    registry: IgnoreRegistry,
) -> DirectoryListing:
    """List one directory and filter its entries for every live section.

    Args:
        root (Path): the project root.
        relative_path (str): the directory to list, relative to `root` ("" for the root).
        live (frozenset[IgnoreSection]): sections still traversing this directory.
        registry (IgnoreRegistry): the filter rules in effect for the directory; the
            `.gitignore` and `.ignore` files it holds are added before filtering.

    Raises:
        OSError: if the directory itself cannot be listed.

    Returns:
        DirectoryListing: the entries, the subdirectories to visit and any failures.
    """
    entries: list[WalkEntry] = []
    subdirectories: list[tuple[str, frozenset[IgnoreSection]]] = []
    with os.scandir(root / relative_path if relative_path else root) as iterator:
        dir_entries = sorted(iterator, key=lambda e: e.name)
    registry, issues = _apply_ignore_files(root, relative_path, {e.name for e in dir_entries}, registry)
    for dir_entry in dir_entries:
        rel = _join(relative_path, dir_entry.name)
        try:
            is_symlink = dir_entry.is_symlink()
            is_directory = not is_symlink and dir_entry.is_dir(follow_symlinks=False)
            size = 0 if is_directory else dir_entry.stat(follow_symlinks=False).st_size
        except OSError as exc:
            issues.append(WalkIssue(relative_path=rel, message=str(exc)))
            continue
        kept = frozenset(s for s in live if registry.decide(s, rel, is_directory=is_directory).included)
        if is_directory:
            descend = frozenset(s for s in live if registry.should_descend(s, rel))
            if descend:
                subdirectories.append((rel, descend))
        entries.append(
            WalkEntry(
                relative_path=rel,
                name=dir_entry.name,
                is_directory=is_directory,
                is_symlink=is_symlink,
                size=size,
                sections=kept,
            ),
        )
    return DirectoryListing(
        relative_path=relative_path,
        entries=tuple(entries),
        subdirectories=tuple(subdirectories),
        issues=tuple(issues),
        registry=registry,
    )


def _build_tree(
    relative_path: str,
    listings: dict[str, DirectoryListing],
    *,
    whitelist: bool,
) -> tuple[TreeNode, ...]:
    listing = listings.get(relative_path)
    if listing is None:
        return ()
    nodes: list[TreeNode] = []
    for entry in listing.entries:
        kept = IgnoreSection.TREE in entry.sections
        if not entry.is_directory:
            if kept:
                nodes.append(
                    TreeNode(name=entry.name, relative_path=entry.relative_path, is_symlink=entry.is_symlink),
                )
            continue
        children = _build_tree(entry.relative_path, listings, whitelist=whitelist)
        if children or (kept and not whitelist):
            nodes.append(
                TreeNode(
                    name=entry.name,
                    relative_path=entry.relative_path,
                    is_directory=True,
                    children=children,
                ),
            )
    return tuple(nodes)


def scan_project(
    root: Path,
    registry: IgnoreRegistry,
    *,
    ctx: RunContext,
    sections: frozenset[IgnoreSection] | None = None,
    max_workers: int | None = None,
) -> ScanResult:
    """Walk the project once, in parallel, for every enabled section.

    Each worker lists a single directory; the submitting thread schedules the
    subdirectories it reports and finally merges all listings by relative
    path, so the result does not depend on completion order. Symlinks are
    recorded as leaves and never followed. Ignore files met along the way
    apply to their directory's subtree.

    Args:
        root (Path): the project root.
        registry (IgnoreRegistry): compiled filter rules.
        ctx (RunContext): run context carrying the logger.
        sections (frozenset[IgnoreSection] | None): sections to collect; defaults to tree, source and docs.
        max_workers (int | None): pool size; defaults to `min(12, cpu_count)`.

    Raises:
        RootUnreadableError: if the root cannot be listed.

    Returns:
        ScanResult: the ordered scan result.
    """
    live = frozenset(sections if sections is not None else WALKED_SECTIONS) - {IgnoreSection.COMMON}
    workers = max_workers or ctx.max_workers or default_max_workers()
    listings: dict[str, DirectoryListing] = {}
    issues: list[WalkIssue] = []

    try:
        listings[""] = list_directory(root, "", live, registry)
    except OSError as exc:
        raise RootUnreadableError(message=f"Cannot read project root {root}: {exc}", root=root) from exc

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="xcontext-walk") as pool:
        pending: dict[Future[DirectoryListing], str] = {}

        def schedule(listing: DirectoryListing) -> None:
            for rel, descend in listing.subdirectories:
                pending[pool.submit(list_directory, root, rel, descend, listing.registry or registry)] = rel

        schedule(listings[""])
        while pending:
            done, _ = wait(pending, return_when=FIRST_COMPLETED)
            for future in done:
                rel = pending.pop(future)
                try:
                    listing = future.result()
                except OSError as exc:
                    issues.append(WalkIssue(relative_path=rel, message=str(exc)))
                    continue
                listings[rel] = listing
                schedule(listing)

    source: list[WalkEntry] = []
    docs: list[WalkEntry] = []
    symlinks: list[WalkEntry] = []
    file_names: list[str] = []
    for rel in sorted(listings):
        listing = listings[rel]
        issues.extend(listing.issues)
        for entry in listing.entries:
            if entry.is_directory:
                continue
            if entry.is_symlink:
                if entry.sections:
                    symlinks.append(entry)
                    ctx.log.info("symlink_not_followed", path=entry.relative_path)
                continue
            if not entry.sections:
                continue
            file_names.append(entry.relative_path)
            if IgnoreSection.DOCS in entry.sections:
                docs.append(entry)
            elif IgnoreSection.SOURCE in entry.sections:
                source.append(entry)

    tree: tuple[TreeNode, ...] = ()
    if IgnoreSection.TREE in live:
        tree = _build_tree("", listings, whitelist=registry.is_whitelist(IgnoreSection.TREE))
    for issue in issues:
        ctx.log.warning("walk_entry_failed", path=issue.relative_path, error=issue.message)

    def by_path(entry: WalkEntry) -> str:
        return entry.relative_path

    result = ScanResult(
        root=root,
        tree=tree,
        source_files=tuple(sorted(source, key=by_path)),
        docs_files=tuple(sorted(docs, key=by_path)),
        symlinks=tuple(sorted(symlinks, key=by_path)),
        errors=tuple(sorted(issues, key=lambda i: i.relative_path)),
        file_names=tuple(sorted(file_names)),
    )
    ctx.log.debug(
        "scan_complete",
        directories=len(listings),
        source_files=len(result.source_files),
        docs_files=len(result.docs_files),
        symlinks=len(result.symlinks),
        errors=len(result.errors),
    )
    return result
