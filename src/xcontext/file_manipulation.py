from __future__ import annotations

import codecs
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum, auto
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, model_validator

from xcontext.walker import default_max_workers

if TYPE_CHECKING:
    from collections.abc import Sequence

    from xcontext.logging import RunContext
    from xcontext.walker import WalkEntry

SNIFF_WINDOW = 8000


class ContentKind(StrEnum):
    """How a file's content was classified."""

    TEXT = auto()
    BINARY = auto()
    TOO_LARGE = auto()
    UNREADABLE = auto()


@dataclass(frozen=True)
class ExtractedContent:
    """Result of reading one file."""

    kind: ContentKind
    size: int = 0
    text: str | None = None
    error: str | None = None


class FileEntry(BaseModel):
    """A file carried by the document, either inline or by reference to a chunk file."""

    model_config = ConfigDict(frozen=True)

    absolute_path: Path = Field(..., description="Absolute path on disk.")
    relative_path: str = Field(..., description="POSIX path relative to the project root.")
    byte_size: int = Field(default=0, description="Size of the UTF-8 content in bytes.")
    content: str | None = Field(default=None, description="Inline text content.")
    chunk_ref: str | None = Field(default=None, description="Chunk file holding the content.")

    @model_validator(mode="after")
    def _exactly_one_payload(self) -> FileEntry:
        if (self.content is None) == (self.chunk_ref is None):
            raise ValueError("exactly one of content and chunk_ref must be set")
        return self


@dataclass(frozen=True)
class SkippedFile:
    """A file left out of the document, and why."""

    relative_path: str
    kind: ContentKind
    reason: str

    def __str__(self) -> str:
        return f"{self.relative_path} ({self.kind}): {self.reason}"


@dataclass(frozen=True)
class ExtractionResult:
    files: tuple[FileEntry, ...] = ()
    skipped: tuple[SkippedFile, ...] = ()


def now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(UTC).isoformat()


def looks_like_text(sample: bytes, *, truncated: bool) -> bool:
    """Classify a leading sample of a file as text or binary.

    A NUL byte or invalid UTF-8 means binary. When the sample was cut from a
    longer file, a multi-byte sequence split at the window edge is tolerated.

    Args:
        sample (bytes): the first bytes of the file.
        truncated (bool): whether the file continues past the sample.

    Returns:
        bool: True if the sample looks like UTF-8 text.
    """
    if b"\x00" in sample:
        return False
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        decoder.decode(sample, final=not truncated)
    except UnicodeDecodeError:
        return False
    return True


def read_content(path: Path, *, max_file_size: int | None = None) -> ExtractedContent:
    """Read a file and classify its content.

    Args:
        path (Path): the file to read.
        max_file_size (int | None): files larger than this are not read; None means no limit.

    Returns:
        ExtractedContent: the text, or the reason it was not read.
    """
    try:
        size = path.stat().st_size
    except OSError as exc:
        return ExtractedContent(kind=ContentKind.UNREADABLE, error=str(exc))
    if max_file_size is not None and size > max_file_size:
        return ExtractedContent(
            kind=ContentKind.TOO_LARGE,
            size=size,
            error=f"{size} bytes exceeds the {max_file_size} byte limit",
        )
    try:
        data = path.read_bytes()
    except OSError as exc:
        return ExtractedContent(kind=ContentKind.UNREADABLE, size=size, error=str(exc))

    if not looks_like_text(data[:SNIFF_WINDOW], truncated=len(data) > SNIFF_WINDOW):
        return ExtractedContent(kind=ContentKind.BINARY, size=len(data), error="binary content")
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return ExtractedContent(kind=ContentKind.BINARY, size=len(data), error="not valid UTF-8")
    return ExtractedContent(kind=ContentKind.TEXT, size=len(data), text=text)


def extract_entries(
    root: Path,
    entries: Sequence[WalkEntry],
    *,
    ctx: RunContext,
    max_file_size: int | None = None,
    max_workers: int | None = None,
) -> ExtractionResult:
    """Read many files on a bounded pool, keeping the input order.

    Binary, oversized and unreadable files are logged and reported as skipped;
    none of them stops the run.

    Args:
        root (Path): the project root.
        entries (Sequence[WalkEntry]): the files to read, already ordered.
        ctx (RunContext): run context carrying the logger.
        max_file_size (int | None): per-file size limit in bytes.
        max_workers (int | None): pool size.

    Returns:
        ExtractionResult: text files as entries, everything else as skipped.
    """
    if not entries:
        return ExtractionResult()
    workers = max_workers or ctx.max_workers or default_max_workers()
    paths = [root / entry.relative_path for entry in entries]
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="xcontext-read") as pool:
        contents = list(pool.map(lambda p: read_content(p, max_file_size=max_file_size), paths))

    files: list[FileEntry] = []
    skipped: list[SkippedFile] = []
    for entry, path, extracted in zip(entries, paths, contents, strict=True):
        match extracted.kind:
            case ContentKind.TEXT:
                text = extracted.text or ""
                files.append(
                    FileEntry(
                        absolute_path=path,
                        relative_path=entry.relative_path,
                        byte_size=len(text.encode("utf-8")),
                        content=text,
                    ),
                )
                continue
            case ContentKind.BINARY:
                ctx.log.info("binary_file_skipped", path=entry.relative_path)
            case ContentKind.TOO_LARGE:
                ctx.log.info("large_file_skipped", path=entry.relative_path, size=extracted.size)
            case ContentKind.UNREADABLE:
                ctx.log.warning("file_unreadable", path=entry.relative_path, error=extracted.error)
        skipped.append(
            SkippedFile(relative_path=entry.relative_path, kind=extracted.kind, reason=extracted.error or ""),
        )
    return ExtractionResult(files=tuple(files), skipped=tuple(skipped))


def write_temporary(directory: Path, name: str, data: bytes) -> Path:
    """Write `data` to a hidden temporary file next to its final destination.

    Args:
        directory (Path): the destination directory.
        name (str): the final file name, used as the temporary's prefix.
        data (bytes): the content.

    Raises:
        OSError: if the file cannot be written; no temporary is left behind.

    Returns:
        Path: the temporary file, to be moved into place with `os.replace`.
    """
    handle = tempfile.NamedTemporaryFile(  # noqa: SIM115
        dir=directory,
        prefix=f".{name}.",
        suffix=".tmp",
        delete=False,
    )
    temporary = Path(handle.name)
    try:
        with handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
    except OSError:
        temporary.unlink(missing_ok=True)
        raise
    return temporary


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Replace `path` with `data` so readers never observe a partial file.

    Raises:
        OSError: if writing or renaming fails; the previous file is left untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temporary = write_temporary(path.parent, path.name, data)
    try:
        os.replace(temporary, path)
    except OSError:
        temporary.unlink(missing_ok=True)
        raise
