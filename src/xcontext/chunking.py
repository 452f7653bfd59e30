from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from xcontext.config import parse_byte_size
from xcontext.exceptions import ChunkWriteError, WriteFailureReason
from xcontext.file_manipulation import FileEntry, write_temporary

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = [
    "ChunkManifest",
    "chunk_filename",
    "chunk_payload",
    "parse_byte_size",
    "plan_chunks",
    "referenced_entries",
    "write_chunks",
]


class ChunkManifest(BaseModel):
    """Chunk files written for one run, in part order."""

    model_config = ConfigDict(frozen=True)

    paths: tuple[Path, ...] = Field(default=(), description="Absolute chunk file paths.")

    @property
    def names(self) -> list[str]:
        """Chunk file names, as listed in the document's source section."""
        return [path.name for path in self.paths]


def chunk_filename(filename_base: str, part: int) -> str:
    return f"{filename_base}_chunk_{part}.json"


def plan_chunks(files: Sequence[FileEntry], target_size: int) -> list[list[FileEntry]]:
    """Group files into chunks of at most `target_size` bytes, in order.

    Greedy and single pass: a file joins the current chunk while the total
    stays within the target, otherwise it starts a new chunk. Files are never
    split. A file larger than the target closes the current chunk and gets a
    chunk of its own. Empty files are left out.

    Args:
        files (Sequence[FileEntry]): inline file entries, already ordered.
        target_size (int): maximum chunk size in bytes.

    Raises:
        ValueError: if `target_size` is not positive.

    Returns:
        list[list[FileEntry]]: the chunks, in order.
    """
    if target_size <= 0:
        raise ValueError(f"Chunk size must be greater than 0, got {target_size}")
    chunks: list[list[FileEntry]] = []
    current: list[FileEntry] = []
    current_size = 0
    for entry in files:
        size = entry.byte_size
        if size == 0:
            continue
        if size > target_size:
            if current:
                chunks.append(current)
                current, current_size = [], 0
            chunks.append([entry])
            continue
        if current and current_size + size > target_size:
            chunks.append(current)
            current, current_size = [], 0
        current.append(entry)
        current_size += size
    if current:
        chunks.append(current)
    return chunks


def chunk_payload(chunk: Sequence[FileEntry], part: int, total: int) -> dict[str, Any]:
    """Build the JSON object stored in one chunk file."""
    return {
        "files": [{"path": entry.relative_path, "content": entry.content or ""} for entry in chunk],
        "chunk_info": {"current_part": part, "total_parts": total},
    }


def _encode(payload: dict[str, Any], *, minify: bool) -> bytes:
    if minify:
        text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    else:
        text = json.dumps(payload, ensure_ascii=False, indent=2)
    return text.encode("utf-8")


def _chunk_write_error(path: Path, exc: OSError) -> ChunkWriteError:
    reason = WriteFailureReason.from_os_error(exc)
    return ChunkWriteError(message=f"Failed to write chunk file {path}: {exc} ({reason})", path=path, reason=reason)


def _remove_stale_chunks(save_dir: Path, filename_base: str, total: int) -> None:
    pattern = re.compile(rf"^{re.escape(filename_base)}_chunk_(\d+)\.json$")
    for candidate in save_dir.iterdir():
        match = pattern.match(candidate.name)
        if match and int(match.group(1)) > total:
            try:
                candidate.unlink(missing_ok=True)
            except OSError as exc:
                raise _chunk_write_error(candidate, exc) from exc


def write_chunks(
    plan: Sequence[Sequence[FileEntry]],
    save_dir: Path,
    filename_base: str,
    *,
    minify: bool = True,
) -> ChunkManifest:
    """Write every chunk to `<save_dir>/<base>_chunk_<n>.json`.

    All chunks are first written to temporary files and only then renamed into
    place, so a failure leaves the previous run's chunk files as they were.
    Chunk files numbered beyond the new total are removed afterwards.

    Args:
        plan (Sequence[Sequence[FileEntry]]): chunks from `plan_chunks`.
        save_dir (Path): destination directory, created if needed.
        filename_base (str): file name prefix.
        minify (bool): write compact JSON.

    Raises:
        ChunkWriteError: if any chunk cannot be written.

    Returns:
        ChunkManifest: the chunk file paths in part order.
    """
    total = len(plan)
    targets = [save_dir / chunk_filename(filename_base, part) for part in range(1, total + 1)]
    try:
        save_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise _chunk_write_error(save_dir, exc) from exc

    temporaries: list[Path] = []
    try:
        for part, (chunk, target) in enumerate(zip(plan, targets, strict=True), start=1):
            data = _encode(chunk_payload(chunk, part, total), minify=minify)
            try:
                temporaries.append(write_temporary(save_dir, target.name, data))
            except OSError as exc:
                raise _chunk_write_error(target, exc) from exc
        for temporary, target in zip(temporaries, targets, strict=True):
            try:
                os.replace(temporary, target)
            except OSError as exc:
                raise _chunk_write_error(target, exc) from exc
    finally:
        for temporary in temporaries:
            temporary.unlink(missing_ok=True)

    _remove_stale_chunks(save_dir, filename_base, total)
    return ChunkManifest(paths=tuple(targets))


def referenced_entries(plan: Sequence[Sequence[FileEntry]], manifest: ChunkManifest) -> list[FileEntry]:
    """Replace inline content with a reference to the chunk file holding it."""
    return [
        FileEntry(
            absolute_path=entry.absolute_path,
            relative_path=entry.relative_path,
            byte_size=entry.byte_size,
            chunk_ref=name,
        )
        for chunk, name in zip(plan, manifest.names, strict=True)
        for entry in chunk
    ]
