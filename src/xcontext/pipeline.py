from __future__ import annotations

import sys
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from xcontext.chunking import ChunkManifest, plan_chunks, referenced_entries, write_chunks
from xcontext.config import IgnoreSection
from xcontext.exceptions import OutputWriteError, WriteFailureReason
from xcontext.file_manipulation import FileEntry, atomic_write_bytes, extract_entries, now_iso
from xcontext.ignore import IgnoreRegistry
from xcontext.output_construction import ContextDocument, build_document, serialize
from xcontext.rules import detect_characteristics, resolve_prompts, resolve_rules
from xcontext.system import gather_system_info
from xcontext.walker import scan_project

if TYPE_CHECKING:
    from typing import BinaryIO

    from xcontext.config import Config
    from xcontext.logging import RunContext
    from xcontext.system import SystemInfo


class GenerationReport(BaseModel):
    """Side effects of one generation pass."""

    files_written: list[Path] = Field(default_factory=list, description="Chunk and output files written.")
    errors: list[str] = Field(default_factory=list, description="Recovered per-entry failures.")
    skipped: list[str] = Field(default_factory=list, description="Files left out, with the reason.")


class GenerationResult(BaseModel):
    """The document of one pass, its encoded form and its report."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    document: ContextDocument
    data: bytes
    report: GenerationReport
    manifest: ChunkManifest | None = None
    source_entries: list[FileEntry] = Field(default_factory=list, description="Source files, inline or by chunk.")


def output_path(config: Config) -> Path:
    """Where the document is saved: `<save_dir>/<filename_base>.<ext>`."""
    return config.save_dir / f"{config.filename_base}.{config.save_extension}"


def run_generation(
    config: Config,
    *,
    ctx: RunContext,
    timestamp: str | None = None,
    system_info: SystemInfo | None = None,
    output_file: Path | None = None,
) -> GenerationResult:
    """Run one full pass: filter, walk, read, chunk, aggregate rules, assemble, encode.

    Args:
        config (Config): the effective configuration.
        ctx (RunContext): run context carrying the logger and pool size.
        timestamp (str | None): generation time; defaults to now.
        system_info (SystemInfo | None): machine description; gathered when needed and not given.
        output_file (Path | None): where the document will be saved; defaults to `output_path(config)`.
            It is never read back, nor are its temporaries.

    Raises:
        InvalidPatternError: if a filter pattern cannot be compiled.
        RootUnreadableError: if the project root cannot be listed.
        UnknownStaticRuleError: if an explicitly requested rule set does not exist.
        ChunkWriteError: if chunk files cannot be written.

    Returns:
        GenerationResult: the document, its encoded bytes and the side-effect report.
    """
    log = ctx.log.bind(project_root=str(config.project_root))
    report = GenerationReport()
    registry = IgnoreRegistry.compile(config, output_file=output_file or output_path(config))
    sections = frozenset(
        section
        for section in (IgnoreSection.TREE, IgnoreSection.SOURCE, IgnoreSection.DOCS)
        if config.section_enabled(section)
    )
    scan = scan_project(config.project_root, registry, ctx=ctx, sections=sections)
    report.errors.extend(str(issue) for issue in scan.errors)
    report.skipped.extend(f"{link.relative_path} (symlink): not followed" for link in scan.symlinks)

    max_file_size = config.general.max_file_size
    docs = extract_entries(config.project_root, scan.docs_files, ctx=ctx, max_file_size=max_file_size)
    source = extract_entries(config.project_root, scan.source_files, ctx=ctx, max_file_size=max_file_size)
    report.skipped.extend(str(item) for item in (*docs.skipped, *source.skipped))

    manifest: ChunkManifest | None = None
    source_entries = list(source.files)
    if config.source.chunk_size is not None:
        plan = plan_chunks(source.files, config.source.chunk_size)
        report.skipped.extend(
            f"{entry.relative_path} (empty): not chunked" for entry in source.files if not entry.byte_size
        )
        manifest = write_chunks(plan, config.save_dir, config.filename_base, minify=config.output.minify)
        source_entries = referenced_entries(plan, manifest)
        report.files_written.extend(manifest.paths)
        log.info("chunks_written", count=len(manifest.paths), directory=str(config.save_dir))

    rules = resolve_rules(config, characteristics=detect_characteristics(scan.all_files), ctx=ctx)
    prompts = resolve_prompts(config, ctx=ctx)
    if config.output.include_system_info and system_info is None:
        system_info = gather_system_info()

    document = build_document(
        config,
        tree=scan.tree,
        docs=docs.files,
        source_files=source.files,
        manifest=manifest,
        rules=rules,
        prompts=prompts,
        system_info=system_info,
        timestamp=timestamp or now_iso(),
    )
    data = serialize(
        document,
        config.output.format,
        minify=config.output.minify,
        xml_pretty=config.output.xml_pretty_print,
    )
    log.info(
        "context_generated",
        format=str(config.output.format),
        docs=len(docs.files),
        source=len(source.files),
        rules=len(rules),
        skipped=len(report.skipped),
        errors=len(report.errors),
    )
    return GenerationResult(
        document=document,
        data=data,
        report=report,
        manifest=manifest,
        source_entries=source_entries,
    )


def write_output(data: bytes, path: Path) -> Path:
    """Atomically write the encoded document to `path`.

    Raises:
        OutputWriteError: if the file cannot be written; any previous file is left untouched.
    """
    try:
        atomic_write_bytes(path, data)
    except OSError as exc:
        reason = WriteFailureReason.from_os_error(exc)
        raise OutputWriteError(message=f"Failed to write {path}: {exc} ({reason})", path=path, reason=reason) from exc
    return path


def deliver(
    result: GenerationResult,
    config: Config,
    *,
    ctx: RunContext,
    to_stdout: bool = False,
    output_file: Path | None = None,
    stream: BinaryIO | None = None,
) -> Path | None:
    """Send the encoded document to stdout or to its output file.

    Args:
        result (GenerationResult): the pass to deliver.
        config (Config): the effective configuration.
        ctx (RunContext): run context carrying the logger.
        to_stdout (bool): print instead of saving.
        output_file (Path | None): explicit destination; defaults to `output_path(config)`.
        stream (BinaryIO | None): stream used with `to_stdout`; defaults to stdout.

    Raises:
        OutputWriteError: if the output file cannot be written.

    Returns:
        Path | None: the file written, or None when printed.
    """
    if to_stdout:
        out = stream or sys.stdout.buffer
        out.write(result.data)
        if not result.data.endswith(b"\n"):
            out.write(b"\n")
        out.flush()
        return None
    destination = output_file or output_path(config)
    write_output(result.data, destination)
    result.report.files_written.append(destination)
    ctx.log.info("context_saved", path=str(destination), size=len(result.data))
    return destination
