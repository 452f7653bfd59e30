"""Assemble the context document and serialize it.

Every format is rendered from the same canonical payload, an ordered mapping
whose keys follow `DOCUMENT_FIELD_ORDER`. Optional sections that are disabled
or empty are left out; the relative order of the others never changes.
"""

from __future__ import annotations

import json
import re
import xml.etree.ElementTree as ET
from functools import lru_cache
from importlib import resources
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from xcontext.config import OutputFormat
from xcontext.walker import TreeNode  # noqa: TC001

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from xcontext.chunking import ChunkManifest
    from xcontext.config import Config
    from xcontext.file_manipulation import FileEntry
    from xcontext.rules import RuleSet
    from xcontext.system import SystemInfo

AI_README_RESOURCE = "data/ai_readme.yaml"
XML_ROOT = "ProjectContext"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

DOCUMENT_FIELD_ORDER = (
    "ai_readme",
    "project_name",
    "project_root",
    "system_info",
    "meta",
    "docs",
    "tree",
    "source",
    "rules",
    "prompts",
    "generation_timestamp",
)

# Array fields and the element name of their items.
_XML_ITEM_TAGS = {
    "docs": "file",
    "files": "file",
    "tree": "node",
    "children": "node",
    "chunks": "chunk",
    "ruleset": "rule",
}
# Mapping fields whose keys are user data; rendered as items with a key attribute.
_XML_KEYED_MAPPINGS = {
    "meta": ("entry", "key"),
    "rules": ("ruleset", "name"),
    "prompts": ("prompt", "name"),
}
_XML_ILLEGAL = re.compile("[^\t\n\r\x20-\ud7ff\ue000-\ufffd\U00010000-\U0010ffff]")


class FileContext(BaseModel):
    """A file as it appears in the document."""

    model_config = ConfigDict(frozen=True)

    path: str
    content: str


class SourceSection(BaseModel):
    """Source files, either inline or as a list of chunk file names."""

    model_config = ConfigDict(frozen=True)

    files: list[FileContext] | None = None
    chunks: list[str] | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> SourceSection:
        if (self.files is None) == (self.chunks is None):
            raise ValueError("source carries exactly one of files and chunks")
        return self


class ContextDocument(BaseModel):
    """The structured project snapshot, in canonical field order."""

    model_config = ConfigDict(frozen=True)

    ai_readme: str = Field(default="", description="What the document contains and how to read it.")
    project_name: str | None = None
    project_root: str | None = None
    system_info: dict[str, str] | None = None
    meta: dict[str, str] | None = None
    docs: list[FileContext] | None = None
    tree: list[TreeNode] | None = None
    source: SourceSection | None = None
    rules: dict[str, list[str]] | None = None
    prompts: dict[str, str] | None = None
    generation_timestamp: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Return the canonical ordered payload every serializer renders."""
        payload: dict[str, Any] = {}
        for name in DOCUMENT_FIELD_ORDER:
            value = getattr(self, name)
            if value is None:
                continue
            match name:
                case "docs":
                    payload[name] = [item.model_dump() for item in value]
                case "tree":
                    payload[name] = [_tree_payload(node) for node in value]
                case "source":
                    payload[name] = value.model_dump(exclude_none=True)
                case _:
                    payload[name] = value
        return payload


def _tree_payload(node: TreeNode) -> dict[str, Any]:
    item: dict[str, Any] = {"name": node.name, "type": node.kind}
    if node.is_directory:
        item["children"] = [_tree_payload(child) for child in node.children]
    return item


@lru_cache(maxsize=1)
def load_ai_readme_text() -> dict[str, Any]:
    text = resources.files("xcontext").joinpath(AI_README_RESOURCE).read_text(encoding="utf-8")
    return yaml.safe_load(text) or {}


def build_ai_readme(document: ContextDocument, *, source_enabled: bool, rules_enabled: bool) -> str:
    """Describe the sections present in `document`.

    Args:
        document (ContextDocument): the document without its readme.
        source_enabled (bool): whether the source section was requested.
        rules_enabled (bool): whether rules were requested.

    Returns:
        str: the readme text.
    """
    template = load_ai_readme_text()
    sections: dict[str, str] = template.get("sections", {})
    details: list[str] = []
    for name in DOCUMENT_FIELD_ORDER[1:]:
        value = getattr(document, name)
        match name:
            case "source":
                if value is not None:
                    details.append(sections["source_files" if value.files is not None else "source_chunks"])
                elif source_enabled:
                    details.append(sections["source_missing"])
            case "rules":
                if value:
                    details.append(sections["rules"])
                elif rules_enabled:
                    details.append(sections["rules_missing"])
            case _:
                if value is not None:
                    details.append(sections[name])
    parts = [template["intro"]]
    if details:
        parts.append(template["key_sections_header"])
        parts.extend(details)
    return "\n".join(parts)


def _file_contexts(entries: Sequence[FileEntry]) -> list[FileContext]:
    return [FileContext(path=entry.relative_path, content=entry.content or "") for entry in entries]


def build_document(
    config: Config,
    *,
    tree: Sequence[TreeNode] = (),
    docs: Sequence[FileEntry] = (),
    source_files: Sequence[FileEntry] = (),
    manifest: ChunkManifest | None = None,
    rules: Sequence[RuleSet] = (),
    prompts: Mapping[str, str] | None = None,
    system_info: SystemInfo | None = None,
    timestamp: str | None = None,
) -> ContextDocument:
    """Assemble the document from the pipeline's results.

    Args:
        config (Config): the effective configuration.
        tree (Sequence[TreeNode]): top-level tree nodes.
        docs (Sequence[FileEntry]): documentation files with content.
        source_files (Sequence[FileEntry]): inline source files (ignored in chunk mode).
        manifest (ChunkManifest | None): chunk files, in chunk mode.
        rules (Sequence[RuleSet]): resolved rule sets.
        prompts (Mapping[str, str] | None): resolved prompts.
        system_info (SystemInfo | None): machine description.
        timestamp (str | None): generation time, ISO 8601.

    Returns:
        ContextDocument: the assembled document.
    """
    output = config.output
    source: SourceSection | None = None
    if config.source.enabled:
        if manifest is not None and manifest.paths:
            source = SourceSection(chunks=manifest.names)
        elif manifest is None and source_files:
            source = SourceSection(files=_file_contexts(source_files))

    document = ContextDocument(
        project_name=config.project_name if output.include_project_name else None,
        project_root=str(config.project_root) if output.include_project_root else None,
        system_info=system_info.as_payload() if output.include_system_info and system_info else None,
        meta=dict(config.meta.custom) if config.meta.enabled and config.meta.custom else None,
        docs=_file_contexts(docs) if config.docs.enabled and docs else None,
        tree=list(tree) if config.tree.enabled and tree else None,
        source=source,
        rules={rule_set.key: list(rule_set.rules) for rule_set in rules} or None,
        prompts=dict(prompts) if config.prompts.enabled and prompts else None,
        generation_timestamp=timestamp if output.include_timestamp else None,
    )
    readme = build_ai_readme(document, source_enabled=config.source.enabled, rules_enabled=config.rules.enabled)
    return document.model_copy(update={"ai_readme": readme})


class _LiteralDumper(yaml.SafeDumper):
    """Safe dumper rendering multi-line strings as literal blocks."""


def _represent_str(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_LiteralDumper.add_representer(str, _represent_str)


def to_json(payload: Mapping[str, Any], *, minify: bool = True) -> str:
    if minify:
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return json.dumps(payload, ensure_ascii=False, indent=2)


def to_yaml(payload: Mapping[str, Any]) -> str:
    return yaml.dump(
        dict(payload),
        Dumper=_LiteralDumper,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=float("inf"),
    )


def clean_xml_text(text: str) -> str:
    """Remove characters that XML 1.0 cannot represent."""
    return _XML_ILLEGAL.sub("", text)


def _xml_scalar(value: Any) -> str:  # noqa: ANN401
    if isinstance(value, bool):
        return "true" if value else "false"
    return clean_xml_text(str(value))


def _append_xml(parent: ET.Element, tag: str, value: Any) -> None:  # noqa: ANN401
    element = ET.SubElement(parent, tag)
    if tag in _XML_KEYED_MAPPINGS and isinstance(value, dict):
        item_tag, attribute = _XML_KEYED_MAPPINGS[tag]
        for key, item in value.items():
            if isinstance(item, list):
                _append_xml_list(element, item_tag, item, attributes={attribute: clean_xml_text(str(key))})
            else:
                child = ET.SubElement(element, item_tag, {attribute: clean_xml_text(str(key))})
                child.text = _xml_scalar(item)
        return
    if isinstance(value, dict):
        for key, item in value.items():
            _append_xml(element, key, item)
        return
    if isinstance(value, list):
        item_tag = _XML_ITEM_TAGS.get(tag, "item")
        for item in value:
            _append_xml_item(element, item_tag, item)
        return
    element.text = _xml_scalar(value)


def _append_xml_list(parent: ET.Element, tag: str, items: list[Any], *, attributes: dict[str, str]) -> None:
    element = ET.SubElement(parent, tag, attributes)
    item_tag = _XML_ITEM_TAGS.get(tag, "item")
    for item in items:
        _append_xml_item(element, item_tag, item)


def _append_xml_item(parent: ET.Element, tag: str, item: Any) -> None:  # noqa: ANN401
    if isinstance(item, dict):
        element = ET.SubElement(parent, tag)
        for key, value in item.items():
            _append_xml(element, key, value)
    else:
        ET.SubElement(parent, tag).text = _xml_scalar(item)


def to_xml(payload: Mapping[str, Any], *, pretty: bool = False) -> str:
    """Render the payload under a `<ProjectContext>` root.

    Arrays become a container element with one child per item (`docs/file`,
    `tree/node`, `source/chunks/chunk`, ...). Mappings with user-defined keys
    (`meta`, `rules`, `prompts`) use a `key`/`name` attribute instead of the key
    as element name.
    """
    root = ET.Element(XML_ROOT)
    for key, value in payload.items():
        _append_xml(root, key, value)
    if pretty:
        ET.indent(root, space="  ")
    body = ET.tostring(root, encoding="unicode")
    if pretty:
        return f"{XML_DECLARATION}\n{body}\n"
    return f"{XML_DECLARATION}{body}"


def serialize(
    document: ContextDocument,
    fmt: OutputFormat,
    *,
    minify: bool = True,
    xml_pretty: bool = False,
) -> bytes:
    """Encode the document as UTF-8 bytes in the requested format.

    Args:
        document (ContextDocument): the document.
        fmt (OutputFormat): json, yaml or xml.
        minify (bool): compact JSON separators instead of two-space indentation.
        xml_pretty (bool): indent XML output.

    Returns:
        bytes: the encoded document.
    """
    payload = document.to_payload()
    match fmt:
        case OutputFormat.JSON:
            text = to_json(payload, minify=minify)
        case OutputFormat.YAML:
            text = to_yaml(payload)
        case OutputFormat.XML:
            text = to_xml(payload, pretty=xml_pretty)
    return text.encode("utf-8")
