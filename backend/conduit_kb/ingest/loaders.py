"""Format loaders turning raw bytes into text."""

from __future__ import annotations

import codecs
import io
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePath
from typing import Any

import fitz
import yaml
from docx import Document
from odf import dc, teletype
from odf.namespaces import TEXTNS
from odf.opendocument import load as load_odf

from conduit_kb.core.errors import UnsupportedContent
from conduit_kb.core.logging import get_logger

logger = get_logger(__name__)

_BOMS = (
    (codecs.BOM_UTF32_LE, "utf-32"),
    (codecs.BOM_UTF32_BE, "utf-32"),
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)

_SNIFF_BYTES = 8192
_ODF_BLOCKS = ((TEXTNS, "h"), (TEXTNS, "p"))
_CONTROL_BYTES = bytes(range(0, 32)).translate(None, b"\t\n\r\f\b\x1b")


@dataclass(slots=True)
class LoadedText:
    """Text produced by a loader before cleaning."""

    text: str
    title: str | None = None
    encoding: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class BaseLoader:
    """Common loader interface."""

    suffixes: tuple[str, ...] = ()

    def can_load(self, filename: str) -> bool:
        return PurePath(filename).suffix.lower() in self.suffixes

    def load(self, raw: bytes, filename: str) -> LoadedText:  # pragma: no cover - interface
        raise NotImplementedError


class TextLoader(BaseLoader):
    """Decode plain text, code and config files."""

    def can_load(self, filename: str) -> bool:
        return True

    def load(self, raw: bytes, filename: str) -> LoadedText:
        text, encoding = decode_bytes(raw)
        return LoadedText(text=text, encoding=encoding)


class MarkdownLoader(BaseLoader):
    suffixes = (".md", ".markdown", ".mdx")

    def load(self, raw: bytes, filename: str) -> LoadedText:
        text, encoding = decode_bytes(raw)
        front_matter, body = _split_front_matter(text)
        metadata: dict[str, Any] = {}
        title = None
        if front_matter:
            metadata["front_matter"] = _json_safe(front_matter)
            raw_title = front_matter.get("title")
            title = str(raw_title) if raw_title else None
        return LoadedText(text=body, title=title or _first_heading(body), encoding=encoding, metadata=metadata)


class PDFLoader(BaseLoader):
    suffixes = (".pdf",)

    def load(self, raw: bytes, filename: str) -> LoadedText:
        try:
            with fitz.open(stream=raw, filetype="pdf") as doc:
                pages = [page.get_text("text", sort=True) for page in doc]
                info = doc.metadata or {}
        except (RuntimeError, ValueError) as exc:
            raise UnsupportedContent(f"cannot read PDF {filename}: {exc}") from exc
        return LoadedText(
            text="\n\n".join(pages),
            title=info.get("title") or None,
            metadata={"page_count": len(pages), "author": info.get("author") or None},
        )


class DocxLoader(BaseLoader):
    suffixes = (".docx",)

    def load(self, raw: bytes, filename: str) -> LoadedText:
        try:
            document = Document(io.BytesIO(raw))
        except Exception as exc:
            raise UnsupportedContent(f"cannot read DOCX {filename}: {exc}") from exc
        paragraphs = [para.text for para in document.paragraphs if para.text.strip()]
        core = document.core_properties
        return LoadedText(
            text="\n\n".join(paragraphs),
            title=core.title or None,
            metadata={"author": core.author or None, "category": core.category or None},
        )


class OdtLoader(BaseLoader):
    """OpenDocument text: headings and paragraphs in reading order."""

    suffixes = (".odt",)

    def load(self, raw: bytes, filename: str) -> LoadedText:
        try:
            document = load_odf(io.BytesIO(raw))
        except Exception as exc:
            raise UnsupportedContent(f"cannot read ODT {filename}: {exc}") from exc
        paragraphs = [teletype.extractText(element).strip() for element in _odf_blocks(document.text)]
        titles = [teletype.extractText(element).strip() for element in document.meta.getElementsByType(dc.Title)]
        creators = [teletype.extractText(element).strip() for element in document.meta.getElementsByType(dc.Creator)]
        return LoadedText(
            text="\n\n".join(paragraph for paragraph in paragraphs if paragraph),
            title=next((title for title in titles if title), None),
            metadata={"author": next((name for name in creators if name), None)},
        )


class LoaderRegistry:
    """Registry that selects an appropriate loader for a filename."""

    def __init__(self) -> None:
        self._loaders: list[BaseLoader] = [
            MarkdownLoader(),
            PDFLoader(),
            DocxLoader(),
            OdtLoader(),
        ]
        self._fallback = TextLoader()

    def register(self, loader: BaseLoader) -> None:
        self._loaders.insert(0, loader)

    def for_filename(self, filename: str) -> BaseLoader:
        for loader in self._loaders:
            if loader.can_load(filename):
                return loader
        return self._fallback

    def load(self, raw: bytes, filename: str) -> LoadedText:
        return self.for_filename(filename).load(raw, filename)


def decode_bytes(raw: bytes) -> tuple[str, str]:
    """Decode ``raw`` using its BOM, then strict UTF-8, then UTF-8 with replacement."""
    for bom, encoding in _BOMS:
        if raw.startswith(bom):
            return raw.decode(encoding, errors="replace"), encoding
    if looks_binary(raw):
        raise UnsupportedContent("binary payload with no extractor")
    try:
        return raw.decode("utf-8"), "utf-8"
    except UnicodeDecodeError:
        logger.debug("Invalid UTF-8 sequence; decoding with replacement")
        return raw.decode("utf-8", errors="replace"), "utf-8-replace"


def looks_binary(raw: bytes) -> bool:
    """Heuristic binary sniffing on the leading bytes."""
    sample = raw[:_SNIFF_BYTES]
    if not sample:
        return False
    if b"\x00" in sample:
        return True
    control = sum(1 for byte in sample if byte in _CONTROL_BYTES)
    return control / len(sample) > 0.3


def _split_front_matter(text: str) -> tuple[dict[str, object] | None, str]:
    if text.startswith("---"):
        parts = text.split("---", 2)
        if len(parts) >= 3:
            try:
                front_matter = yaml.safe_load(parts[1]) or {}
            except yaml.YAMLError:
                return None, text
            if isinstance(front_matter, dict):
                return front_matter, parts[2].lstrip("\n")
    return None, text


def _odf_blocks(node) -> list:
    blocks = []
    for child in node.childNodes:
        if getattr(child, "qname", None) in _ODF_BLOCKS:
            blocks.append(child)
        elif getattr(child, "childNodes", None):
            blocks.extend(_odf_blocks(child))
    return blocks


def _first_heading(text: str) -> str | None:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("# "):
            return stripped[2:].strip() or None
    return None


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


__all__ = [
    "BaseLoader",
    "LoadedText",
    "LoaderRegistry",
    "MarkdownLoader",
    "PDFLoader",
    "DocxLoader",
    "OdtLoader",
    "TextLoader",
    "decode_bytes",
    "looks_binary",
]
