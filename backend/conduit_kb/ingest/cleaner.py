"""Normalise raw document bytes into clean text."""

from __future__ import annotations

import re
from collections import Counter
from pathlib import PurePath

import langid

from conduit_kb.core.errors import UnsupportedContent
from conduit_kb.ingest.loaders import LoaderRegistry
from conduit_kb.ingest.types import CleanedContent

_CODE_EXTENSIONS = frozenset(
    """
    py pyi pyx go js jsx mjs cjs ts tsx java kt kts scala rs rb c h cc cpp cxx hpp hh cs
    swift php sh bash zsh fish ps1 sql lua r pl pm m mm dart ex exs erl hs clj vue svelte
    """.split()
)
_CONFIG_EXTENSIONS = frozenset("json yaml yml toml ini cfg conf xml env properties lock".split())
_DATA_EXTENSIONS = frozenset("csv tsv jsonl ndjson".split())
_MARKDOWN_EXTENSIONS = frozenset("md markdown mdx".split())
_BINARY_EXTENSIONS = frozenset(
    """
    png jpg jpeg gif bmp ico webp tiff psd mp3 mp4 mov avi wav flac ogg zip gz tgz bz2 xz 7z rar
    tar jar war exe dll so dylib bin o a class pyc whl iso dmg sqlite db woff woff2 ttf otf eot
    doc rtf xls xlsx ppt pptx
    """.split()
)

_MIME_TYPES = {
    "md": "text/markdown",
    "markdown": "text/markdown",
    "mdx": "text/markdown",
    "json": "application/json",
    "jsonl": "application/x-ndjson",
    "yaml": "application/yaml",
    "yml": "application/yaml",
    "toml": "application/toml",
    "xml": "application/xml",
    "csv": "text/csv",
    "tsv": "text/tab-separated-values",
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "odt": "application/vnd.oasis.opendocument.text",
    "py": "text/x-python",
    "go": "text/x-go",
    "js": "text/javascript",
    "ts": "text/x-typescript",
    "java": "text/x-java",
    "rs": "text/x-rust",
    "rb": "text/x-ruby",
    "c": "text/x-c",
    "h": "text/x-c",
    "cpp": "text/x-c++",
    "sh": "text/x-shellscript",
    "sql": "application/sql",
    "html": "text/html",
}

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRAILING_WS_RE = re.compile(r"[ \t]+$", re.MULTILINE)
_BLANK_RUN_RE = re.compile(r"\n{3,}")
_HYPHEN_BREAK_RE = re.compile(r"(\w)-\n(\w)")
_PAGE_NUMBER_RE = re.compile(r"^\s*(?:page\s+)?\d{1,4}(?:\s*(?:of|/)\s*\d{1,4})?\s*$", re.IGNORECASE | re.MULTILINE)
_DOT_LEADER_RE = re.compile(r"\s*\.{4,}\s*(\d*)")
_SEPARATOR_RE = re.compile(r"^\s*[-=_*~]{5,}\s*$", re.MULTILINE)
_COPYRIGHT_RE = re.compile(r"^\s*(?:©|\(c\)|copyright\b).*all rights reserved\.?\s*$", re.IGNORECASE | re.MULTILINE)
_SPACE_RUN_RE = re.compile(r"[ \t]{2,}")

_OCR_FIXES = {
    "\ufb00": "ff",
    "\ufb01": "fi",
    "\ufb02": "fl",
    "\ufb03": "ffi",
    "\ufb04": "ffl",
    "\u2018": "'",
    "\u2019": "'",
    "\u201c": '"',
    "\u201d": '"',
    "\u00a0": " ",
    "\u00ad": "",
}
_OCR_TABLE = str.maketrans(_OCR_FIXES)

_PROSE_TYPES = frozenset({"markdown", "text", "pdf", "office"})
_DOCUMENT_TYPES = frozenset({"pdf", "office"})


def detect_content_type(filename: str) -> str:
    """Map a filename to one of the content type tags."""
    ext = PurePath(filename).suffix.lower().lstrip(".")
    if ext in _MARKDOWN_EXTENSIONS:
        return "markdown"
    if ext in _CODE_EXTENSIONS:
        return "code"
    if ext in _CONFIG_EXTENSIONS:
        return "config"
    if ext in _DATA_EXTENSIONS:
        return "data"
    if ext == "pdf":
        return "pdf"
    if ext in ("docx", "odt"):
        return "office"
    return "text"


def detect_mime(filename: str, content_type: str) -> str:
    ext = PurePath(filename).suffix.lower().lstrip(".")
    if ext in _MIME_TYPES:
        return _MIME_TYPES[ext]
    if content_type == "code":
        return "text/x-source"
    return "text/plain"


class ContentCleaner:
    """Turn raw bytes into clean text with a detected content type.

    ``clean`` is pure: the same bytes and filename always give the same
    result. Binary payloads without an extractor raise ``UnsupportedContent``.
    """

    def __init__(self, loaders: LoaderRegistry | None = None, detect_language: bool = True) -> None:
        self.loaders = loaders or LoaderRegistry()
        self.detect_language = detect_language

    def clean(self, raw: bytes, filename: str) -> CleanedContent:
        ext = PurePath(filename).suffix.lower().lstrip(".")
        if ext in _BINARY_EXTENSIONS:
            raise UnsupportedContent(f"no extractor for .{ext} files")
        content_type = detect_content_type(filename)
        loaded = self.loaders.load(raw, filename)
        text = strip_artifacts(loaded.text, content_type)
        metadata = dict(loaded.metadata)
        if self.detect_language and content_type in _PROSE_TYPES and text.strip():
            metadata["lang"] = _detect_lang(text)
        if content_type == "code":
            metadata["language"] = ext
        return CleanedContent(
            text=text,
            content_type=content_type,
            mime=detect_mime(filename, content_type),
            title=loaded.title or PurePath(filename).stem,
            encoding=loaded.encoding,
            metadata=metadata,
        )


def strip_artifacts(text: str, content_type: str) -> str:
    """Remove non-textual residue; code and config keep their indentation."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_RE.sub("", text)
    if content_type in _DOCUMENT_TYPES:
        text = _clean_document_text(text)
    text = _TRAILING_WS_RE.sub("", text)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip("\n")


def remove_repeated_lines(text: str) -> str:
    """Drop page headers and footers repeated across a paginated document."""
    lines = text.split("\n")
    threshold = 3 if len(lines) <= 100 else max(3, len(lines) // 30)
    counts = Counter(line.strip() for line in lines if 5 <= len(line.strip()) <= 100)
    repeated = {line for line, count in counts.items() if count >= threshold}
    if not repeated:
        return text
    return "\n".join(line for line in lines if line.strip() not in repeated)


# Internal helpers -------------------------------------------------


def _clean_document_text(text: str) -> str:
    text = text.translate(_OCR_TABLE)
    text = _HYPHEN_BREAK_RE.sub(r"\1\2", text)
    text = _COPYRIGHT_RE.sub("", text)
    text = _PAGE_NUMBER_RE.sub("", text)
    text = _SEPARATOR_RE.sub("", text)
    text = _DOT_LEADER_RE.sub(lambda match: f" {match.group(1)}" if match.group(1) else "", text)
    text = remove_repeated_lines(text)
    return _SPACE_RUN_RE.sub(" ", text)


def _detect_lang(text: str) -> str:
    lang, _ = langid.classify(text[:5000])
    return lang


__all__ = [
    "ContentCleaner",
    "detect_content_type",
    "detect_mime",
    "strip_artifacts",
    "remove_repeated_lines",
]
