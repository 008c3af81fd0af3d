"""Chunking utilities."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterator, Sequence

from markdown_it import MarkdownIt

from conduit_kb.ingest.types import Chunk
from conduit_kb.utils.ids import stable_id

_SEGMENT_RE = re.compile(r"\n[ \t]*\n", re.MULTILINE)
_SENTENCE_RE = re.compile(r"[^.!?\n]+(?:[.!?]+|$)", re.MULTILINE)
_LINE_RE = re.compile(r"[^\n]*\n?")
_WORD_RE = re.compile(r"\S+")
_TOKEN_RE = re.compile(r"\w+|[^\w\s]")

_MD = MarkdownIt("commonmark").enable("table")

_COMMENT_PREFIXES = ("#", "//", "/*", "*", "--", ";", "@")

_DEFINITION_PATTERNS: dict[str, tuple[str, ...]] = {
    "python": (r"^(?:async\s+def|def|class)\s+(\w+)",),
    "go": (r"^func\s+(?:\([^)]*\)\s*)?(\w+)", r"^type\s+(\w+)\s+(?:struct|interface)\b"),
    "javascript": (
        r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*(\w+)",
        r"^(?:export\s+)?(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s*)?(?:\([^)]*\)|\w+)\s*=>",
        r"^(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(\w+)",
        r"^(?:export\s+)?(?:interface|type|enum)\s+(\w+)",
    ),
    "jvm": (
        r"^\s{0,4}(?:(?:public|private|protected|internal|static|final|abstract|sealed|data|open)\s+)*"
        r"(?:class|interface|enum|object|record|trait)\s+(\w+)",
        r"^\s{0,4}(?:(?:public|private|protected|static|final|synchronized|override)\s+)+[\w<>\[\],.? ]+\s+(\w+)\s*\(",
        r"^\s{0,4}(?:(?:private|public|internal|override|suspend)\s+)*fun\s+(\w+)",
        r"^\s{0,4}def\s+(\w+)",
    ),
    "rust": (
        r"^(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?(?:unsafe\s+)?fn\s+(\w+)",
        r"^(?:pub(?:\([^)]*\))?\s+)?(?:struct|enum|trait|impl|mod)\b\s*(?:<[^>]*>\s*)?(\w+)",
    ),
    "ruby": (r"^\s{0,2}(?:def|class|module)\s+([\w.:]+)",),
    "c": (
        r"^(?:struct|class|union|enum|typedef\s+struct|namespace)\s+(\w+)",
        r"^[A-Za-z_][\w\s\*&:<>,]*?[\s\*&]+\**(\w+)\s*\([^;]*$",
    ),
    "php": (r"^\s*(?:(?:public|private|protected|static|abstract|final)\s+)*(?:function|class|interface|trait)\s+(\w+)",),
    "shell": (r"^(?:function\s+)?([\w-]+)\s*\(\)\s*\{?",),
}

_LANGUAGE_FAMILIES = {
    "py": "python",
    "pyi": "python",
    "pyx": "python",
    "go": "go",
    "js": "javascript",
    "jsx": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "ts": "javascript",
    "tsx": "javascript",
    "java": "jvm",
    "kt": "jvm",
    "kts": "jvm",
    "scala": "jvm",
    "cs": "jvm",
    "rs": "rust",
    "rb": "ruby",
    "c": "c",
    "h": "c",
    "cc": "c",
    "cpp": "c",
    "cxx": "c",
    "hpp": "c",
    "hh": "c",
    "php": "php",
    "sh": "shell",
    "bash": "shell",
    "zsh": "shell",
}

_COMPILED = {
    family: tuple(re.compile(pattern) for pattern in patterns)
    for family, patterns in _DEFINITION_PATTERNS.items()
}


@dataclass(slots=True)
class ChunkerConfig:
    target_tokens: int = 512
    overlap_fraction: float = 0.1
    max_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.target_tokens < 1:
            raise ValueError("target_tokens must be positive")
        if not 0.0 <= self.overlap_fraction < 1.0:
            raise ValueError("overlap_fraction must be in [0, 1)")
        if self.max_tokens is None:
            self.max_tokens = self.target_tokens * 2
        if self.max_tokens < self.target_tokens:
            raise ValueError("max_tokens must be >= target_tokens")

    @property
    def overlap_tokens(self) -> int:
        return int(self.target_tokens * self.overlap_fraction)


@dataclass(slots=True)
class Segment:
    text: str
    start: int
    end: int
    tag: str = "prose"
    atomic: bool = False
    meta: dict[str, Any] = field(default_factory=dict)
    tokens: int = 0

    def __post_init__(self) -> None:
        if not self.tokens:
            self.tokens = count_tokens(self.text)


@dataclass(slots=True)
class _Group:
    new: list[Segment]
    overlap: list[Segment]


class Chunker:
    """Split cleaned text into overlapping chunks along structural boundaries.

    Markdown follows the block structure reported by markdown-it, code
    follows top-level definitions for the languages in
    ``_DEFINITION_PATTERNS`` and everything else follows blank-line
    paragraphs. Oversized blocks fall back to sentences or lines and finally
    to a whitespace-aligned token cut. Chunks are exact slices of the input
    and cover it without gaps.
    """

    def __init__(self, config: ChunkerConfig | None = None) -> None:
        self.config = config or ChunkerConfig()

    def chunk(
        self,
        document_id: str,
        text: str,
        content_type: str = "text",
        language: str | None = None,
    ) -> list[Chunk]:
        return list(self.iter_chunks(document_id, text, content_type, language=language))

    def iter_chunks(
        self,
        document_id: str,
        text: str,
        content_type: str = "text",
        language: str | None = None,
        start_ordinal: int = 0,
    ) -> Iterator[Chunk]:
        """Yield chunks in order, skipping those before ``start_ordinal``."""
        if not text.strip():
            return
        segments = self._segments(text, content_type, language)
        groups = self._pack(segments)
        seen: dict[str, int] = {}
        pending: Chunk | None = None
        for ordinal in range(len(groups)):
            chunk = self._build_chunk(document_id, text, groups, ordinal, seen)
            if pending is not None:
                chunk.prev_id = pending.id
                pending.next_id = chunk.id
                if pending.ordinal >= start_ordinal:
                    yield pending
            pending = chunk
        if pending is not None and pending.ordinal >= start_ordinal:
            yield pending

    # Internal helpers -------------------------------------------------

    def _segments(self, text: str, content_type: str, language: str | None) -> list[Segment]:
        if content_type == "markdown":
            blocks = list(_markdown_blocks(text))
        elif content_type == "code":
            blocks = list(_code_blocks(text, language))
        else:
            tag = "code" if content_type == "config" else "prose"
            blocks = list(_paragraph_blocks(text, tag))
        fitted: list[Segment] = []
        for block in blocks:
            fitted.extend(self._fit(block))
        return fitted

    def _fit(self, segment: Segment) -> list[Segment]:
        limit = self.config.max_tokens if segment.atomic else self.config.target_tokens
        if segment.tokens <= limit:
            return [segment]
        if segment.tag == "code":
            pieces = list(_line_segments(segment))
        else:
            pieces = list(_sentence_segments(segment))
        if len(pieces) <= 1:
            return _split_segment(segment, self.config.target_tokens)
        fitted: list[Segment] = []
        for piece in pieces:
            if piece.tokens <= self.config.target_tokens:
                fitted.append(piece)
            else:
                fitted.extend(_split_segment(piece, self.config.target_tokens))
        return fitted

    def _pack(self, segments: Sequence[Segment]) -> list[_Group]:
        target = self.config.target_tokens
        groups: list[_Group] = []
        current: list[Segment] = []
        overlap: list[Segment] = []
        current_tokens = 0
        for segment in segments:
            if not current:
                current.append(segment)
                current_tokens = segment.tokens
                continue
            if current_tokens + segment.tokens <= target:
                current.append(segment)
                current_tokens += segment.tokens
                continue
            carried: list[Segment] = []
            if len(current) > 1 and current[-1].tag == "heading" and len(current) - 1 > len(overlap):
                carried.append(current.pop())
            groups.append(_Group(new=current[len(overlap) :], overlap=overlap))
            overlap = self._overlap(current, carried + [segment])
            current = overlap + carried + [segment]
            current_tokens = sum(item.tokens for item in current)
        if current:
            groups.append(_Group(new=current[len(overlap) :], overlap=overlap))
        return groups

    def _overlap(self, emitted: Sequence[Segment], upcoming: Sequence[Segment]) -> list[Segment]:
        budget = self.config.overlap_tokens
        if budget <= 0 or len(emitted) < 2:
            return []
        upcoming_tokens = sum(item.tokens for item in upcoming)
        retained: list[Segment] = []
        used = 0
        for segment in reversed(emitted[1:]):
            if used + segment.tokens > budget:
                break
            if used + segment.tokens + upcoming_tokens > self.config.max_tokens:
                break
            retained.append(segment)
            used += segment.tokens
        return list(reversed(retained))

    def _build_chunk(
        self,
        document_id: str,
        text: str,
        groups: Sequence[_Group],
        ordinal: int,
        seen: dict[str, int],
    ) -> Chunk:
        group = groups[ordinal]
        overlap_start = 0 if ordinal == 0 else group.new[0].start
        start = overlap_start
        if ordinal > 0 and group.overlap:
            start = group.overlap[0].start
        end = groups[ordinal + 1].new[0].start if ordinal + 1 < len(groups) else len(text)
        chunk_text = text[start:end]
        occurrence = seen.get(chunk_text, 0)
        seen[chunk_text] = occurrence + 1
        segments = group.overlap + group.new
        return Chunk(
            id=stable_id("chk", document_id, chunk_text, occurrence),
            document_id=document_id,
            ordinal=ordinal,
            text=chunk_text,
            start_char=start,
            end_char=end,
            overlap_start=overlap_start,
            token_count=count_tokens(chunk_text),
            tag=_chunk_tag(group.new),
            metadata=_chunk_meta(segments),
        )


def count_tokens(text: str) -> int:
    """Approximate sub-word token count: words plus punctuation marks."""
    return len(_TOKEN_RE.findall(text))


def chunk_text(
    document_id: str,
    text: str,
    content_type: str = "text",
    target_tokens: int = 512,
    overlap_fraction: float = 0.1,
    language: str | None = None,
) -> list[Chunk]:
    """Convenience wrapper around :class:`Chunker`."""
    chunker = Chunker(ChunkerConfig(target_tokens=target_tokens, overlap_fraction=overlap_fraction))
    return chunker.chunk(document_id, text, content_type, language=language)


def _line_offsets(text: str) -> list[int]:
    offsets = [0]
    for idx, char in enumerate(text):
        if char == "\n":
            offsets.append(idx + 1)
    return offsets


def _markdown_blocks(text: str) -> Iterator[Segment]:
    offsets = _line_offsets(text)

    def offset(line: int) -> int:
        return offsets[line] if line < len(offsets) else len(text)

    tokens = _MD.parse(text)
    section: str | None = None
    for idx, token in enumerate(tokens):
        if token.level != 0 or token.map is None or token.nesting == -1:
            continue
        segment = _trim_segment(text, offset(token.map[0]), offset(token.map[1]))
        if segment is None:
            continue
        if token.type == "heading_open":
            inline = tokens[idx + 1] if idx + 1 < len(tokens) else None
            section = inline.content.strip() if inline is not None else segment.text
            segment.tag = "heading"
            segment.meta = {"section": section, "block": "heading", "level": int(token.tag[1:])}
        elif token.type in ("fence", "code_block"):
            segment.tag = "code"
            segment.atomic = True
            segment.meta = {"block": "code", "lang": token.info.strip() or None}
        else:
            segment.meta = {"block": token.type.removesuffix("_open")}
        if section is not None:
            segment.meta.setdefault("section", section)
        yield segment


def _code_blocks(text: str, language: str | None) -> Iterator[Segment]:
    family = _LANGUAGE_FAMILIES.get((language or "").lower())
    patterns = _COMPILED.get(family or "")
    if not patterns:
        yield from _paragraph_blocks(text, "code")
        return
    lines = text.split("\n")
    offsets = _line_offsets(text)
    boundaries: list[tuple[int, str | None]] = []
    for line_no, line in enumerate(lines):
        for pattern in patterns:
            match = pattern.match(line)
            if match:
                boundaries.append((_attach_leading_comments(lines, line_no), match.group(1)))
                break
    if not boundaries or boundaries[0][0] != 0:
        boundaries.insert(0, (0, None))
    boundaries = [
        item for idx, item in enumerate(boundaries) if idx == 0 or item[0] > boundaries[idx - 1][0]
    ]
    for idx, (line_no, symbol) in enumerate(boundaries):
        start = offsets[line_no]
        end = offsets[boundaries[idx + 1][0]] if idx + 1 < len(boundaries) else len(text)
        segment = _trim_segment(text, start, end, keep_indent=True)
        if segment is None:
            continue
        segment.tag = "code"
        segment.meta = {"block": "definition" if symbol else "module"}
        if symbol:
            segment.meta["symbol"] = symbol
        yield from _split_code_block(segment)


def _attach_leading_comments(lines: Sequence[str], line_no: int) -> int:
    cursor = line_no
    while cursor > 0:
        previous = lines[cursor - 1].strip()
        if not previous or not previous.startswith(_COMMENT_PREFIXES):
            break
        cursor -= 1
    return cursor


def _split_code_block(segment: Segment) -> Iterator[Segment]:
    """Break a definition block on blank lines so packing can regroup it."""
    parts = list(_iter_segments(segment.text, segment.start, keep_indent=True))
    if len(parts) <= 1:
        yield segment
        return
    for part in parts:
        part.tag = "code"
        part.meta = dict(segment.meta)
        yield part


def _paragraph_blocks(text: str, tag: str) -> Iterator[Segment]:
    for segment in _iter_segments(text, 0, keep_indent=tag == "code"):
        segment.tag = tag
        yield segment


def _iter_segments(text: str, base: int, keep_indent: bool = False) -> Iterator[Segment]:
    last_index = 0
    for match in _SEGMENT_RE.finditer(text):
        segment = _trim_segment(text, last_index, match.start(), keep_indent=keep_indent, base=base)
        if segment:
            yield segment
        last_index = match.end()
    if last_index < len(text):
        segment = _trim_segment(text, last_index, len(text), keep_indent=keep_indent, base=base)
        if segment:
            yield segment


def _trim_segment(
    text: str,
    start: int,
    end: int,
    keep_indent: bool = False,
    base: int = 0,
) -> Segment | None:
    seg_start = start
    seg_end = end
    skip = ("\n", "\r") if keep_indent else None
    while seg_start < seg_end and (text[seg_start] in skip if skip else text[seg_start].isspace()):
        seg_start += 1
    while seg_end > seg_start and text[seg_end - 1].isspace():
        seg_end -= 1
    if seg_start >= seg_end or not text[seg_start:seg_end].strip():
        return None
    return Segment(text=text[seg_start:seg_end], start=base + seg_start, end=base + seg_end)


def _sentence_segments(segment: Segment) -> Iterator[Segment]:
    for match in _SENTENCE_RE.finditer(segment.text):
        piece = _trim_segment(segment.text, match.start(), match.end(), base=segment.start)
        if piece is None:
            continue
        piece.tag = segment.tag
        piece.meta = dict(segment.meta)
        yield piece


def _line_segments(segment: Segment) -> Iterator[Segment]:
    for match in _LINE_RE.finditer(segment.text):
        if not match.group().strip():
            continue
        piece = _trim_segment(segment.text, match.start(), match.end(), keep_indent=True, base=segment.start)
        if piece is None:
            continue
        piece.tag = segment.tag
        piece.meta = dict(segment.meta)
        yield piece


def _split_segment(segment: Segment, max_tokens: int) -> list[Segment]:
    """Hard cut on whitespace so that each piece stays within ``max_tokens``."""
    pieces: list[Segment] = []
    piece_start: int | None = None
    piece_end = 0
    used = 0
    for match in _WORD_RE.finditer(segment.text):
        word_tokens = count_tokens(match.group())
        if piece_start is not None and used + word_tokens > max_tokens:
            pieces.append(_sub_segment(segment, piece_start, piece_end))
            piece_start = None
            used = 0
        if piece_start is None:
            piece_start = match.start()
        piece_end = match.end()
        used += word_tokens
    if piece_start is not None:
        pieces.append(_sub_segment(segment, piece_start, piece_end))
    return pieces or [segment]


def _sub_segment(segment: Segment, start: int, end: int) -> Segment:
    return Segment(
        text=segment.text[start:end],
        start=segment.start + start,
        end=segment.start + end,
        tag=segment.tag,
        meta=dict(segment.meta),
    )


def _chunk_tag(segments: Sequence[Segment]) -> str:
    tags = {segment.tag for segment in segments}
    if "code" in tags:
        return "code"
    if tags == {"heading"}:
        return "heading"
    return "prose"


def _chunk_meta(segments: Sequence[Segment]) -> dict[str, Any]:
    meta: dict[str, Any] = {"segment_count": len(segments)}
    sections = [segment.meta["section"] for segment in segments if segment.meta.get("section")]
    if sections:
        meta["section"] = sections[-1]
    symbols = [segment.meta["symbol"] for segment in segments if segment.meta.get("symbol")]
    if symbols:
        meta["symbols"] = list(dict.fromkeys(symbols))
    blocks = [segment.meta["block"] for segment in segments if segment.meta.get("block")]
    if blocks:
        meta["blocks"] = list(dict.fromkeys(blocks))
    return meta


__all__ = ["Chunker", "ChunkerConfig", "Segment", "chunk_text", "count_tokens"]
