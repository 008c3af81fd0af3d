"""Tests for content cleaning and format loaders."""

import codecs
import io
from pathlib import Path

import pytest
from docx import Document
from odf import dc
from odf.opendocument import OpenDocumentText
from odf.text import H, P

from conduit_kb.core.errors import UnsupportedContent
from conduit_kb.ingest.cleaner import ContentCleaner, detect_content_type, remove_repeated_lines, strip_artifacts
from conduit_kb.ingest.loaders import decode_bytes, looks_binary


def test_decode_bytes_honours_bom() -> None:
    assert decode_bytes(codecs.BOM_UTF8 + b"hello") == ("hello", "utf-8-sig")
    assert decode_bytes("hello world".encode("utf-16")) == ("hello world", "utf-16")


def test_decode_bytes_replaces_invalid_utf8() -> None:
    text, encoding = decode_bytes(b"caf\xe9 menu")
    assert text == "caf\ufffd menu"
    assert encoding == "utf-8-replace"


def test_binary_payloads_are_rejected() -> None:
    cleaner = ContentCleaner(detect_language=False)
    assert looks_binary(b"abc\x00def")
    with pytest.raises(UnsupportedContent):
        cleaner.clean(b"\x89PNG anything", "logo.png")
    with pytest.raises(UnsupportedContent):
        cleaner.clean(b"abc\x00def", "notes.txt")


def test_line_endings_and_blank_runs_normalised() -> None:
    raw = b"line one\r\nline two\r\n\r\n\r\n\r\nline three   \r\n"
    cleaned = ContentCleaner(detect_language=False).clean(raw, "notes.txt")
    assert cleaned.text == "line one\nline two\n\nline three"
    assert cleaned.content_type == "text"
    assert cleaned.title == "notes"


def test_code_keeps_indentation_and_language() -> None:
    raw = b"def handler():\n    return 1\n"
    cleaned = ContentCleaner().clean(raw, "tools/script.py")
    assert cleaned.text == "def handler():\n    return 1"
    assert cleaned.content_type == "code"
    assert cleaned.mime == "text/x-python"
    assert cleaned.metadata["language"] == "py"
    assert "lang" not in cleaned.metadata


def test_document_artifacts_removed() -> None:
    text = (
        "Intro to the \ufb01nal con-\ntent\n\n12\n\n-----\n"
        "Chapter One .......... 4\nCopyright 2024 ACME. All rights reserved."
    )
    cleaned = strip_artifacts(text, "pdf")
    assert "final content" in cleaned
    assert "Chapter One 4" in cleaned
    assert "-----" not in cleaned
    assert "rights reserved" not in cleaned
    assert "12" not in cleaned.split("\n")


def test_artifact_rules_skip_plain_text() -> None:
    assert strip_artifacts("Page 12\n-----", "text") == "Page 12\n-----"


def test_repeated_headers_dropped() -> None:
    text = "ACME Handbook\nbody a\nACME Handbook\nbody b\nACME Handbook\nbody c"
    assert remove_repeated_lines(text) == "body a\nbody b\nbody c"


def test_markdown_front_matter_title() -> None:
    raw = b"---\ntitle: Guide\ntags: [a, b]\n---\n# Heading\n\nBody text."
    cleaned = ContentCleaner(detect_language=False).clean(raw, "guide.md")
    assert cleaned.title == "Guide"
    assert cleaned.metadata["front_matter"] == {"title": "Guide", "tags": ["a", "b"]}
    assert cleaned.text.startswith("# Heading")


def test_markdown_heading_title() -> None:
    cleaned = ContentCleaner(detect_language=False).clean(b"# Install Guide\n\nRun it.", "install.md")
    assert cleaned.title == "Install Guide"
    assert cleaned.content_type == "markdown"


def test_prose_language_detected() -> None:
    raw = b"The quick brown fox jumps over the lazy dog and then runs away into the forest."
    cleaned = ContentCleaner().clean(raw, "story.txt")
    assert cleaned.metadata["lang"] == "en"


def test_docx_paragraphs_extracted() -> None:
    document = Document()
    document.core_properties.title = "Quarterly Plan"
    document.add_paragraph("First paragraph.")
    document.add_paragraph("")
    document.add_paragraph("Second paragraph.")
    buffer = io.BytesIO()
    document.save(buffer)
    cleaned = ContentCleaner(detect_language=False).clean(buffer.getvalue(), "plan.docx")
    assert cleaned.content_type == "office"
    assert cleaned.title == "Quarterly Plan"
    assert cleaned.text == "First paragraph.\n\nSecond paragraph."


def test_odt_headings_and_paragraphs_extracted(tmp_path: Path) -> None:
    document = OpenDocumentText()
    document.meta.addElement(dc.Title(text="Release Plan"))
    document.meta.addElement(dc.Creator(text="Docs Team"))
    document.text.addElement(H(outlinelevel=1, text="Overview"))
    document.text.addElement(P(text="Ship the sync engine."))
    document.text.addElement(P(text=""))
    document.text.addElement(P(text="Then the graph store."))
    target = tmp_path / "plan.odt"
    document.save(str(target))

    cleaned = ContentCleaner(detect_language=False).clean(target.read_bytes(), "plan.odt")
    assert cleaned.content_type == "office"
    assert cleaned.mime == "application/vnd.oasis.opendocument.text"
    assert cleaned.title == "Release Plan"
    assert cleaned.metadata["author"] == "Docs Team"
    assert cleaned.text == "Overview\n\nShip the sync engine.\n\nThen the graph store."


def test_corrupt_odt_is_unsupported() -> None:
    with pytest.raises(UnsupportedContent):
        ContentCleaner(detect_language=False).clean(b"not a zip archive", "broken.odt")


def test_legacy_office_formats_are_unsupported() -> None:
    cleaner = ContentCleaner(detect_language=False)
    for filename in ("memo.doc", "memo.rtf"):
        with pytest.raises(UnsupportedContent):
            cleaner.clean(b"{\\rtf1 hello}", filename)


@pytest.mark.parametrize(
    ("filename", "expected"),
    [
        ("README.md", "markdown"),
        ("main.py", "code"),
        ("settings.yaml", "config"),
        ("table.csv", "data"),
        ("paper.pdf", "pdf"),
        ("memo.docx", "office"),
        ("memo.odt", "office"),
        ("notes.txt", "text"),
        ("LICENSE", "text"),
    ],
)
def test_detect_content_type(filename: str, expected: str) -> None:
    assert detect_content_type(filename) == expected
