"""reqdoc documents - loading and candidate block extraction.

Two document formats are understood:

- ``http``: a dedicated request file where requests are separated by lines
  starting with ``###``.
- ``markdown``: prose with fenced code blocks; only fences tagged ``http`` or
  ``rest`` hold requests.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from reqdoc.errors import UnsupportedDocumentError

logger = logging.getLogger(__name__)

FORMAT_HTTP = "http"
FORMAT_MARKDOWN = "markdown"
FORMATS = (FORMAT_HTTP, FORMAT_MARKDOWN)

EXTENSION_FORMATS = {
    ".http": FORMAT_HTTP,
    ".rest": FORMAT_HTTP,
    ".md": FORMAT_MARKDOWN,
    ".markdown": FORMAT_MARKDOWN,
}

EXECUTABLE_TAGS = ("http", "rest")

BLOCK_SEPARATOR = "###"

# Up to three spaces of indent, then a run of 3+ backticks or tildes.
_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})(.*)$")
_ATX_HEADING_RE = re.compile(r"^ {0,3}#{1,6}(?:[ \t]+(.*?))?[ \t]*$")
_SETEXT_UNDERLINE_RE = re.compile(r"^ {0,3}(=+|-+)[ \t]*$")
_NOT_PARAGRAPH_RE = re.compile(r"^\s*(?:[-*+>]|\d+[.)])(?:\s|$)")


@dataclass(frozen=True)
class Document:
    """Raw source text plus its format tag."""

    text: str
    format: str
    path: Path | None = None

    def __post_init__(self):
        if self.format not in FORMATS:
            raise UnsupportedDocumentError(
                f"Unsupported document format '{self.format}' (expected one of: {', '.join(FORMATS)})",
            )

    @classmethod
    def from_string(cls, text: str, format: str = FORMAT_HTTP) -> Document:
        return cls(text=text, format=format)

    @property
    def label(self) -> str:
        return str(self.path) if self.path else f"<{self.format} string>"


@dataclass(frozen=True)
class Block:
    """One candidate request block.

    ``span`` is the 1-based (first, last) line range the block occupies in
    the document, fences and separators included. ``first_line`` is the line
    number of the first line of ``text``.
    """

    heading: str | None
    text: str
    span: tuple[int, int]
    first_line: int


def format_for_path(path: str | Path) -> str:
    """Map a file extension to a document format tag."""
    suffix = Path(path).suffix.lower()
    fmt = EXTENSION_FORMATS.get(suffix)
    if fmt is None:
        supported = ", ".join(sorted(EXTENSION_FORMATS))
        raise UnsupportedDocumentError(
            f"Unsupported file type '{suffix or Path(path).name}' for {path} (supported: {supported})",
        )
    return fmt


def load_document(path: str | Path) -> Document:
    """Read a request file or Markdown document from disk.

    Files are UTF-8; a leading byte order mark is dropped.
    """
    p = Path(path)
    fmt = format_for_path(p)
    try:
        text = p.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError as e:
        raise UnsupportedDocumentError(f"{path} is not valid UTF-8 ({e.reason} at byte {e.start})") from e
    return Document(text=text, format=fmt, path=p)


def extract_blocks(document: Document) -> Iterator[Block]:
    """Yield the candidate request blocks of a document in source order."""
    if document.format == FORMAT_MARKDOWN:
        return _extract_fenced_blocks(document.text)
    return _extract_separated_blocks(document.text)


# ── Request files ────────────────────────────────────────────────────────


def _extract_separated_blocks(text: str) -> Iterator[Block]:
    lines = text.splitlines()
    heading: str | None = None
    current: list[str] = []
    start = 1

    for number, line in enumerate(lines, start=1):
        stripped = line.strip()
        if stripped.startswith(BLOCK_SEPARATOR):
            if "".join(current).strip():
                yield Block(heading, "\n".join(current), (start, number - 1), start)
            heading = stripped.lstrip("#").strip() or None
            current = []
            start = number + 1
            continue
        current.append(line)

    if "".join(current).strip():
        yield Block(heading, "\n".join(current), (start, len(lines)), start)


# ── Markdown ─────────────────────────────────────────────────────────────


class _Fence:
    """An open fence: its character, run length and whether it is executable."""

    def __init__(self, char: str, length: int, executable: bool, line: int):
        self.char = char
        self.length = length
        self.executable = executable
        self.line = line

    def closed_by(self, line: str) -> bool:
        m = _FENCE_RE.match(line)
        if not m:
            return False
        run, rest = m.group(1), m.group(2)
        return run[0] == self.char and len(run) >= self.length and not rest.strip()


def _open_fence(line: str, number: int) -> _Fence | None:
    m = _FENCE_RE.match(line)
    if not m:
        return None
    run, info = m.group(1), m.group(2).strip()
    # A backtick run followed by more backticks is inline code, not a fence.
    if run[0] == "`" and "`" in info:
        return None
    tag = info.split()[0].lower() if info else ""
    return _Fence(run[0], len(run), tag in EXECUTABLE_TAGS, number)


def _heading_text(raw: str | None) -> str | None:
    if raw is None:
        return None
    # Closing sequence of an ATX heading: "## Title ##"
    text = re.sub(r"(?:^|[ \t]+)#+$", "", raw).strip()
    return text or None


def _extract_fenced_blocks(text: str) -> Iterator[Block]:
    lines = text.splitlines()
    heading: str | None = None
    fence: _Fence | None = None
    content: list[str] = []
    paragraph_line: str | None = None

    for number, line in enumerate(lines, start=1):
        if fence is not None:
            if fence.closed_by(line):
                if fence.executable:
                    logger.debug("block at lines %d-%d under %r", fence.line, number, heading)
                    yield Block(heading, "\n".join(content), (fence.line, number), fence.line + 1)
                fence = None
                content = []
            elif fence.executable:
                content.append(line)
            continue

        opened = _open_fence(line, number)
        if opened is not None:
            fence = opened
            content = []
            paragraph_line = None
            continue

        atx = _ATX_HEADING_RE.match(line)
        if atx:
            new_heading = _heading_text(atx.group(1))
            if new_heading:
                heading = new_heading
            paragraph_line = None
            continue

        if paragraph_line is not None and _SETEXT_UNDERLINE_RE.match(line):
            heading = paragraph_line.strip()
            paragraph_line = None
            continue

        if line.strip() and not _NOT_PARAGRAPH_RE.match(line):
            paragraph_line = line
        else:
            paragraph_line = None

    # Unterminated fence: closed at end of document.
    if fence is not None and fence.executable:
        logger.debug("unterminated fence opened at line %d closed at end of document", fence.line)
        yield Block(heading, "\n".join(content), (fence.line, len(lines)), fence.line + 1)
