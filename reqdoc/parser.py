"""reqdoc parser - turns candidate blocks into request specifications.

A block reads, top to bottom:

    @name login                 directives (also "# @..." / "// @...")
    @assert status == 200
    @capture token = body.token
    POST {{base_url}}/login     request line, mandatory
    Content-Type: application/json
                                one blank line
    {"user": "admin"}           body, verbatim
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from reqdoc.assertions import AssertionExpr, CaptureDirective, parse_assertion, parse_capture
from reqdoc.document import Block, Document, extract_blocks
from reqdoc.errors import ParseError

logger = logging.getLogger(__name__)

METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS", "TRACE", "CONNECT")
DIRECTIVES = ("name", "assert", "capture", "skip", "timeout")

_DIRECTIVE_RE = re.compile(r"^(?P<prefix>#+|//)?\s*@(?P<name>[A-Za-z_][\w-]*)(?:\s+(?P<arg>.*?))?\s*$")
_HTTP_VERSION_RE = re.compile(r"^HTTP/\d(?:\.\d)?$", re.IGNORECASE)
_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(ms|s|m)?$")
_HEADER_NAME_RE = re.compile(r"^[!#$%&'*+.^_`|~0-9A-Za-z-]+$")


@dataclass(frozen=True)
class Directives:
    assertions: tuple[AssertionExpr, ...] = ()
    captures: tuple[CaptureDirective, ...] = ()
    skip: bool = False
    timeout: float | None = None


@dataclass(frozen=True)
class RequestSpec:
    """One parsed request. Templates still hold their {{placeholders}}."""

    index: int
    name: str
    method: str
    url: str
    headers: tuple[tuple[str, str], ...] = ()
    body: str | None = None
    directives: Directives = field(default_factory=Directives)
    heading: str | None = None
    line: int | None = None


@dataclass(frozen=True)
class ParseFailure:
    """A block that did not parse. Reported in place of a RequestSpec."""

    index: int
    name: str
    error: ParseError
    span: tuple[int, int] | None = None


def default_name(index: int) -> str:
    return f"request #{index}"


def parse_duration(text: str) -> float:
    """Parse '500ms', '5s', '2m' or a bare number of seconds into seconds."""
    m = _DURATION_RE.match(text.strip())
    if not m:
        raise ParseError(f"invalid timeout '{text.strip()}' (expected e.g. 500ms, 5s, 2m)")
    amount = float(m.group(1))
    unit = m.group(2) or "s"
    seconds = amount / 1000 if unit == "ms" else amount * 60 if unit == "m" else amount
    if seconds <= 0:
        raise ParseError("timeout must be greater than zero")
    return seconds


def _is_comment(line: str) -> bool:
    return line.startswith("#") or line.startswith("//")


def _looks_like_url(token: str) -> bool:
    return "://" in token or token.startswith("/") or token.startswith("{{")


class _BlockParser:
    def __init__(self, block: Block, index: int):
        self.block = block
        self.index = index
        self.name: str | None = None
        self.assertions: list[AssertionExpr] = []
        self.captures: list[CaptureDirective] = []
        self.skip = False
        self.timeout: float | None = None

    def display_name(self) -> str:
        """Explicit @name > heading context > positional fallback."""
        return self.name or self.block.heading or default_name(self.index)

    def _error(self, reason: str, offset: int, line: str) -> ParseError:
        return ParseError(reason, line, self.block.first_line + offset)

    def parse(self) -> RequestSpec:
        lines = self.block.text.splitlines()
        i = 0

        # Directives and comments, until the request line.
        while i < len(lines):
            line = lines[i].strip()
            if not line:
                i += 1
                continue
            m = _DIRECTIVE_RE.match(line)
            if m and (m.group("name") in DIRECTIVES or not m.group("prefix")):
                self._apply_directive(m.group("name"), m.group("arg") or "", i, lines[i])
                i += 1
                continue
            if _is_comment(line):
                i += 1
                continue
            break

        if i >= len(lines):
            raise ParseError("no request line", None, self.block.first_line)

        method, url = self._parse_request_line(lines[i].strip(), i)
        request_line = self.block.first_line + i
        i += 1

        # Headers, until the first blank line.
        headers: list[tuple[str, str]] = []
        while i < len(lines):
            raw = lines[i]
            line = raw.strip()
            if not line:
                i += 1
                break
            m = _DIRECTIVE_RE.match(line)
            if m and (m.group("name") in DIRECTIVES or not m.group("prefix")):
                raise self._error("directives must precede the request line", i, raw)
            if _is_comment(line):
                i += 1
                continue
            key, sep, value = line.partition(":")
            key = key.strip()
            if not sep or not _HEADER_NAME_RE.match(key):
                raise self._error("malformed header line, expected 'Key: Value'", i, raw)
            headers.append((key, value.strip()))
            i += 1

        # Body: the rest, verbatim, minus surrounding blank lines.
        body_lines = lines[i:]
        while body_lines and not body_lines[0].strip():
            body_lines.pop(0)
        while body_lines and not body_lines[-1].strip():
            body_lines.pop()
        body = "\n".join(body_lines) if body_lines else None

        return RequestSpec(
            index=self.index,
            name=self.display_name(),
            method=method,
            url=url,
            headers=tuple(headers),
            body=body,
            directives=Directives(
                assertions=tuple(self.assertions),
                captures=tuple(self.captures),
                skip=self.skip,
                timeout=self.timeout,
            ),
            heading=self.block.heading,
            line=request_line,
        )

    def _apply_directive(self, name: str, arg: str, offset: int, raw: str) -> None:
        if name not in DIRECTIVES:
            raise self._error(f"unknown directive '@{name}'", offset, raw)
        try:
            if name == "name":
                if not arg:
                    raise ParseError("@name needs a value")
                self.name = arg
            elif name == "assert":
                self.assertions.append(parse_assertion(arg))
            elif name == "capture":
                self.captures.append(parse_capture(arg))
            elif name == "skip":
                flag = arg.lower()
                if flag not in ("", "true", "false"):
                    raise ParseError(f"@skip takes true or false, got '{arg}'")
                self.skip = flag != "false"
            elif name == "timeout":
                self.timeout = parse_duration(arg)
        except ParseError as e:
            raise self._error(e.reason, offset, raw) from e

    def _parse_request_line(self, line: str, offset: int) -> tuple[str, str]:
        parts = line.split()
        first = parts[0]

        if len(parts) == 1 and _looks_like_url(first):
            return "GET", first

        if first.upper() in METHODS:
            if len(parts) < 2:
                raise self._error(f"missing URL after {first.upper()}", offset, line)
            extra = parts[2:]
            if extra and not (len(extra) == 1 and _HTTP_VERSION_RE.match(extra[0])):
                raise self._error("unexpected text after URL", offset, line)
            return first.upper(), parts[1]

        if len(parts) >= 2 and first.isalpha() and first.isupper():
            raise self._error(f"unsupported HTTP method '{first}'", offset, line)
        raise self._error("no request line, expected 'METHOD URL'", offset, line)


def parse_block(block: Block, index: int) -> RequestSpec:
    """Parse one candidate block. Raises ParseError."""
    return _BlockParser(block, index).parse()


def parse_document(document: Document) -> list[RequestSpec | ParseFailure]:
    """Parse every block of a document, in source order.

    A block that fails to parse yields a ParseFailure in its position rather
    than a partially built request.
    """
    items: list[RequestSpec | ParseFailure] = []
    for index, block in enumerate(extract_blocks(document), start=1):
        parser = _BlockParser(block, index)
        try:
            spec = parser.parse()
        except ParseError as e:
            logger.debug("block %d of %s failed to parse: %s", index, document.label, e)
            items.append(ParseFailure(index, parser.display_name(), e, block.span))
            continue
        logger.debug("parsed %s: %s %s", spec.name, spec.method, spec.url)
        items.append(spec)
    return items
