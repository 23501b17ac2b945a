"""reqdoc assertions - path expressions, typed values, assertions and captures."""

from __future__ import annotations

import json
import logging
import math
import operator as _operator
import re
from dataclasses import dataclass, field
from typing import Any

from reqdoc.errors import ParseError

logger = logging.getLogger(__name__)

# Path kinds
STATUS = "status"
HEADER = "header"
BODY = "body"

# Operators
EQUALS = "=="
NOT_EQUALS = "!="
CONTAINS = "contains"
EXISTS = "exists"
NOT_EXISTS = "not exists"
GREATER_THAN = ">"
LESS_THAN = "<"
GREATER_OR_EQUAL = ">="
LESS_OR_EQUAL = "<="

EXISTENCE_OPERATORS = (EXISTS, NOT_EXISTS)
_ORDERING = {
    GREATER_THAN: _operator.gt,
    LESS_THAN: _operator.lt,
    GREATER_OR_EQUAL: _operator.ge,
    LESS_OR_EQUAL: _operator.le,
}

_INT_RE = re.compile(r"^-?\d+$")
_NUMERIC_RE = re.compile(r"^-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?$")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]+$")

_EXISTS_RE = re.compile(r"^(?P<path>\S+)\s+(?P<op>not\s+exists|exists)$")
_CONTAINS_RE = re.compile(r"^(?P<path>\S+)\s+contains\s+(?P<literal>.+)$")
_COMPARE_RE = re.compile(r"^(?P<path>[^\s=!<>]+)\s*(?P<op>==|!=|>=|<=|>|<)\s*(?P<literal>.+)$")
_CAPTURE_RE = re.compile(r"^(?P<name>\S+?)\s*(?:=|\s+from\s+)\s*(?P<path>\S+)$")


# ---------------------------------------------------------------------------
# Typed values
# ---------------------------------------------------------------------------


class Value:
    """A tagged value resolved from a response or written as a literal.

    kind is one of: string, number, bool, null, object, array, missing.
    A missing value carries the reason it could not be resolved.
    """

    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    NULL = "null"
    OBJECT = "object"
    ARRAY = "array"
    MISSING = "missing"

    __slots__ = ("kind", "data", "reason")

    def __init__(self, kind: str, data: Any = None, reason: str | None = None):
        self.kind = kind
        self.data = data
        self.reason = reason

    @classmethod
    def string(cls, s: str) -> Value:
        return cls(cls.STRING, s)

    @classmethod
    def number(cls, n: int | float) -> Value:
        return cls(cls.NUMBER, n)

    @classmethod
    def missing(cls, reason: str) -> Value:
        return cls(cls.MISSING, reason=reason)

    @classmethod
    def from_json(cls, obj: Any) -> Value:
        # bool is a subclass of int, check it first
        if obj is None:
            return cls(cls.NULL)
        if isinstance(obj, bool):
            return cls(cls.BOOL, obj)
        if isinstance(obj, int | float):
            return cls(cls.NUMBER, obj)
        if isinstance(obj, str):
            return cls(cls.STRING, obj)
        if isinstance(obj, dict):
            return cls(cls.OBJECT, obj)
        if isinstance(obj, list):
            return cls(cls.ARRAY, obj)
        return cls(cls.STRING, str(obj))

    @property
    def is_missing(self) -> bool:
        return self.kind == self.MISSING

    def text(self) -> str:
        """Plain string form, as substituted into later requests."""
        if self.kind == self.STRING:
            return self.data
        if self.kind == self.NUMBER:
            return _format_number(self.data)
        if self.kind == self.BOOL:
            return "true" if self.data else "false"
        if self.kind == self.NULL:
            return "null"
        if self.kind in (self.OBJECT, self.ARRAY):
            return json.dumps(self.data, separators=(",", ":"), ensure_ascii=False)
        return ""

    def display(self) -> str:
        """Form used in reports: strings quoted, missing spelled out."""
        if self.kind == self.STRING:
            return json.dumps(self.data, ensure_ascii=False)
        if self.kind == self.MISSING:
            return "(missing)"
        return self.text()

    def __eq__(self, other):
        if not isinstance(other, Value):
            return NotImplemented
        return self.kind == other.kind and self.data == other.data

    def __hash__(self):
        return hash((self.kind, self.text()))

    def __repr__(self):
        if self.is_missing:
            return f"Value(missing: {self.reason})"
        return f"Value({self.kind}: {self.display()})"


def _format_number(n: int | float) -> str:
    if isinstance(n, float) and math.isfinite(n) and n.is_integer():
        return str(int(n))
    return str(n)


def _as_number(value: Value) -> int | float | None:
    """Numeric coercion: numbers and numeric-looking strings only.

    Integers stay exact ints. Python compares int with float without
    converting the int, so integers beyond float range still compare.
    """
    if value.kind == Value.NUMBER:
        return value.data
    if value.kind != Value.STRING:
        return None
    text = value.data.strip()
    if _INT_RE.match(text):
        try:
            return int(text)
        except ValueError:
            # Past the interpreter's int digit limit; compare as text.
            return None
    if _NUMERIC_RE.match(text):
        return float(text)
    return None


def parse_literal(text: str) -> Value:
    """Parse the expected side of an assertion into a typed literal."""
    text = text.strip()
    if text == "null":
        return Value(Value.NULL)
    if text in ("true", "false"):
        return Value(Value.BOOL, text == "true")
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return Value.string(text[1:-1])
    if _INT_RE.match(text):
        try:
            return Value.number(int(text))
        except ValueError:
            return Value.string(text)
    if _NUMERIC_RE.match(text):
        return Value.number(float(text))
    return Value.string(text)


# ---------------------------------------------------------------------------
# Path expressions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValuePath:
    """Where a value lives in a response: status, a header, or a body path."""

    kind: str
    name: str | None = None
    segments: tuple[str | int, ...] = ()

    def __str__(self):
        if self.kind == STATUS:
            return "status"
        if self.kind == HEADER:
            return f"headers.{self.name}"
        if not self.segments:
            return "body"
        out = "body"
        for seg in self.segments:
            out += f"[{seg}]" if isinstance(seg, int) else f".{seg}"
        return out


def _parse_body_segments(path: str) -> tuple[str | int, ...]:
    """Parse a body path into typed segments.

    Supports:
      field                  → key
      nested.field           → key, key
      items[0].id            → key, 0, key
      items[-1]              → key, -1
      items.2                → key, 2   (numeric dot segment = index)
      data[Content-Type]     → key, key (bracket key access)
    """
    segments: list[str | int] = []
    for part in path.split("."):
        part = part.strip()
        if not part:
            raise ParseError(f"empty segment in body path '{path}'")

        m = re.match(r"^([^\[]*)((?:\[[^\]]*\])+)$", part)
        if m:
            key_part = m.group(1).strip()
            if key_part:
                segments.append(int(key_part) if _INT_RE.match(key_part) else key_part)
            for bracket in re.findall(r"\[([^\]]*)\]", m.group(2)):
                bracket = bracket.strip().strip("'\"")
                if not bracket:
                    raise ParseError(f"empty brackets in body path '{path}'")
                segments.append(int(bracket) if _INT_RE.match(bracket) else bracket)
        elif "[" in part or "]" in part:
            raise ParseError(f"unbalanced brackets in body path '{path}'")
        elif _INT_RE.match(part):
            segments.append(int(part))
        else:
            segments.append(part)
    return tuple(segments)


def parse_path(text: str, default_body: bool = False) -> ValuePath:
    """Parse ``status``, ``headers.<name>`` or ``body.<path>``.

    With default_body, a path without a known prefix is read as a body path
    (so a capture can say ``token = token`` for ``body.token``).
    """
    text = text.strip()
    if text == "status":
        return ValuePath(STATUS)
    for prefix in ("headers.", "header."):
        if text.startswith(prefix):
            name = text[len(prefix) :].strip()
            if not name:
                raise ParseError(f"missing header name in path '{text}'")
            return ValuePath(HEADER, name=name)
    if text == "body":
        return ValuePath(BODY)
    if text.startswith("body.") or text.startswith("body["):
        rest = text[5:] if text.startswith("body.") else text[4:]
        return ValuePath(BODY, segments=_parse_body_segments(rest))
    if default_body and text:
        return ValuePath(BODY, segments=_parse_body_segments(text))
    raise ParseError(f"unknown path '{text}' (expected status, headers.<name> or body.<path>)")


# ---------------------------------------------------------------------------
# Directive expressions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AssertionExpr:
    path: ValuePath
    operator: str
    expected: Value | None = None
    raw: str = ""

    def __str__(self):
        if self.expected is None:
            return f"{self.path} {self.operator}"
        return f"{self.path} {self.operator} {self.expected.display()}"

    def with_expected(self, expected: Value) -> AssertionExpr:
        return AssertionExpr(self.path, self.operator, expected, self.raw)


@dataclass(frozen=True)
class CaptureDirective:
    variable: str
    path: ValuePath

    def __str__(self):
        return f"{self.variable} = {self.path}"


def parse_assertion(text: str) -> AssertionExpr:
    """Parse ``<path> <op> <literal>``, ``<path> exists`` or ``<path> not exists``."""
    text = text.strip()

    m = _EXISTS_RE.match(text)
    if m:
        op = NOT_EXISTS if m.group("op").startswith("not") else EXISTS
        return AssertionExpr(parse_path(m.group("path")), op, None, text)

    m = _CONTAINS_RE.match(text) or _COMPARE_RE.match(text)
    if m:
        op = CONTAINS if m.re is _CONTAINS_RE else m.group("op")
        return AssertionExpr(
            parse_path(m.group("path")),
            op,
            parse_literal(m.group("literal")),
            text,
        )

    raise ParseError(
        f"invalid assertion '{text}' "
        "(expected '<path> <operator> <value>', '<path> exists' or '<path> not exists')",
    )


def parse_capture(text: str) -> CaptureDirective:
    """Parse ``<variable> = <path>`` (or ``<variable> from <path>``)."""
    text = text.strip()
    m = _CAPTURE_RE.match(text)
    if not m:
        raise ParseError(f"invalid capture '{text}' (expected '<variable> = <path>')")
    name = m.group("name")
    if not _IDENTIFIER_RE.match(name):
        raise ParseError(f"invalid capture variable name '{name}'")
    return CaptureDirective(name, parse_path(m.group("path"), default_body=True))


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

_NOT_PARSED = object()


class ResponseView:
    """What assertions and captures can see of a response.

    Headers are an ordered multimap; lookup is case-insensitive and returns
    the first occurrence. The body is parsed as JSON lazily, the first time a
    body path needs it; a parse failure is recorded in ``body_error``.
    """

    def __init__(
        self,
        status: int,
        headers: list[tuple[str, str]] | None = None,
        body: bytes = b"",
        elapsed_ms: float = 0,
    ):
        self.status = status
        self.headers = list(headers or [])
        self.body = body or b""
        self.elapsed_ms = elapsed_ms
        self.body_error: str | None = None
        self._parsed: Any = _NOT_PARSED

    @classmethod
    def from_result(cls, result) -> ResponseView:
        """Build a view from an executor RequestResult."""
        return cls(result.status_code, result.headers, result.content, result.elapsed_ms)

    def header(self, name: str) -> str | None:
        lower = name.lower()
        for key, value in self.headers:
            if key.lower() == lower:
                return value
        return None

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def structured(self) -> tuple[bool, Any]:
        """Return (ok, parsed_json). Parses once; failures are not raised."""
        if self._parsed is _NOT_PARSED:
            if not self.body.strip():
                self._parsed = None
                self.body_error = "response body is empty"
            else:
                try:
                    self._parsed = json.loads(self.body)
                except ValueError as e:
                    self._parsed = None
                    self.body_error = f"response body is not valid JSON ({e})"
        return self.body_error is None, self._parsed


# ---------------------------------------------------------------------------
# Value extraction
# ---------------------------------------------------------------------------


def _get_value(data: Any, segments: tuple[str | int, ...]) -> tuple[bool, Any]:
    """Walk segments into parsed JSON. Returns (found, value_or_reason)."""
    current = data
    walked = "body"
    for seg in segments:
        if isinstance(seg, int) and isinstance(current, list):
            try:
                current = current[seg]
            except IndexError:
                return False, f"{walked} has no index {seg} (length {len(current)})"
            walked += f"[{seg}]"
        elif isinstance(current, dict):
            key = str(seg)
            if key not in current:
                return False, f"{walked} has no key '{key}'"
            current = current[key]
            walked += f".{key}"
        else:
            kind = Value.from_json(current).kind
            return False, f"{walked} is {kind}, cannot index with '{seg}'"
    return True, current


def resolve_path(path: ValuePath, response: ResponseView) -> Value:
    """Resolve a path against a response. Never raises."""
    if path.kind == STATUS:
        return Value.number(response.status)

    if path.kind == HEADER:
        value = response.header(path.name)
        if value is None:
            return Value.missing(f"header '{path.name}' not present")
        return Value.string(value)

    ok, data = response.structured()
    if not path.segments:
        return Value.from_json(data) if ok else Value.string(response.text)
    if not ok:
        return Value.missing(response.body_error)
    found, value = _get_value(data, path.segments)
    if not found:
        return Value.missing(value)
    return Value.from_json(value)


# ---------------------------------------------------------------------------
# Comparison rules
# ---------------------------------------------------------------------------


def _equals(actual: Value, expected: Value) -> bool:
    # Booleans and null only ever match their own kind.
    if actual.kind in (Value.BOOL, Value.NULL) or expected.kind in (Value.BOOL, Value.NULL):
        return actual.kind == expected.kind and actual.data == expected.data
    a, b = _as_number(actual), _as_number(expected)
    if a is not None and b is not None:
        return a == b
    return actual.text() == expected.text()


def compare(op: str, actual: Value, expected: Value) -> tuple[bool, str | None]:
    """Apply a value operator. Returns (passed, failure_reason)."""
    if actual.is_missing:
        return False, actual.reason

    if op in (EQUALS, NOT_EQUALS):
        equal = _equals(actual, expected)
        return (equal if op == EQUALS else not equal), None

    if op == CONTAINS:
        if actual.kind != Value.STRING:
            return False, f"contains applies to strings, actual value is {actual.kind}"
        return expected.text() in actual.data, None

    if op in _ORDERING:
        a, b = _as_number(actual), _as_number(expected)
        if a is None or b is None:
            return False, f"cannot compare {actual.display()} and {expected.display()} as numbers"
        return _ORDERING[op](a, b), None

    raise ValueError(f"Unknown operator: {op}")


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


@dataclass
class AssertionResult:
    expr: AssertionExpr
    passed: bool
    actual: Value
    message: str | None = None

    @property
    def expected(self) -> str:
        if self.expr.expected is None:
            return self.expr.operator
        return f"{self.expr.operator} {self.expr.expected.display()}"


@dataclass
class CaptureResult:
    capture: CaptureDirective
    value: str | None = None
    error: str | None = None
    shadowed_by: str | None = field(default=None)

    @property
    def variable(self) -> str:
        return self.capture.variable

    @property
    def ok(self) -> bool:
        return self.error is None


def evaluate_assertion(expr: AssertionExpr, response: ResponseView) -> AssertionResult:
    """Evaluate one assertion. Pure: the response is only read."""
    actual = resolve_path(expr.path, response)

    if expr.operator in EXISTENCE_OPERATORS:
        # A whole-body path on an empty response has nothing to exist.
        whole_body = expr.path.kind == BODY and not expr.path.segments
        absent = actual.is_missing or (whole_body and not response.body.strip())
        if expr.operator == EXISTS:
            passed = not absent
            message = None if passed else f"expected {expr.path} to exist: {actual.reason or response.body_error}"
        else:
            passed = absent
            message = None if passed else f"expected {expr.path} not to exist"
            # An unreadable body proves nothing about absence.
            if passed and not whole_body and expr.path.kind == BODY and response.body_error:
                passed = False
                message = response.body_error
        return AssertionResult(expr, passed, actual, message)

    passed, reason = compare(expr.operator, actual, expr.expected)
    message = None
    if not passed:
        message = reason or f"expected {expr.path} {expr.operator} {expr.expected.display()}, got {actual.display()}"
    return AssertionResult(expr, passed, actual, message)


def evaluate_capture(capture: CaptureDirective, response: ResponseView, table) -> CaptureResult:
    """Resolve a capture and write it into the table's run layer."""
    value = resolve_path(capture.path, response)
    if value.is_missing:
        logger.warning("capture %s from %s failed: %s", capture.variable, capture.path, value.reason)
        return CaptureResult(capture, error=value.reason)

    text = value.text()
    shadowed_by = table.capture(capture.variable, text)
    logger.info("captured %s = %r", capture.variable, text)
    return CaptureResult(capture, value=text, shadowed_by=shadowed_by)
