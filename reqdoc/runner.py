"""reqdoc runner - executes a document's requests in order.

Each request moves through:

    parsed -> skipped
    parsed -> resolving -> dispatched -> evaluated
    any state -> failed (terminal for that request, the document continues)

Captures from request N are merged into the run's variable table before
request N+1 is resolved, so requests inside a document never run out of
order or in parallel. Independent documents may run concurrently; each gets
its own capture layer over the shared, read-only base table.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from reqdoc import executor
from reqdoc.assertions import (
    AssertionResult,
    CaptureResult,
    ResponseView,
    Value,
    evaluate_assertion,
    evaluate_capture,
)
from reqdoc.core import VariableTable, resolve_templates
from reqdoc.document import Document
from reqdoc.errors import ResolutionError
from reqdoc.parser import ParseFailure, RequestSpec, parse_document

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

# Terminal states
SKIPPED = "skipped"
EVALUATED = "evaluated"
FAILED = "failed"

# Failure kinds
PARSE = "parse"
RESOLUTION = "resolution"
TRANSPORT = "transport"


@dataclass(frozen=True)
class FailureReason:
    kind: str
    message: str

    def __str__(self):
        return f"{self.kind} error: {self.message}"


@dataclass
class RequestOutcome:
    """What happened to one request, enough to render without re-evaluating."""

    index: int
    request_name: str
    state: str
    method: str | None = None
    url: str | None = None
    sent_headers: list[tuple[str, str]] = field(default_factory=list)
    response: ResponseView | None = None
    assertion_results: list[AssertionResult] = field(default_factory=list)
    capture_results: list[CaptureResult] = field(default_factory=list)
    error: FailureReason | None = None

    @property
    def skipped(self) -> bool:
        return self.state == SKIPPED

    @property
    def failed_assertions(self) -> list[AssertionResult]:
        return [r for r in self.assertion_results if not r.passed]

    @property
    def passed(self) -> bool:
        return self.state != FAILED and not self.failed_assertions


@dataclass
class DocumentReport:
    document: Document
    outcomes: list[RequestOutcome] = field(default_factory=list)
    variables: VariableTable | None = None

    @property
    def passed(self) -> bool:
        """True when no request failed and no assertion failed."""
        return all(o.passed for o in self.outcomes)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def skipped_count(self) -> int:
        return sum(1 for o in self.outcomes if o.skipped)

    @property
    def passed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.passed and not o.skipped)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.passed)

    @property
    def assertion_counts(self) -> tuple[int, int]:
        """(passed, failed) across every request."""
        results = [r for o in self.outcomes for r in o.assertion_results]
        failed = sum(1 for r in results if not r.passed)
        return len(results) - failed, failed


def _placeholder_assertions(spec: RequestSpec) -> list[int]:
    """Indices of assertions whose expected string holds placeholders."""
    return [
        i
        for i, expr in enumerate(spec.directives.assertions)
        if expr.expected is not None and expr.expected.kind == Value.STRING and "{{" in expr.expected.data
    ]


def execute_spec(
    spec: RequestSpec,
    table: VariableTable,
    transport: Callable | None = None,
    default_timeout: float = DEFAULT_TIMEOUT,
) -> RequestOutcome:
    """Run one parsed request against the current table."""
    transport = transport or executor.execute_request
    outcome = RequestOutcome(spec.index, spec.name, EVALUATED, method=spec.method, url=spec.url)

    if spec.directives.skip:
        outcome.state = SKIPPED
        return outcome

    # Resolving
    assertions = list(spec.directives.assertions)
    templated = _placeholder_assertions(spec)
    header_values = [value for _, value in spec.headers]
    try:
        resolved = resolve_templates(
            [spec.url, spec.body or "", *header_values, *(assertions[i].expected.data for i in templated)],
            table,
        )
    except ResolutionError as e:
        outcome.state = FAILED
        outcome.error = FailureReason(RESOLUTION, str(e))
        return outcome

    url, body = resolved[0], resolved[1]
    header_count = len(header_values)
    headers = [(key, value) for (key, _), value in zip(spec.headers, resolved[2 : 2 + header_count], strict=True)]
    for i, text in zip(templated, resolved[2 + header_count :], strict=True):
        assertions[i] = assertions[i].with_expected(Value.string(text))
    outcome.url = url
    outcome.sent_headers = headers

    # Dispatched
    timeout = spec.directives.timeout or default_timeout
    logger.debug("%s: %s %s", spec.name, spec.method, url)
    try:
        result = transport(
            method=spec.method,
            url=url,
            headers=headers,
            body=body.encode("utf-8") if body else None,
            timeout=timeout,
        )
    except Exception as e:
        logger.exception("transport raised for %s", spec.name)
        result = None
        error = f"Unexpected error: {e}"
    else:
        error = result.error

    if error:
        outcome.state = FAILED
        outcome.error = FailureReason(TRANSPORT, error)
        return outcome

    # Evaluated: every assertion, then every capture, in declaration order.
    response = ResponseView.from_result(result)
    outcome.response = response
    outcome.assertion_results = [evaluate_assertion(expr, response) for expr in assertions]
    outcome.capture_results = [evaluate_capture(c, response, table) for c in spec.directives.captures]
    return outcome


def run_document(
    document: Document,
    table: VariableTable,
    transport: Callable | None = None,
    default_timeout: float = DEFAULT_TIMEOUT,
    on_outcome: Callable[[Document, RequestOutcome], None] | None = None,
) -> DocumentReport:
    """Execute every request of a document in source order.

    table is the base snapshot; the run works on its own capture layer,
    returned as report.variables.
    """
    run_table = table.new_run()
    report = DocumentReport(document, variables=run_table)
    items = parse_document(document)
    logger.debug("%s: %d request blocks", document.label, len(items))

    for item in items:
        if isinstance(item, ParseFailure):
            outcome = RequestOutcome(
                item.index,
                item.name,
                FAILED,
                error=FailureReason(PARSE, str(item.error)),
            )
        else:
            outcome = execute_spec(item, run_table, transport, default_timeout)
        report.outcomes.append(outcome)
        if on_outcome:
            on_outcome(document, outcome)

    return report


def run_documents(
    documents: list[Document],
    table: VariableTable,
    jobs: int = 1,
    transport: Callable | None = None,
    default_timeout: float = DEFAULT_TIMEOUT,
    on_outcome: Callable[[Document, RequestOutcome], None] | None = None,
) -> list[DocumentReport]:
    """Run several documents; reports come back in input order."""
    if jobs <= 1 or len(documents) <= 1:
        return [run_document(doc, table, transport, default_timeout, on_outcome) for doc in documents]

    with ThreadPoolExecutor(max_workers=jobs) as pool:
        futures = [
            pool.submit(run_document, doc, table, transport, default_timeout, on_outcome)
            for doc in documents
        ]
        return [f.result() for f in futures]
