"""Tests for document execution: ordering, captures, failures and batches."""

from unittest.mock import MagicMock, patch

from reqdoc.core import VariableTable
from reqdoc.document import FORMAT_MARKDOWN, Document
from reqdoc.runner import (
    EVALUATED,
    FAILED,
    PARSE,
    RESOLUTION,
    SKIPPED,
    TRANSPORT,
    run_document,
    run_documents,
)
from tests.conftest import make_request_result

LOGIN_FLOW = """\
### login
# @capture token = body.token
POST {{base_url}}/login
Content-Type: application/json

{"user": "admin"}

### profile
# @assert status == 200
# @assert body.name == Alice
GET {{base_url}}/me
Authorization: Bearer {{token}}
"""


def _table(**environment):
    return VariableTable(environment=environment)


def _transport(*results):
    return MagicMock(side_effect=list(results))


def _run(text, table=None, transport=None, **kwargs):
    return run_document(Document.from_string(text), table or _table(), transport, **kwargs)


# ── Request chaining ─────────────────────────────────────────────────────


class TestChaining:
    def test_login_then_profile(self):
        transport = _transport(
            make_request_result(body={"token": "abc123"}),
            make_request_result(body={"name": "Alice"}),
        )
        report = _run(LOGIN_FLOW, _table(base_url="http://api"), transport)

        assert report.passed
        login, profile = transport.call_args_list
        assert login.kwargs["method"] == "POST"
        assert login.kwargs["url"] == "http://api/login"
        assert login.kwargs["body"] == b'{"user": "admin"}'
        assert profile.kwargs["url"] == "http://api/me"
        assert profile.kwargs["headers"] == [("Authorization", "Bearer abc123")]
        assert report.variables.captures == {"token": "abc123"}

    def test_outcome_details(self):
        transport = _transport(
            make_request_result(body={"token": "abc123"}),
            make_request_result(status_code=401, body={"error": "nope"}),
        )
        report = _run(LOGIN_FLOW, _table(base_url="http://api"), transport)

        login, profile = report.outcomes
        assert login.request_name == "login"
        assert login.state == EVALUATED
        assert login.capture_results[0].value == "abc123"
        assert profile.state == EVALUATED
        assert not profile.passed
        assert [r.passed for r in profile.assertion_results] == [False, False]
        assert profile.response.status == 401
        assert not report.passed

    def test_capture_visible_only_to_later_requests(self):
        text = (
            "### early\nGET http://x/{{token}}\n"
            "### login\n@capture token = body.token\nPOST http://x/login\n"
            "### late\nGET http://x/{{token}}\n"
        )
        transport = _transport(make_request_result(body={"token": "t1"}), make_request_result())
        report = _run(text, transport=transport)

        early, login, late = report.outcomes
        assert early.state == FAILED
        assert early.error.kind == RESOLUTION
        assert "token" in early.error.message
        assert late.url == "http://x/t1"
        assert transport.call_count == 2

    def test_capture_shadowed_by_override(self):
        text = "@capture token = body.token\nPOST http://x/login\n###\nGET http://x/{{token}}\n"
        table = VariableTable(overrides={"token": "cli"})
        transport = _transport(make_request_result(body={"token": "captured"}), make_request_result())
        report = _run(text, table, transport)

        assert report.outcomes[0].capture_results[0].shadowed_by == VariableTable.OVERRIDES
        assert transport.call_args_list[1].kwargs["url"] == "http://x/cli"

    def test_placeholder_in_assertion_literal(self):
        text = '@assert body.id == "{{user_id}}"\n@assert body.name != "{{user_id}}"\nGET http://x/users/{{user_id}}\n'
        transport = _transport(make_request_result(body={"id": 7, "name": "Bob"}))
        report = _run(text, _table(user_id="7"), transport)

        assert report.passed
        assert str(report.outcomes[0].assertion_results[0].expr) == 'body.id == "7"'

    def test_failed_capture_does_not_fail_request(self):
        transport = _transport(make_request_result(body={}))
        report = _run("@capture token = body.token\nGET http://x/a\n", transport=transport)

        outcome = report.outcomes[0]
        assert outcome.passed
        assert not outcome.capture_results[0].ok
        assert "token" not in report.variables


# ── Dispatch ─────────────────────────────────────────────────────────────


class TestDispatch:
    def test_skip_never_calls_transport(self):
        transport = _transport(make_request_result())
        report = _run("@skip\nDELETE http://x/everything\n###\nGET http://x/a\n", transport=transport)

        skipped, sent = report.outcomes
        assert skipped.state == SKIPPED
        assert skipped.skipped
        assert skipped.passed
        assert transport.call_count == 1
        assert transport.call_args.kwargs["url"] == "http://x/a"

    def test_duplicate_headers_in_order(self):
        transport = _transport(make_request_result())
        _run("GET http://x/a\nAccept: text/html\nX-Id: 1\nAccept: application/json\n", transport=transport)

        assert transport.call_args.kwargs["headers"] == [
            ("Accept", "text/html"),
            ("X-Id", "1"),
            ("Accept", "application/json"),
        ]

    def test_no_body(self):
        transport = _transport(make_request_result())
        _run("GET http://x/a\n", transport=transport)
        assert transport.call_args.kwargs["body"] is None

    def test_timeout_directive(self):
        transport = _transport(make_request_result(), make_request_result())
        _run("@timeout 500ms\nGET http://x/a\n###\nGET http://x/b\n", transport=transport, default_timeout=12)

        first, second = transport.call_args_list
        assert first.kwargs["timeout"] == 0.5
        assert second.kwargs["timeout"] == 12

    @patch("reqdoc.executor.execute_request")
    def test_default_transport(self, mock_exec):
        mock_exec.return_value = make_request_result(status_code=204)
        report = _run("@assert status == 204\nGET http://x/a\n")

        assert report.passed
        mock_exec.assert_called_once()


# ── Failures ─────────────────────────────────────────────────────────────


class TestFailures:
    def test_parse_failure_then_continue(self):
        transport = _transport(make_request_result())
        report = _run("### broken\nFETCH http://x/a\n### ok\nGET http://x/b\n", transport=transport)

        broken, ok = report.outcomes
        assert broken.state == FAILED
        assert broken.error.kind == PARSE
        assert "unsupported HTTP method" in broken.error.message
        assert ok.state == EVALUATED
        assert not report.passed

    def test_resolution_lists_every_name(self):
        transport = _transport()
        report = _run(
            "POST {{base}}/users/{{id}}\nAuthorization: {{token}}\n\n{\"id\": \"{{id}}\"}\n",
            transport=transport,
        )

        outcome = report.outcomes[0]
        assert outcome.state == FAILED
        assert outcome.error.kind == RESOLUTION
        assert outcome.error.message == "Unresolved variables: base, id, token"
        transport.assert_not_called()

    def test_unresolved_assertion_placeholder(self):
        transport = _transport()
        report = _run('@assert body.id == "{{expected}}"\nGET http://x/a\n', transport=transport)

        assert report.outcomes[0].error.kind == RESOLUTION
        transport.assert_not_called()

    def test_transport_error_then_continue(self):
        transport = _transport(
            make_request_result(error="Connection error: refused"),
            make_request_result(),
        )
        report = _run("GET http://x/a\n###\nGET http://x/b\n", transport=transport)

        failed, ok = report.outcomes
        assert failed.state == FAILED
        assert failed.error.kind == TRANSPORT
        assert str(failed.error) == "transport error: Connection error: refused"
        assert ok.passed

    def test_transport_exception_recorded(self):
        transport = MagicMock(side_effect=RuntimeError("boom"))
        report = _run("GET http://x/a\n", transport=transport)

        assert report.outcomes[0].error.kind == TRANSPORT
        assert "boom" in report.outcomes[0].error.message

    def test_all_assertions_evaluated(self):
        text = "@assert status == 500\n@assert body.ok == true\n@assert body.missing exists\nGET http://x/a\n"
        transport = _transport(make_request_result(body={"ok": True}))
        report = _run(text, transport=transport)

        results = report.outcomes[0].assertion_results
        assert [r.passed for r in results] == [False, True, False]
        assert report.assertion_counts == (1, 2)

    def test_oversized_number_fails_assertion_and_continues(self):
        text = "@assert body.n == 1\nGET http://x/big\n###\nGET http://x/next\n"
        transport = _transport(make_request_result(body=b'{"n": 1' + b"0" * 400 + b"}"), make_request_result())
        report = _run(text, transport=transport)

        big, nxt = report.outcomes
        assert big.state == EVALUATED
        assert not big.passed
        assert nxt.passed
        assert transport.call_count == 2


# ── Reports ──────────────────────────────────────────────────────────────


class TestReport:
    def test_counters(self):
        text = "@skip\nGET http://x/skip\n###\nGET http://x/ok\n###\n@assert status == 200\nGET http://x/bad\n"
        transport = _transport(make_request_result(), make_request_result(status_code=500))
        report = _run(text, transport=transport)

        assert report.total == 3
        assert report.skipped_count == 1
        assert report.passed_count == 1
        assert report.failed_count == 1

    def test_empty_document_passes(self):
        report = _run("\n\n", transport=_transport())
        assert report.outcomes == []
        assert report.passed

    def test_comment_only_block_is_a_parse_failure(self):
        report = _run("### a\nGET http://x/a\n### b\n# nothing here\n", transport=_transport(make_request_result()))
        assert report.outcomes[1].error.kind == PARSE
        assert report.outcomes[1].request_name == "b"

    def test_markdown_document(self):
        text = "# Health\n\n```http\n@assert status == 200\nGET http://x/health\n```\n"
        transport = _transport(make_request_result())
        report = run_document(Document(text, FORMAT_MARKDOWN), _table(), transport)

        assert report.passed
        assert report.outcomes[0].request_name == "Health"

    def test_on_outcome_called_in_order(self):
        seen = []
        transport = _transport(make_request_result(), make_request_result())
        doc = Document.from_string("### a\nGET http://x/a\n### b\nGET http://x/b\n")
        run_document(doc, _table(), transport, on_outcome=lambda d, o: seen.append((d, o.request_name)))
        assert seen == [(doc, "a"), (doc, "b")]


# ── Batches ──────────────────────────────────────────────────────────────


class TestBatches:
    CAPTURE = "@capture token = body.token\nPOST http://x/login\n"
    USE = "GET http://x/{{token}}\n"

    def _transport(self):
        def _send(method, url, headers, body, timeout):
            return make_request_result(body={"token": "secret"})

        return MagicMock(side_effect=_send)

    def test_captures_do_not_leak_between_documents(self):
        docs = [Document.from_string(self.CAPTURE), Document.from_string(self.USE)]
        base = _table()
        reports = run_documents(docs, base, transport=self._transport())

        assert reports[0].variables.get("token") == "secret"
        assert reports[1].outcomes[0].error.kind == RESOLUTION
        assert base.captures == {}

    def test_concurrent_keeps_input_order(self):
        docs = [Document.from_string(f"### doc{i}\nGET http://x/{i}\n") for i in range(6)]
        reports = run_documents(docs, _table(), jobs=3, transport=self._transport())

        assert [r.document for r in reports] == docs
        assert [r.outcomes[0].request_name for r in reports] == [f"doc{i}" for i in range(6)]

    def test_concurrent_isolation(self):
        docs = [Document.from_string(self.CAPTURE), Document.from_string(self.USE)] * 2
        reports = run_documents(docs, _table(), jobs=4, transport=self._transport())

        assert [r.passed for r in reports] == [True, False, True, False]
