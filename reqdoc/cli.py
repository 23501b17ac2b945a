"""reqdoc CLI - run the requests written in .http files and Markdown docs."""

import sys
from pathlib import Path

import click

from reqdoc import __version__

TOOL_HELP = """\
reqdoc: run HTTP requests straight from your docs.

Reads .http/.rest request files and Markdown documents, sends every request
in order, checks @assert directives and threads @capture values into the
requests that follow.

\b
DOCUMENTS
─────────
  .http / .rest      Requests separated by lines starting with ###
  .md / .markdown    Fenced code blocks tagged http or rest

  reqdoc api.http
  reqdoc README.md docs/auth.md -e staging

\b
REQUEST BLOCKS
──────────────
  # @name login
  # @assert status == 200
  # @assert body.token exists
  # @capture token = body.token
  POST {{base_url}}/login
  Content-Type: application/json

  {"user": "admin"}

  Directives come first (bare "@x", "# @x" or "// @x"), then the request
  line (METHOD URL, or just a URL for GET), headers, a blank line, the body.

\b
DIRECTIVES
──────────
  @name NAME                   Name shown in reports
  @assert PATH OP VALUE        ==  !=  >  <  >=  <=  contains
  @assert PATH exists          Also: PATH not exists
  @capture VAR = PATH          Store a value for later {{VAR}}
  @skip [true|false]           Do not send this request
  @timeout 500ms|5s|2m         Per-request timeout

  PATH is status, headers.<Name>, body, or body.<path> (a.b, items[0].id).

\b
VARIABLES
─────────
  {{name}} is looked up in, first match wins:
  \b
  1. -v name=value        (CLI flag, highest priority)
  2. the active environment from the config file
  3. values captured earlier in the same document
  4. uuid, timestamp, timestamp_ms, date (generated)

\b
CONFIG
──────
  -c FILE, else .reqdoc.yaml in CWD, else ~/.reqdoc/config.yaml

  defaults:
    environment: dev
    env_file: .env
    timeout: 30
  environments:
    dev:
      base_url: http://localhost:3000
      token: ${API_TOKEN}

\b
EXIT STATUS
───────────
  0  every request and assertion passed
  1  at least one request or assertion failed
  2  configuration or usage error
"""

STATUS_PASS = "PASS"
STATUS_FAIL = "FAIL"
STATUS_SKIP = "SKIP"

EXIT_FAILED = 1
EXIT_USAGE = 2


@click.command(
    cls=click.Command,
    help=TOOL_HELP,
    context_settings={"max_content_width": 88},
)
@click.version_option(version=__version__, prog_name="reqdoc")
@click.argument("files", nargs=-1, type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-e",
    "--env",
    "env_name",
    default=None,
    help="Environment from the config file. Default: defaults.environment.",
)
@click.option(
    "-v",
    "--var",
    multiple=True,
    help="Variable as key=value. Overrides every other source. Repeatable.",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    default=None,
    help="Config file path. Default: .reqdoc.yaml in CWD, then ~/.reqdoc/config.yaml.",
)
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Request timeout in seconds when a request has no @timeout. Default: 30.",
)
@click.option(
    "-j",
    "--jobs",
    type=click.IntRange(min=1),
    default=1,
    help="Run up to N documents concurrently. Requests inside a document stay sequential.",
)
@click.option(
    "--list",
    "show_list",
    is_flag=True,
    default=False,
    help="Parse and list the requests without sending them.",
)
@click.option(
    "--verbose",
    is_flag=True,
    default=False,
    help="Show every assertion and capture, plus response details of failures.",
)
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Log diagnostics to stderr.",
)
def main(files, env_name, var, config_file, timeout, jobs, show_list, verbose, debug):
    """Run the HTTP requests in request files and Markdown documents."""
    from reqdoc.core import build_variable_table, load_config, load_env, resolve_config_path
    from reqdoc.document import load_document
    from reqdoc.errors import ConfigurationError, UnsupportedDocumentError
    from reqdoc.logging_setup import configure_logging
    from reqdoc.runner import run_document, run_documents

    configure_logging("DEBUG" if debug else "WARNING")

    if not files:
        ctx = click.get_current_context()
        click.echo(ctx.get_help())
        ctx.exit(EXIT_USAGE)

    cli_vars = _parse_vars(var)

    try:
        documents = [load_document(f) for f in files]
    except UnsupportedDocumentError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(EXIT_USAGE)

    if show_list:
        _cmd_list(documents)
        return

    # --- Load config ---
    try:
        if config_file and not Path(config_file).exists():
            raise ConfigurationError(f"Config file not found: {config_file}")
        config = load_config(resolve_config_path(config_file))
        defaults = config.get("defaults", {})
        env = load_env(defaults.get("env_file"), config.get("_config_dir") or ".")
        table = build_variable_table(config, env_name, cli_vars, env)
        default_timeout = _resolve_timeout(timeout, _config_timeout(defaults), default=30)
    except ConfigurationError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(EXIT_USAGE)

    try:
        if jobs == 1 or len(documents) == 1:
            reports = _run_streaming(documents, table, default_timeout, verbose, run_document)
        else:
            # Concurrent runs print whole reports in input order once done.
            reports = run_documents(documents, table, jobs=jobs, default_timeout=default_timeout)
            for report in reports:
                _echo_document_header(report.document)
                for outcome in report.outcomes:
                    _echo_outcome(outcome, verbose)
                _echo_report_summary(report)
    except KeyboardInterrupt:
        click.echo("Interrupted.", err=True)
        sys.exit(130)

    if len(reports) > 1:
        failed = sum(1 for r in reports if not r.passed)
        click.echo(f"\n{len(reports)} documents: {len(reports) - failed} passed, {failed} failed")

    if not all(r.passed for r in reports):
        sys.exit(EXIT_FAILED)


# ── Subcommand implementations ──────────────────────────────────────────


def _run_streaming(documents, table, default_timeout, verbose, run_document_fn):
    """Run documents one after another, printing each outcome as it lands."""
    reports = []
    for document in documents:
        _echo_document_header(document)
        report = run_document_fn(
            document,
            table,
            default_timeout=default_timeout,
            on_outcome=lambda _doc, outcome: _echo_outcome(outcome, verbose),
        )
        _echo_report_summary(report)
        reports.append(report)
    return reports


def _cmd_list(documents):
    """Print every request block without sending anything. Exit 1 on parse errors."""
    from reqdoc.core import find_placeholders
    from reqdoc.parser import ParseFailure, parse_document

    broken = False
    for document in documents:
        _echo_document_header(document)
        items = parse_document(document)
        if not items:
            click.echo("  (no requests)")
        for item in items:
            if isinstance(item, ParseFailure):
                broken = True
                click.echo(f"  {item.index}. {item.name}  ERROR {item.error}")
                continue
            flags = []
            if item.directives.skip:
                flags.append("skip")
            if item.directives.assertions:
                flags.append(f"{len(item.directives.assertions)} assertions")
            if item.directives.captures:
                flags.append("captures " + ", ".join(c.variable for c in item.directives.captures))
            template = "\n".join([item.url, *(v for _, v in item.headers), item.body or ""])
            names = find_placeholders(template)
            if names:
                flags.append("uses " + ", ".join(names))
            suffix = f"  [{'; '.join(flags)}]" if flags else ""
            click.echo(f"  {item.index}. {item.name}  {item.method} {item.url}{suffix}")
    if broken:
        sys.exit(EXIT_FAILED)


# ── Helpers ─────────────────────────────────────────────────────────────


def _parse_vars(var_tuples):
    """Parse -v key=value pairs into a dict. Raises a usage error on bad input."""
    variables = {}
    for v_str in var_tuples:
        k, sep, val = v_str.partition("=")
        if not sep or not k.strip():
            raise click.BadParameter(f"expected key=value, got '{v_str}'", param_hint="'-v' / '--var'")
        variables[k.strip()] = val.strip()
    return variables


def _resolve_timeout(*sources, default=30):
    """Return the first truthy timeout from sources, or default."""
    for t in sources:
        if t:
            return t
    return default


def _config_timeout(defaults):
    from reqdoc.errors import ConfigurationError

    value = defaults.get("timeout")
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"defaults.timeout must be a number of seconds, got {value!r}") from e
    if seconds <= 0:
        raise ConfigurationError("defaults.timeout must be greater than zero")
    return seconds


def _echo_document_header(document):
    click.echo(f"== {document.label}")


def _outcome_status(outcome):
    if outcome.skipped:
        return STATUS_SKIP
    return STATUS_PASS if outcome.passed else STATUS_FAIL


def _echo_outcome(outcome, verbose=False):
    line = f"  {_outcome_status(outcome)}  {outcome.request_name}"
    if outcome.method:
        line += f"  {outcome.method} {outcome.url}"
    if outcome.response is not None:
        line += f"  -> {outcome.response.status} ({outcome.response.elapsed_ms:.0f}ms)"
    click.echo(line)

    if outcome.error:
        click.echo(f"        {outcome.error}")

    for result in outcome.assertion_results:
        if result.passed:
            if verbose:
                click.echo(f"        ok   {result.expr}")
            continue
        click.echo(f"        FAIL {result.expr}")
        click.echo(f"             expected: {result.expected}")
        click.echo(f"             actual:   {result.actual.display()}")
        if result.message and result.actual.is_missing:
            click.echo(f"             reason:   {result.message}")

    for capture in outcome.capture_results:
        if not capture.ok:
            click.echo(f"        capture {capture.variable} failed: {capture.error}")
        elif verbose:
            note = f" (shadowed by {capture.shadowed_by})" if capture.shadowed_by else ""
            click.echo(f"        capture {capture.variable} = {capture.value}{note}")

    if verbose and not outcome.passed and outcome.response is not None:
        _echo_response(outcome.response)


def _echo_response(response):
    click.echo(f"        STATUS: {response.status}")
    for key, value in response.headers:
        click.echo(f"        {key}: {value}")
    if response.body:
        click.echo("")
        for body_line in response.text.splitlines():
            click.echo(f"        {body_line}")


def _echo_report_summary(report):
    passed, failed = report.assertion_counts
    click.echo(
        f"  {report.total} requests: {report.passed_count} passed, "
        f"{report.failed_count} failed, {report.skipped_count} skipped "
        f"({passed + failed} assertions, {failed} failed)",
    )


if __name__ == "__main__":
    main()
