"""Shared fixtures for reqdoc tests."""

import json

import pytest
from click.testing import CliRunner

from reqdoc import core
from reqdoc.executor import RequestResult


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def global_reqdoc_dir(tmp_path, monkeypatch):
    """Override the global ~/.reqdoc directory to a temp location."""
    fake_global = tmp_path / "fake_home" / ".reqdoc"
    fake_global.mkdir(parents=True)
    monkeypatch.setattr(core, "GLOBAL_DIR", fake_global)
    monkeypatch.setattr(core, "GLOBAL_CONFIG", fake_global / "config.yaml")
    return fake_global


@pytest.fixture
def tmp_project(tmp_path, monkeypatch, global_reqdoc_dir):
    """Run inside an empty project directory with no global config."""
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    return project


def make_request_result(
    status_code=200,
    body=None,
    headers=None,
    elapsed_ms=42.0,
    error=None,
):
    """Factory for mock RequestResult objects.

    dict/list bodies are JSON-encoded, str bodies UTF-8 encoded, bytes kept.
    """
    r = RequestResult()
    r.status_code = status_code
    r.headers = list(headers or [])
    if isinstance(body, dict | list):
        r.content = json.dumps(body).encode("utf-8")
    elif isinstance(body, str):
        r.content = body.encode("utf-8")
    else:
        r.content = body or b""
    r.elapsed_ms = elapsed_ms
    r.error = error
    return r
