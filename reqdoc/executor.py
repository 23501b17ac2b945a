"""reqdoc executor - HTTP request execution."""

import json
import logging
import time
from typing import Any

import requests

logger = logging.getLogger(__name__)


class RequestResult:
    """Result of an HTTP request."""

    def __init__(self):
        self.status_code: int = 0
        self.headers: list[tuple[str, str]] = []
        self.content: bytes = b""
        self.elapsed_ms: float = 0
        self.error: str | None = None


def fold_headers(headers: list[tuple[str, str]] | None) -> dict[str, str]:
    """Collapse an ordered header list into the mapping requests sends.

    requests cannot emit two header lines with the same name, so repeated
    names are joined with ", " in their original order. The first spelling
    of a name is kept.
    """
    folded: dict[str, str] = {}
    spelling: dict[str, str] = {}
    for key, value in headers or []:
        lower = key.lower()
        if lower in spelling:
            folded[spelling[lower]] += f", {value}"
        else:
            spelling[lower] = key
            folded[key] = value
    return folded


def _looks_like_json(body: bytes | None) -> bool:
    if not body:
        return False
    stripped = body.strip()
    if (stripped[:1], stripped[-1:]) not in ((b"{", b"}"), (b"[", b"]")):
        return False
    try:
        json.loads(stripped)
    except ValueError:
        return False
    return True


def default_content_type(headers: list[tuple[str, str]] | None, body: bytes | None) -> list[tuple[str, str]]:
    """Append Content-Type: application/json for a JSON body sent untyped.

    The caller's headers keep their order; an explicit Content-Type always wins.
    """
    headers = list(headers or [])
    if any(key.lower() == "content-type" for key, _ in headers):
        return headers
    if _looks_like_json(body):
        headers.append(("Content-Type", "application/json"))
    return headers


def _response_headers(resp) -> list[tuple[str, str]]:
    # urllib3's header dict keeps repeated headers as separate items.
    raw_headers = getattr(resp.raw, "headers", None)
    if raw_headers is not None and hasattr(raw_headers, "items"):
        return [(str(k), str(v)) for k, v in raw_headers.items()]
    return list(resp.headers.items())


def execute_request(
    method: str,
    url: str,
    headers: list[tuple[str, str]] | None = None,
    body: bytes | str | None = None,
    timeout: float = 30,
) -> RequestResult:
    """Execute an HTTP request and return structured result.

    - Sends headers in the given order, adding a JSON Content-Type when missing
    - Captures status, ordered headers, raw body bytes and timing
    - Never raises - always returns RequestResult with error field set
    """
    result = RequestResult()

    if isinstance(body, str):
        body = body.encode("utf-8")

    try:
        kwargs: dict[str, Any] = {
            "method": method.upper(),
            "url": url,
            "headers": fold_headers(default_content_type(headers, body)),
            "data": body or None,
            "timeout": timeout,
            "allow_redirects": True,
        }

        logger.debug("dispatching %s %s (timeout %ss)", kwargs["method"], url, timeout)
        start = time.monotonic()
        resp = requests.request(**kwargs)
        result.elapsed_ms = (time.monotonic() - start) * 1000

        result.status_code = resp.status_code
        result.headers = _response_headers(resp)
        result.content = resp.content or b""

    except requests.exceptions.Timeout:
        result.error = f"Request timed out after {timeout}s"
    except requests.exceptions.ConnectionError as e:
        result.error = f"Connection error: {e}"
    except requests.exceptions.RequestException as e:
        result.error = f"Request failed: {e}"
    except Exception as e:
        result.error = f"Unexpected error: {e}"

    return result
