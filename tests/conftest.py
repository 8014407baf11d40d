"""
Shared test fixtures and helpers for the csrfblock test suite.
"""

from typing import Any, Dict, List, Optional

import pytest

from csrfblock.config import CSRFBlockConfig
from csrfblock.request import Request


# ============================================================================
# Request Helpers
# ============================================================================


def make_scope(
    method: str = "GET",
    path: str = "/",
    query_string: str = "",
    headers: Optional[List[tuple]] = None,
    scheme: str = "http",
    client: Optional[tuple] = None,
    session: Optional[Dict[str, Any]] = None,
) -> dict:
    """Build a minimal ASGI HTTP scope."""
    raw_headers = []
    if headers:
        for name, value in headers:
            raw_headers.append(
                (name.encode("latin-1") if isinstance(name, str) else name,
                 value.encode("latin-1") if isinstance(value, str) else value)
            )
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "path": path,
        "raw_path": path.encode("utf-8"),
        "query_string": query_string.encode("utf-8") if isinstance(query_string, str) else query_string,
        "headers": raw_headers,
        "scheme": scheme,
        "server": ("127.0.0.1", 8000),
        "client": client or ("127.0.0.1", 12345),
        "root_path": "",
    }
    if session is not None:
        scope["session"] = session
    return scope


def make_receive(body: bytes = b"", *, chunks: Optional[List[bytes]] = None):
    """Create an ASGI receive callable from body bytes or chunked list."""
    if chunks:
        messages = []
        for i, chunk in enumerate(chunks):
            messages.append({
                "type": "http.request",
                "body": chunk,
                "more_body": i < len(chunks) - 1,
            })
    else:
        messages = [{"type": "http.request", "body": body, "more_body": False}]

    idx = 0

    async def receive():
        nonlocal idx
        if idx < len(messages):
            msg = messages[idx]
            idx += 1
            return msg
        return {"type": "http.disconnect"}

    return receive


def make_request(
    method: str = "GET",
    path: str = "/",
    query_string: str = "",
    headers: Optional[List[tuple]] = None,
    body: bytes = b"",
    scheme: str = "http",
    client: Optional[tuple] = None,
    session: Optional[Dict[str, Any]] = None,
    **kwargs,
) -> Request:
    """Build a full Request object for testing."""
    scope = make_scope(
        method=method,
        path=path,
        query_string=query_string,
        headers=headers,
        scheme=scheme,
        client=client,
    )
    request = Request(scope, make_receive(body), **kwargs)
    if session is not None:
        request.state["session"] = session
    return request


def make_form_post(
    fields: Dict[str, str],
    *,
    path: str = "/submit",
    host: str = "example.com",
    headers: Optional[List[tuple]] = None,
    session: Optional[Dict[str, Any]] = None,
) -> Request:
    """POST request with a url-encoded body."""
    from urllib.parse import urlencode

    body = urlencode(fields).encode("utf-8")
    all_headers = [
        ("host", host),
        ("content-type", "application/x-www-form-urlencoded"),
        ("content-length", str(len(body))),
    ]
    all_headers.extend(headers or [])
    return make_request("POST", path, headers=all_headers, body=body, session=session)


def multipart_body(fields: Dict[str, str], boundary: str = "csrfblockboundary") -> bytes:
    """Encode plain fields as a multipart/form-data body."""
    lines = []
    for name, value in fields.items():
        lines.append(f"--{boundary}")
        lines.append(f'Content-Disposition: form-data; name="{name}"')
        lines.append("")
        lines.append(value)
    lines.append(f"--{boundary}--")
    lines.append("")
    return "\r\n".join(lines).encode("utf-8")


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def config() -> CSRFBlockConfig:
    return CSRFBlockConfig()


@pytest.fixture
def session() -> Dict[str, Any]:
    return {}
