"""
ASGI adapter - CSRF protection for any ASGI 3 application.

    app = CSRFBlockASGIMiddleware(app, add_meta=True)

The session is looked up in ``scope["session"]`` unless a custom
``session_getter`` is given, so the session middleware must wrap this one.
HTML bodies are rewritten message by message; nothing is buffered beyond
an unfinished tag.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from .config import CSRFBlockConfig
from .middleware import CSRFBlock
from .request import Request
from .rewriter import HTMLRewriter
from .tokens import Session, SessionGetter

Scope = dict
Message = dict
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]


def _find_header(headers: List[Tuple[bytes, bytes]], name: bytes) -> Optional[str]:
    for key, value in headers:
        if key.lower() == name:
            return value.decode("latin-1")
    return None


class HTMLResponseFilter:
    """
    ``send`` wrapper that rewrites HTML response bodies.

    The decision is made on ``http.response.start``: for HTML content types
    without a content-encoding, ``content-length`` is dropped and a rewriter
    is bound to the response.
    The rewriter is flushed on the last ``http.response.body`` message.
    """

    def __init__(self, csrf: CSRFBlock, request: Request, session: Session, send: Send):
        self.csrf = csrf
        self.request = request
        self.session = session
        self._send = send
        self.rewriter: Optional[HTMLRewriter] = None

    async def __call__(self, message: Message) -> None:
        message_type = message["type"]

        if message_type == "http.response.start":
            headers = list(message.get("headers", []))
            content_type = _find_header(headers, b"content-type")
            content_encoding = _find_header(headers, b"content-encoding")
            if self.csrf.should_rewrite(content_type, content_encoding):
                self.rewriter = self.csrf.create_rewriter(self.request, self.session, content_type)
                message = dict(message)
                message["headers"] = [
                    (key, value) for key, value in headers
                    if key.lower() != b"content-length"
                ]

        elif message_type == "http.response.body" and self.rewriter is not None:
            body = self.rewriter.feed(message.get("body", b""))
            if not message.get("more_body", False):
                body += self.rewriter.close()
            message = dict(message)
            message["body"] = body

        await self._send(message)


class CSRFBlockASGIMiddleware:
    """
    Pure ASGI CSRF block middleware.

    Non-HTTP scopes (websocket, lifespan) are passed through untouched.
    """

    def __init__(
        self,
        app: ASGIApp,
        config: Optional[CSRFBlockConfig] = None,
        *,
        session_getter: Optional[SessionGetter] = None,
        **options: Any,
    ):
        self.app = app
        self.csrf = CSRFBlock(config, session_getter=session_getter, **options)
        self.logger = logging.getLogger("csrfblock.asgi")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        session = self.csrf.resolve_session(request)

        rejection = await self.csrf.check(request, session)
        if rejection is not None:
            self.logger.info(
                "Blocked %s %s with status %s",
                request.method,
                request.path,
                rejection.status,
                extra={"csrf_request": request.log_context()},
            )
            await rejection.send_asgi(send)
            return

        await self.app(
            scope,
            request.replay_receive(),
            HTMLResponseFilter(self.csrf, request, session, send),
        )


__all__ = ["CSRFBlockASGIMiddleware", "HTMLResponseFilter"]
