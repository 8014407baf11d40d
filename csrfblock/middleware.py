"""
CSRF block middleware.

``CSRFBlock`` holds the shared machinery (config, token store, validator,
rejection response, rewriter factory). ``CSRFBlockMiddleware`` plugs it into
a handler chain with the async signature:

    async def __call__(self, request, ctx, next_handler) -> Response

The pure ASGI wrapper lives in ``csrfblock.asgi``.
"""

from __future__ import annotations

import codecs
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

from ._datastructures import ParsedContentType
from .config import CSRFBlockConfig
from .faults import CSRFViolationFault, SessionRequiredFault
from .request import Request
from .response import Response
from .rewriter import HTMLRewriter, rewrite_stream
from .tokens import Session, SessionGetter, TokenStore, default_session_getter
from .validator import Outcome, RequestValidator

Handler = Callable[[Request, Any], Awaitable[Response]]

HTML_MEDIA_TYPES = ("text/html", "application/xhtml+xml")

BLOCKED_BODY = b"CSRF detected"


def is_html(content_type: Optional[str]) -> bool:
    """True for ``text/html`` and ``application/xhtml+xml`` content types."""
    if not content_type:
        return False
    return content_type.strip().lower().startswith(HTML_MEDIA_TYPES)


def should_rewrite(content_type: Optional[str], content_encoding: Optional[str] = None) -> bool:
    """HTML bodies are rewritten only when not content-encoded (e.g. gzip)."""
    if content_encoding and content_encoding.strip().lower() != "identity":
        return False
    return is_html(content_type)


def response_charset(content_type: Optional[str]) -> str:
    """Charset of a Content-Type, falling back to utf-8 when unknown."""
    parsed = ParsedContentType.parse(content_type)
    charset = parsed.charset if parsed else "utf-8"
    try:
        codecs.lookup(charset)
    except LookupError:
        return "utf-8"
    return charset


class CSRFBlock:
    """
    CSRF protection core.

    Args:
        config: Base configuration (defaults to ``CSRFBlockConfig()``).
        session_getter: Callable returning the session mapping for a request.
        **options: Overrides for individual config fields.

    Example::

        csrf = CSRFBlock(add_meta=True, onetime=True)
        app.middleware_stack.add(CSRFBlockMiddleware(csrf), scope="global")
    """

    def __init__(
        self,
        config: Optional[CSRFBlockConfig] = None,
        *,
        session_getter: Optional[SessionGetter] = None,
        **options: Any,
    ):
        self.config = (config or CSRFBlockConfig()).with_options(**options)
        self.session_getter = session_getter or default_session_getter
        self.store = TokenStore.from_config(self.config)
        self.validator = RequestValidator(self.config, self.store)
        self.logger = logging.getLogger("csrfblock.middleware")

    # ── Session ──────────────────────────────────────────────────────────

    def resolve_session(self, request: Request) -> Session:
        """Session bound to ``request``; raises ``SessionRequiredFault`` if none."""
        session = self.session_getter(request)
        if session is None:
            self.logger.error(
                "No session for %s %s; is a session middleware installed "
                "in front of csrfblock?",
                request.method,
                request.path,
                extra={"csrf_request": request.log_context()},
            )
            raise SessionRequiredFault(path=request.path)
        return session

    # ── Validation ───────────────────────────────────────────────────────

    async def check(self, request: Request, session: Optional[Session]) -> Optional[Response]:
        """
        Validate ``request``.

        Returns None when it may proceed, or the response to send instead.
        """
        outcome = await self.validator.validate(request, session)
        if outcome is Outcome.ACCEPT:
            return None
        if outcome is Outcome.NO_SESSION:
            # validate() only reports this when no session was passed in
            raise SessionRequiredFault(path=request.path)
        return await self.blocked_response(request)

    async def blocked_response(self, request: Request) -> Response:
        """Response for a rejected request."""
        handler = self.config.blocked
        if handler is not None:
            response = handler(request)
            if inspect.isawaitable(response):
                response = await response
            return response

        fault = CSRFViolationFault(path=request.path)
        response = Response(
            BLOCKED_BODY,
            status=403,
            headers={
                "content-type": "text/plain",
                "content-length": str(len(BLOCKED_BODY)),
            },
        )
        response._fault = fault
        return response

    # ── Response filtering ───────────────────────────────────────────────

    is_html = staticmethod(is_html)
    should_rewrite = staticmethod(should_rewrite)

    def create_rewriter(
        self,
        request: Request,
        session: Session,
        content_type: Optional[str],
    ) -> HTMLRewriter:
        """Rewriter for one HTML response, creating the session token if needed."""
        token = self.store.ensure(session)
        return HTMLRewriter(
            token,
            self.config,
            request.host,
            encoding=response_charset(content_type),
        )


class CSRFBlockMiddleware:
    """
    Handler-chain middleware around a ``CSRFBlock``.

    Expects a session middleware earlier in the chain to set
    ``request.state["session"]``.
    """

    def __init__(self, csrf: Optional[CSRFBlock] = None, **options: Any):
        if csrf is None:
            csrf = CSRFBlock(**options)
        elif options:
            raise TypeError("Pass options either to CSRFBlock or to CSRFBlockMiddleware, not both")
        self.csrf = csrf
        self.logger = logging.getLogger("csrfblock.middleware")

    async def __call__(
        self, request: Request, ctx: Any, next_handler: Handler
    ) -> Response:
        session = self.csrf.resolve_session(request)

        rejection = await self.csrf.check(request, session)
        if rejection is not None:
            return rejection

        response = await next_handler(request, ctx)

        if self.csrf.should_rewrite(response.content_type, response.headers.get("content-encoding")):
            rewriter = self.csrf.create_rewriter(request, session, response.content_type)
            response.replace_body(rewrite_stream(response.iter_body(), rewriter))
            self.logger.debug("Rewriting HTML response for %s", request.path)

        return response


__all__ = [
    "CSRFBlock",
    "CSRFBlockMiddleware",
    "Handler",
    "is_html",
    "should_rewrite",
    "response_charset",
    "BLOCKED_BODY",
]
