"""
Validator - decides whether an inbound request may proceed.

Only POST requests are checked. The token may arrive in the configured
header (matched on its normalized name) or as a body parameter of a
url-encoded or multipart form.
"""

from __future__ import annotations

import hmac
import inspect
import logging
from enum import Enum
from typing import Optional

from .config import CSRFBlockConfig
from .request import Request, RequestFault
from .tokens import Session, TokenStore

logger = logging.getLogger("csrfblock.validator")


class Outcome(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    NO_SESSION = "no_session"


def tokens_match(stored: str, submitted: Optional[str]) -> bool:
    """Exact, constant-time token comparison."""
    if not submitted:
        return False
    return hmac.compare_digest(stored.encode("utf-8"), submitted.encode("utf-8"))


class RequestValidator:
    """
    Request validation against the session token.

    Flow:
        1. No session → ``NO_SESSION``
        2. Not a POST, or whitelisted → ``ACCEPT``
        3. No stored token → ``REJECT``
        4. Header token matches → ``ACCEPT``
        5. Body parameter matches → ``ACCEPT``, else ``REJECT``

    With ``onetime`` the stored token is deleted on every token-based
    ``ACCEPT``. A ``REJECT`` never touches the session.
    """

    def __init__(self, config: CSRFBlockConfig, store: Optional[TokenStore] = None):
        self.config = config
        self.store = store or TokenStore.from_config(config)

    async def validate(self, request: Request, session: Optional[Session]) -> Outcome:
        if session is None:
            return Outcome.NO_SESSION

        if request.method.upper() != "POST":
            return Outcome.ACCEPT

        if await self.is_whitelisted(request):
            logger.info(
                "Whitelisted POST %s, skipping token check",
                request.path,
                extra={"csrf_request": request.log_context()},
            )
            return Outcome.ACCEPT

        logger.info(
            "Checking POST %s", request.path,
            extra={"csrf_request": request.log_context()},
        )

        stored = self.store.get(session)
        if stored is None:
            logger.warning(
                "No token in session for POST %s",
                request.path,
                extra={"csrf_request": request.log_context()},
            )
            return Outcome.REJECT

        # ── Header ───────────────────────────────────────────────────────
        submitted = request.headers.get_normalized(self.config.header_key)
        if tokens_match(stored, submitted):
            logger.info("Token found in header %s", self.config.header_name)
            return self._accept(session)

        # ── Body parameter ───────────────────────────────────────────────
        try:
            params = await request.parameters()
        except RequestFault as fault:
            logger.warning(
                "Unreadable body on POST %s: %s",
                request.path,
                fault,
                extra={"csrf_request": request.log_context(), "fault": fault.to_dict()},
            )
            return Outcome.REJECT

        # a repeated field is judged by its last value
        values = params.get_all(self.config.parameter_name)
        if tokens_match(stored, values[-1] if values else None):
            logger.info("Token found in parameter %s", self.config.parameter_name)
            return self._accept(session)

        logger.warning(
            "CSRF token missing or invalid on POST %s",
            request.path,
            extra={"csrf_request": request.log_context()},
        )
        return Outcome.REJECT

    async def is_whitelisted(self, request: Request) -> bool:
        result = self.config.whitelisted(request)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    def _accept(self, session: Session) -> Outcome:
        if self.config.onetime:
            self.store.delete(session)
            logger.debug("One-time token consumed")
        return Outcome.ACCEPT


__all__ = ["Outcome", "RequestValidator", "tokens_match"]
