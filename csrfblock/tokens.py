"""
Tokens - CSRF token generation and session storage.

The session itself belongs to whatever session layer the host application
runs; this module only reads and writes a single key in it.
"""

from __future__ import annotations

import hashlib
import os
import random
import time
from typing import Any, Callable, MutableMapping, Optional, TYPE_CHECKING

from .config import CSRFBlockConfig

if TYPE_CHECKING:
    from .request import Request

Session = MutableMapping[str, Any]
SessionGetter = Callable[["Request"], Optional[Session]]


class TokenGenerator:
    """
    Produces fixed-length hex tokens.

    Each token is a SHA1 hex digest of a random value, the process id, a
    fresh object identity and the wall-clock time, truncated to
    ``token_length`` characters. Uniqueness is probabilistic.
    """

    __slots__ = ("length", "_random")

    def __init__(self, length: int = 16):
        self.length = length
        self._random = random.SystemRandom()

    def generate(self) -> str:
        seed = f"{self._random.random()}{os.getpid()}{id(object())}{time.time()}"
        return hashlib.sha1(seed.encode("ascii")).hexdigest()[: self.length]

    __call__ = generate


class TokenStore:
    """
    Accessor for the CSRF token inside a session mapping.

    Only ``session_key`` is ever touched. Empty values count as absent.
    """

    __slots__ = ("key", "generator")

    def __init__(self, key: str, generator: TokenGenerator):
        self.key = key
        self.generator = generator

    @classmethod
    def from_config(cls, config: CSRFBlockConfig) -> "TokenStore":
        return cls(config.session_key, TokenGenerator(config.token_length))

    def get(self, session: Session) -> Optional[str]:
        return session.get(self.key) or None

    def set(self, session: Session, token: str) -> None:
        session[self.key] = token

    def delete(self, session: Session) -> None:
        session.pop(self.key, None)

    def ensure(self, session: Session) -> str:
        """Return the session token, generating and storing one if absent."""
        token = self.get(session)
        if token is None:
            token = self.generator.generate()
            self.set(session, token)
        return token


def default_session_getter(request: "Request") -> Optional[Session]:
    """
    Find the session bound to a request.

    Looks at ``request.state["session"]`` (set by a session middleware in the
    handler chain) and then at the ASGI ``scope["session"]``.
    """
    session = request.state.get("session")
    if session is None:
        session = request.scope.get("session")
    return session


__all__ = [
    "Session",
    "SessionGetter",
    "TokenGenerator",
    "TokenStore",
    "default_session_getter",
]
