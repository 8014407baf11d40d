"""
Config - Immutable configuration for the CSRF block middleware.

A ``CSRFBlockConfig`` is built once per middleware instance and handed to
the validator and the HTML rewriter. It can be constructed directly, from a
plain mapping, or from environment variables / ``.env`` files:

    CSRFBLOCK_PARAMETER_NAME=csrf_secret
    CSRFBLOCK_TOKEN_LENGTH=20
    CSRFBLOCK_ONETIME=true
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union, TYPE_CHECKING

from dotenv import dotenv_values

from ._datastructures import normalize_header_name
from .faults import ConfigFault

if TYPE_CHECKING:
    from .request import Request
    from .response import Response


MAX_TOKEN_LENGTH = 40

BlockedHandler = Callable[["Request"], Union["Response", Awaitable["Response"]]]
WhitelistPredicate = Callable[["Request"], Union[bool, Awaitable[bool]]]


def never_whitelisted(request: "Request") -> bool:
    """Default whitelist predicate: no request is exempt."""
    return False


@dataclass(frozen=True)
class CSRFBlockConfig:
    """
    CSRF block middleware configuration.

    Attributes:
        parameter_name: Name of the hidden form field carrying the token.
        header_name: HTTP header that may carry the token (AJAX requests).
        token_length: Number of hex characters in a token (1..40).
        session_key: Session key under which the token is stored.
        add_meta: Inject ``<meta name=... content=token/>`` after ``<head>``.
        meta_name: Name of the injected meta tag.
        onetime: Drop the token after one successful validation.
        blocked: Handler called with the request when a POST is rejected.
                 May read posted data but must not trust it.
        whitelisted: Predicate over the request; true skips validation.
    """

    parameter_name: str = "SEC"
    header_name: str = "X-CSRF-Token"
    token_length: int = 16
    session_key: str = "csrfblock.token"
    add_meta: bool = False
    meta_name: str = "csrftoken"
    onetime: bool = False
    blocked: Optional[BlockedHandler] = field(default=None, compare=False)
    whitelisted: WhitelistPredicate = field(default=never_whitelisted, compare=False)

    def __post_init__(self):
        for name in ("parameter_name", "header_name", "session_key", "meta_name"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise ConfigFault(f"{name} must be a non-empty string", option=name, value=value)

        length = self.token_length
        if isinstance(length, bool) or not isinstance(length, int):
            raise ConfigFault("token_length must be an integer", option="token_length", value=length)
        if not 1 <= length <= MAX_TOKEN_LENGTH:
            raise ConfigFault(
                f"token_length must be between 1 and {MAX_TOKEN_LENGTH}",
                option="token_length",
                value=length,
            )

        if self.blocked is not None and not callable(self.blocked):
            raise ConfigFault("blocked must be callable", option="blocked")
        if not callable(self.whitelisted):
            raise ConfigFault("whitelisted must be callable", option="whitelisted")

    @property
    def header_key(self) -> str:
        """Header name normalized for lookups (``X_CSRF_TOKEN``)."""
        return normalize_header_name(self.header_name)

    def with_options(self, **options: Any) -> "CSRFBlockConfig":
        """Return a copy with the given options replaced."""
        if not options:
            return self
        _check_known(options)
        return replace(self, **options)

    # ========================================================================
    # Loading
    # ========================================================================

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, strict: bool = True) -> "CSRFBlockConfig":
        """
        Build a config from a plain mapping (e.g. a section of an app config).

        String values are coerced to the option's type. Unknown keys raise
        ``ConfigFault`` unless ``strict`` is False.
        """
        known = _option_names()
        options: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                if strict:
                    raise ConfigFault(f"Unknown csrfblock option: {key}", option=key)
                continue
            options[key] = _coerce(key, value)
        return cls(**options)

    @classmethod
    def from_env(
        cls,
        prefix: str = "CSRFBLOCK_",
        env_file: Optional[str] = None,
        **overrides: Any,
    ) -> "CSRFBlockConfig":
        """
        Build a config from environment variables.

        Precedence (later wins): ``env_file`` < ``os.environ`` < ``overrides``.
        Variable names are the option names uppercased behind ``prefix``.
        """
        raw: Dict[str, Any] = {}
        if env_file:
            raw.update(_strip_prefix(dotenv_values(env_file), prefix))
        raw.update(_strip_prefix(os.environ, prefix))

        known = _option_names()
        options = {key: value for key, value in raw.items() if key in known}
        options.update(overrides)
        return cls.from_mapping(options)


def _option_names() -> set:
    return {f.name for f in fields(CSRFBlockConfig)}


def _check_known(options: Mapping[str, Any]) -> None:
    unknown = set(options) - _option_names()
    if unknown:
        raise ConfigFault(f"Unknown csrfblock option(s): {', '.join(sorted(unknown))}")


def _strip_prefix(env: Mapping[str, Optional[str]], prefix: str) -> Dict[str, str]:
    result = {}
    for key, value in env.items():
        if value is not None and key.startswith(prefix):
            result[key[len(prefix):].lower()] = value
    return result


_BOOL_OPTIONS = frozenset({"add_meta", "onetime"})
_INT_OPTIONS = frozenset({"token_length"})


def _coerce(name: str, value: Any) -> Any:
    """Coerce string values to the option's type."""
    if not isinstance(value, str):
        return value

    if name in _BOOL_OPTIONS:
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1", "on"):
            return True
        if lowered in ("false", "no", "0", "off", ""):
            return False
        raise ConfigFault(f"{name} expects a boolean, got {value!r}", option=name, value=value)

    if name in _INT_OPTIONS:
        try:
            return int(value.strip())
        except ValueError:
            raise ConfigFault(f"{name} expects an integer, got {value!r}", option=name, value=value)

    return value


__all__ = [
    "CSRFBlockConfig",
    "MAX_TOKEN_LENGTH",
    "BlockedHandler",
    "WhitelistPredicate",
    "never_whitelisted",
]
