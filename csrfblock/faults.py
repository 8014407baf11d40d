"""
Faults - Core fault types for csrfblock.

Defines:
- Severity levels
- FaultDomain (explicit fault domains)
- Fault base class (structured fault objects)
- Concrete faults raised or attached by the middleware
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


# ============================================================================
# Severity & Domain
# ============================================================================

class Severity(str, Enum):
    """
    Fault severity levels.

    Determines the logging level used when a fault is reported.
    """
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


class FaultDomain:
    """
    Fault domains (taxonomy).

    Identifies the functional area where a fault occurred.
    """

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.value = name
        self.description = description

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"FaultDomain(name='{self.name}')"

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, FaultDomain):
            return self.name == other.name
        return str(self) == str(other)

    def __hash__(self) -> int:
        return hash(self.name)


FaultDomain.CONFIG = FaultDomain("config", "Configuration errors")
FaultDomain.IO = FaultDomain("io", "Request body and transport errors")
FaultDomain.SECURITY = FaultDomain("security", "CSRF and request forgery")


DOMAIN_DEFAULTS = {
    FaultDomain.CONFIG: {"severity": Severity.FATAL, "retryable": False},
    FaultDomain.IO: {"severity": Severity.WARN, "retryable": True},
    FaultDomain.SECURITY: {"severity": Severity.ERROR, "retryable": False},
}


# ============================================================================
# Fault - Base Class
# ============================================================================

class Fault(Exception):
    """
    Base fault class - structured, typed fault object.

    Attributes:
        code: Stable machine-readable identifier (e.g. "CSRF_VIOLATION")
        message: Human-readable summary
        severity: Fault severity
        domain: Fault domain
        retryable: Whether the failed operation can be retried
        public: Whether safe to expose to the client
        metadata: Additional context data
    """

    def __init__(
        self,
        code: str | None = None,
        message: str | None = None,
        *,
        domain: FaultDomain | None = None,
        severity: Optional[Severity] = None,
        retryable: Optional[bool] = None,
        public: bool = False,
        metadata: Optional[dict[str, Any]] = None,
    ):
        self.code = code if code is not None else getattr(self, "code", None)
        self.message = message if message is not None else getattr(self, "message", None)
        self.domain = domain if domain is not None else getattr(self, "domain", None)

        if self.code is None or self.message is None or self.domain is None:
            raise TypeError(f"{self.__class__.__name__} missing required code, message, or domain")

        super().__init__(self.message)

        defaults = DOMAIN_DEFAULTS.get(self.domain, {"severity": Severity.ERROR, "retryable": False})
        self.severity = severity or defaults["severity"]
        self.retryable = retryable if retryable is not None else defaults["retryable"]
        self.public = public
        self.metadata = metadata or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"Fault(code={self.code!r}, domain={self.domain.value}, "
            f"severity={self.severity.value}, public={self.public})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize fault to a dictionary suitable for logging."""
        return {
            "code": self.code,
            "message": self.message,
            "domain": self.domain.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "public": self.public,
            "metadata": self.metadata,
        }


# ============================================================================
# Concrete Faults
# ============================================================================

class ConfigFault(Fault):
    """Invalid middleware configuration."""

    def __init__(self, message: str, **metadata):
        super().__init__(
            code="CSRFBLOCK_CONFIG_INVALID",
            message=message,
            domain=FaultDomain.CONFIG,
            severity=Severity.FATAL,
            metadata=metadata,
        )


class SessionRequiredFault(Fault):
    """
    No session is bound to the request.

    CSRF tokens live in the session, so the middleware cannot do anything
    useful without one. Raised, never converted into a response.
    """

    def __init__(self, message: str = "CSRFBlock needs a session", **metadata):
        super().__init__(
            code="SESSION_REQUIRED",
            message=message,
            domain=FaultDomain.CONFIG,
            severity=Severity.FATAL,
            metadata=metadata,
        )


class CSRFViolationFault(Fault):
    """CSRF token missing or not matching the session token."""

    def __init__(self, reason: str = "CSRF detected", **metadata):
        self.reason = reason
        super().__init__(
            code="CSRF_VIOLATION",
            message=reason,
            domain=FaultDomain.SECURITY,
            severity=Severity.WARN,
            public=True,
            metadata={"reason": reason, **metadata},
        )


__all__ = [
    "Severity",
    "FaultDomain",
    "Fault",
    "ConfigFault",
    "SessionRequiredFault",
    "CSRFViolationFault",
]
