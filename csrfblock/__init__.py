"""
csrfblock - Streaming CSRF protection for async Python web apps

- Injects a per-session token into every same-origin POST form of HTML
  responses (and optionally into a ``<meta>`` tag), rewriting bodies as
  they stream
- Rejects POST requests that present no matching token in a header or a
  form field
- Optional one-time tokens, whitelisting and custom rejection handlers
"""

__version__ = "0.1.0"

# ============================================================================
# Configuration & Faults
# ============================================================================

from .config import CSRFBlockConfig, MAX_TOKEN_LENGTH
from .faults import (
    Fault,
    FaultDomain,
    Severity,
    ConfigFault,
    SessionRequiredFault,
    CSRFViolationFault,
)

# ============================================================================
# Core
# ============================================================================

from .request import Request
from .response import Response
from .tokens import TokenGenerator, TokenStore, default_session_getter
from .validator import Outcome, RequestValidator
from .rewriter import (
    HTMLRewriter,
    HTMLTokenizer,
    HTMLToken,
    TokenKind,
    Passthrough,
    MetaTag,
    HiddenInput,
    rewrite_stream,
)

# ============================================================================
# Middleware
# ============================================================================

from .middleware import CSRFBlock, CSRFBlockMiddleware
from .asgi import CSRFBlockASGIMiddleware

__all__ = [
    "__version__",
    "CSRFBlockConfig",
    "MAX_TOKEN_LENGTH",
    "Fault",
    "FaultDomain",
    "Severity",
    "ConfigFault",
    "SessionRequiredFault",
    "CSRFViolationFault",
    "Request",
    "Response",
    "TokenGenerator",
    "TokenStore",
    "default_session_getter",
    "Outcome",
    "RequestValidator",
    "HTMLRewriter",
    "HTMLTokenizer",
    "HTMLToken",
    "TokenKind",
    "Passthrough",
    "MetaTag",
    "HiddenInput",
    "rewrite_stream",
    "CSRFBlock",
    "CSRFBlockMiddleware",
    "CSRFBlockASGIMiddleware",
]
