"""
Response - HTTP response with streaming support.

Provides:
- ASGI 3 compliant response sending
- Bodies from bytes, str, async iterables and sync iterables
- Uniform async iteration over any body (``iter_body``)
- Body replacement for streaming filters (``replace_body``)
"""

from __future__ import annotations

import asyncio
import inspect
from typing import (
    Any, AsyncIterator, Awaitable, Callable, Dict, Iterator, List,
    Mapping, Optional, Union
)

from .faults import Fault, FaultDomain


Content = Union[bytes, str, AsyncIterator[bytes], Iterator[bytes]]


# ============================================================================
# Response Faults
# ============================================================================

class ResponseStreamError(Fault):
    """Error during response streaming."""
    code = "RESPONSE_STREAM_ERROR"
    domain = FaultDomain.IO
    message = "Response stream error"


class ClientDisconnectError(Fault):
    """Client disconnected during response send."""
    code = "CLIENT_DISCONNECT"
    domain = FaultDomain.IO
    message = "Client disconnected"


# ============================================================================
# Response
# ============================================================================

class Response:
    """
    HTTP response.

    Header names are stored lowercased. A ``_fault`` attribute may carry the
    fault a response was generated for.
    """

    def __init__(
        self,
        content: Content = b"",
        status: int = 200,
        headers: Optional[Mapping[str, str]] = None,
        media_type: Optional[str] = None,
        *,
        encoding: str = "utf-8",
    ):
        self.status = status
        self._content = content
        self.encoding = encoding
        self._fault: Optional[Fault] = None
        self._bytes_sent = 0

        self._headers: Dict[str, str] = {}
        if headers:
            for key, value in headers.items():
                self._headers[key.lower()] = value

        if media_type:
            self._headers["content-type"] = media_type
        elif "content-type" not in self._headers:
            self._headers["content-type"] = self._detect_media_type(content)

    @property
    def headers(self) -> Dict[str, str]:
        return self._headers

    @property
    def content_type(self) -> str:
        return self._headers.get("content-type", "")

    def _detect_media_type(self, content: Any) -> str:
        if isinstance(content, str):
            return "text/plain; charset=utf-8"
        return "application/octet-stream"

    # ========================================================================
    # Factory Methods
    # ========================================================================

    @classmethod
    def html(cls, content: str, status: int = 200, **kwargs) -> "Response":
        """Create HTML response."""
        return cls(content=content, status=status, media_type="text/html; charset=utf-8", **kwargs)

    @classmethod
    def text(cls, content: str, status: int = 200, **kwargs) -> "Response":
        """Create plain text response."""
        return cls(content=content, status=status, media_type="text/plain; charset=utf-8", **kwargs)

    @classmethod
    def stream(
        cls,
        iterator: Union[AsyncIterator[bytes], Iterator[bytes]],
        status: int = 200,
        media_type: str = "application/octet-stream",
        **kwargs
    ) -> "Response":
        """Create streaming response."""
        return cls(content=iterator, status=status, media_type=media_type, **kwargs)

    # ========================================================================
    # Body Access
    # ========================================================================

    def iter_body(self) -> AsyncIterator[bytes]:
        """
        Iterate the body as bytes chunks, whatever its representation.

        The current content is bound immediately, so the iterator may be
        passed to ``replace_body()`` to wrap the old body in a filter.
        """
        return self._iterate(self._content)

    async def _iterate(self, content: Any) -> AsyncIterator[bytes]:
        # sync iterators are advanced in the default executor
        if isinstance(content, (bytes, str)):
            body = self._ensure_bytes(content)
            if body:
                yield body
            return

        if hasattr(content, "__aiter__"):
            async for chunk in content:
                yield self._ensure_bytes(chunk)
            return

        if hasattr(content, "__iter__"):
            loop = asyncio.get_running_loop()
            iterator = iter(content)
            sentinel = object()
            while True:
                chunk = await loop.run_in_executor(None, next, iterator, sentinel)
                if chunk is sentinel:
                    break
                yield self._ensure_bytes(chunk)
            return

        if inspect.isawaitable(content):
            yield self._ensure_bytes(await content)
            return

        yield self._ensure_bytes(content)

    async def body(self) -> bytes:
        """Collect the full body. Consumes streaming content."""
        chunks = [chunk async for chunk in self.iter_body()]
        body = b"".join(chunks)
        self._content = body
        return body

    def replace_body(self, content: Content) -> None:
        """
        Swap in a new body, e.g. a filtered stream of the old one.

        Content-Length is dropped since the new length is unknown.
        """
        self._content = content
        self._headers.pop("content-length", None)

    def _ensure_bytes(self, chunk: Any) -> bytes:
        if isinstance(chunk, bytes):
            return chunk
        if isinstance(chunk, str):
            return chunk.encode(self.encoding)
        return str(chunk).encode(self.encoding)

    # ========================================================================
    # ASGI Send
    # ========================================================================

    def _prepare_headers(self) -> List[tuple]:
        return [
            (name.encode("latin-1"), value.encode("latin-1"))
            for name, value in self._headers.items()
        ]

    async def send_asgi(self, send: Callable[[dict], Awaitable[None]]) -> None:
        """Send response via ASGI."""
        try:
            if isinstance(self._content, str):
                self._content = self._content.encode(self.encoding)
            if isinstance(self._content, bytes) and "content-length" not in self._headers:
                self._headers["content-length"] = str(len(self._content))

            await send({
                "type": "http.response.start",
                "status": self.status,
                "headers": self._prepare_headers(),
            })

            if isinstance(self._content, bytes):
                self._bytes_sent = len(self._content)
                await send({"type": "http.response.body", "body": self._content, "more_body": False})
                return

            async for chunk in self.iter_body():
                self._bytes_sent += len(chunk)
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
            await send({"type": "http.response.body", "body": b"", "more_body": False})

        except asyncio.CancelledError:
            raise ClientDisconnectError(
                message="Client disconnected",
                metadata={"bytes_sent": self._bytes_sent},
            )
        except Fault:
            raise
        except Exception as e:
            raise ResponseStreamError(
                message=f"Response stream error: {e}",
                metadata={"error": str(e), "bytes_sent": self._bytes_sent},
            )


__all__ = [
    "Response",
    "ResponseStreamError",
    "ClientDisconnectError",
]
