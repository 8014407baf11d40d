"""
Request - ASGI request wrapper used by the CSRF block middleware.

Provides:
- Typed access to method, path, headers and the request host
- Body reading with idempotent caching
- application/x-www-form-urlencoded and multipart/form-data parsing
- Body replay, so a wrapped application can read a body the validator
  already consumed
- Security limits: max body size, max fields
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional
from urllib.parse import parse_qsl

from python_multipart import MultipartParser
from python_multipart.multipart import parse_options_header

from ._datastructures import Headers, MultiDict, ParsedContentType
from .faults import Fault, FaultDomain, Severity


FORM_URLENCODED = "application/x-www-form-urlencoded"
MULTIPART_FORM = "multipart/form-data"


# ============================================================================
# Request Faults
# ============================================================================

class RequestFault(Fault):
    """Base class for request body faults."""
    domain = FaultDomain.IO
    public = True

    def __init__(self, message: str = None, **metadata):
        super().__init__(
            code=self.code,
            message=message or self.message,
            severity=self.severity,
            public=self.public,
            metadata=metadata,
        )


class BadRequest(RequestFault):
    """Malformed request (400)."""
    code = "BAD_REQUEST"
    message = "Bad request"
    severity = Severity.ERROR


class PayloadTooLarge(RequestFault):
    """Request payload exceeds limits (413)."""
    code = "PAYLOAD_TOO_LARGE"
    message = "Payload too large"
    severity = Severity.ERROR


class UnsupportedMediaType(RequestFault):
    """Unsupported Content-Type (415)."""
    code = "UNSUPPORTED_MEDIA_TYPE"
    message = "Unsupported media type"
    severity = Severity.ERROR


class ClientDisconnect(RequestFault):
    """Client disconnected while the body was being read."""
    code = "CLIENT_DISCONNECT"
    message = "Client disconnected"
    severity = Severity.WARN


class MultipartParseError(RequestFault):
    """Multipart parsing failed (400)."""
    code = "MULTIPART_PARSE_ERROR"
    message = "Multipart parsing failed"
    severity = Severity.ERROR


# ============================================================================
# Request Class
# ============================================================================

class Request:
    """
    Request object over an ASGI scope and receive callable.

    ``state`` is a plain dict shared with the surrounding middleware chain;
    a session middleware is expected to put the session under
    ``state["session"]``.
    """

    def __init__(
        self,
        scope: Mapping[str, Any],
        receive: Callable[..., Awaitable[dict]],
        *,
        max_body_size: int = 10_485_760,  # 10 MiB
        max_field_count: int = 1000,
    ):
        self.scope = scope
        self._receive = receive

        self.max_body_size = max_body_size
        self.max_field_count = max_field_count

        self.state: Dict[str, Any] = {}

        self._body: Optional[bytes] = None
        self._body_consumed = False
        self._headers: Optional[Headers] = None
        self._form_data: Optional[MultiDict] = None

    # ========================================================================
    # Basic Properties
    # ========================================================================

    @property
    def method(self) -> str:
        return self.scope.get("method", "GET")

    @property
    def path(self) -> str:
        return self.scope.get("path", "/")

    @property
    def query_string(self) -> str:
        return self.scope.get("query_string", b"").decode("latin-1")

    @property
    def client(self) -> Optional[tuple]:
        return self.scope.get("client")

    @property
    def headers(self) -> Headers:
        if self._headers is None:
            self._headers = Headers(raw=list(self.scope.get("headers", [])))
        return self._headers

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Get single header (case-insensitive)."""
        return self.headers.get(name, default)

    def content_type(self) -> Optional[str]:
        return self.header("content-type")

    @property
    def host(self) -> str:
        """
        Host name of the current request, lowercased, without port.

        Taken from the Host header, falling back to the ASGI server address.
        """
        host = self.header("host")
        if not host:
            server = self.scope.get("server")
            return str(server[0]).lower() if server else ""

        host = host.strip()
        if host.startswith("["):
            # IPv6 literal: [::1]:8000
            end = host.find("]")
            return host[: end + 1].lower() if end != -1 else host.lower()
        return host.split(":", 1)[0].lower()

    def log_context(self) -> Dict[str, Any]:
        """Request details for structured log records (no header values)."""
        client = self.client
        return {
            "method": self.method,
            "path": self.path,
            "host": self.host,
            "client": client[0] if client else None,
            "content_type": self.content_type(),
            "headers": sorted(set(self.headers.keys())),
        }

    # ========================================================================
    # Body Reading
    # ========================================================================

    async def _receive_message(self) -> dict:
        message = await self._receive()
        if message["type"] == "http.disconnect":
            raise ClientDisconnect("Client disconnected")
        return message

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """
        Stream request body in chunks.

        Raises:
            ClientDisconnect: If client disconnects during streaming
            PayloadTooLarge: If body exceeds max_body_size
        """
        if self._body is not None:
            if self._body:
                yield self._body
            return

        if self._body_consumed:
            return

        total_size = 0
        while True:
            message = await self._receive_message()
            if message["type"] != "http.request":
                continue

            chunk = message.get("body", b"")
            if chunk:
                total_size += len(chunk)
                if total_size > self.max_body_size:
                    raise PayloadTooLarge(
                        "Request body exceeds maximum size",
                        max_allowed=self.max_body_size,
                        actual=total_size,
                    )
                yield chunk

            if not message.get("more_body", False):
                break

        self._body_consumed = True

    async def body(self) -> bytes:
        """Read full request body (idempotent)."""
        if self._body is not None:
            return self._body

        chunks = []
        async for chunk in self.iter_bytes():
            chunks.append(chunk)

        self._body = b"".join(chunks)
        return self._body

    def replay_receive(self) -> Callable[[], Awaitable[dict]]:
        """
        Receive callable for the next application in line.

        If the body has been read, it is handed out again as a single
        ``http.request`` message; later calls reach the real receive (so the
        application still sees ``http.disconnect``).
        """
        if self._body is None:
            return self._receive

        body = self._body
        replayed = False

        async def receive() -> dict:
            nonlocal replayed
            if not replayed:
                replayed = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await self._receive()

        return receive

    # ========================================================================
    # Form & Multipart Parsing
    # ========================================================================

    async def parameters(self) -> MultiDict:
        """
        Body parameters for form-encoded requests.

        Returns an empty MultiDict for any other content type.
        """
        parsed_ct = ParsedContentType.parse(self.content_type())
        if parsed_ct is None:
            return MultiDict()
        if parsed_ct.media_type == FORM_URLENCODED:
            return await self.form()
        if parsed_ct.media_type == MULTIPART_FORM:
            return await self.multipart()
        return MultiDict()

    async def form(self) -> MultiDict:
        """
        Parse application/x-www-form-urlencoded form data.

        Raises:
            UnsupportedMediaType: If Content-Type is not form-urlencoded
            BadRequest: If there are too many fields
        """
        if self._form_data is not None:
            return self._form_data

        parsed_ct = ParsedContentType.parse(self.content_type())
        if not parsed_ct or parsed_ct.media_type != FORM_URLENCODED:
            raise UnsupportedMediaType(f"Expected {FORM_URLENCODED}, got {self.content_type()}")

        body_bytes = await self.body()
        try:
            body_str = body_bytes.decode(parsed_ct.charset)
        except (LookupError, UnicodeDecodeError) as e:
            raise BadRequest(f"Undecodable form body: {e}", charset=parsed_ct.charset)

        items = parse_qsl(body_str, keep_blank_values=True)
        if len(items) > self.max_field_count:
            raise BadRequest(
                "Too many form fields",
                max_allowed=self.max_field_count,
                actual=len(items),
            )

        self._form_data = MultiDict(items)
        return self._form_data

    async def multipart(self) -> MultiDict:
        """
        Parse the plain fields of a multipart/form-data body.

        File parts are skipped; their bytes stay available through ``body()``.

        Raises:
            UnsupportedMediaType: If Content-Type is not multipart/form-data
            MultipartParseError: If the body is not valid multipart
        """
        if self._form_data is not None:
            return self._form_data

        parsed_ct = ParsedContentType.parse(self.content_type())
        if not parsed_ct or parsed_ct.media_type != MULTIPART_FORM:
            raise UnsupportedMediaType(f"Expected {MULTIPART_FORM}, got {self.content_type()}")

        boundary = parsed_ct.boundary
        if not boundary:
            raise BadRequest("No boundary in multipart Content-Type")

        self._form_data = self._parse_multipart(boundary.encode("latin-1"), await self.body())
        return self._form_data

    def _parse_multipart(self, boundary: bytes, body: bytes) -> MultiDict:
        fields = MultiDict()
        part = {"headers": {}, "field": bytearray(), "value": bytearray(), "data": bytearray()}
        part_count = 0

        def on_part_begin():
            nonlocal part_count
            part_count += 1
            if part_count > self.max_field_count:
                raise BadRequest(
                    "Too many multipart parts",
                    max_allowed=self.max_field_count,
                    actual=part_count,
                )
            part["headers"] = {}
            part["data"] = bytearray()

        def on_header_field(data: bytes, start: int, end: int):
            part["field"].extend(data[start:end])

        def on_header_value(data: bytes, start: int, end: int):
            part["value"].extend(data[start:end])

        def on_header_end():
            if part["field"]:
                name = part["field"].decode("latin-1").lower()
                part["headers"][name] = part["value"].decode("utf-8", errors="replace")
            part["field"] = bytearray()
            part["value"] = bytearray()

        def on_part_data(data: bytes, start: int, end: int):
            part["data"].extend(data[start:end])

        def on_part_end():
            disposition = part["headers"].get("content-disposition")
            if not disposition:
                return
            _, options = parse_options_header(disposition)
            name = options.get(b"name")
            if not name or b"filename" in options:
                return
            fields.add(
                name.decode("utf-8", errors="replace"),
                part["data"].decode("utf-8", errors="replace"),
            )

        parser = MultipartParser(boundary, {
            "on_part_begin": on_part_begin,
            "on_header_field": on_header_field,
            "on_header_value": on_header_value,
            "on_header_end": on_header_end,
            "on_part_data": on_part_data,
            "on_part_end": on_part_end,
        })

        try:
            parser.write(body)
            parser.finalize()
        except Fault:
            raise
        except Exception as e:
            raise MultipartParseError(f"Multipart parsing failed: {e}")

        return fields


__all__ = [
    "Request",
    "RequestFault",
    "BadRequest",
    "PayloadTooLarge",
    "UnsupportedMediaType",
    "ClientDisconnect",
    "MultipartParseError",
    "FORM_URLENCODED",
    "MULTIPART_FORM",
]
