"""
Rewriter - Streaming HTML rewriting for CSRF token injection.

Two stages:

1. ``HTMLTokenizer`` turns arbitrary byte chunks into HTML tokens. It is an
   explicit, resumable state machine: an incomplete tag at the end of a
   chunk is kept as pending bytes and finished on the next ``feed()``.
2. ``HTMLRewriter`` maps tokens to output items (``Passthrough``,
   ``MetaTag``, ``HiddenInput``) and renders them back to bytes.

Output is always the input bytes in their original order, plus the injected
fragments. Splitting the input at any byte boundary yields the same output.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Tuple, Union

from .config import CSRFBlockConfig


# ============================================================================
# Tokens
# ============================================================================

class TokenKind(str, Enum):
    TEXT = "text"
    START_TAG = "start_tag"
    END_TAG = "end_tag"
    COMMENT = "comment"
    DECLARATION = "declaration"


@dataclass
class HTMLToken:
    """
    A single lexical unit of HTML.

    ``raw`` always holds the exact input bytes. ``name`` and ``attrs`` are
    filled for tags only: lowercase names, entity-decoded values.
    """

    kind: TokenKind
    raw: bytes
    name: Optional[str] = None
    attrs: Dict[str, str] = field(default_factory=dict)


class State(Enum):
    TEXT = "text"
    TAG_OPEN = "tag_open"
    IN_TAG = "in_tag"
    IN_ATTR = "in_attr"
    TAG_CLOSE = "tag_close"
    MARKUP_DECL = "markup_decl"
    COMMENT = "comment"


# Elements whose content is not markup. noscript content is parsed as markup
# (forms in it are posted when scripting is off).
RAW_TEXT_ELEMENTS = frozenset({
    "script", "style", "textarea", "title", "xmp", "iframe", "plaintext",
})

_TAG_NAME_RE = re.compile(rb"</?([a-zA-Z][^\s/>]*)")
_ATTR_RE = re.compile(rb"""([^\s/>"'=]+)(?:\s*=\s*("[^"]*"|'[^']*'|[^\s>]*))?""")

_WHITESPACE = b" \t\n\r\f"
_QUOTES = b"\"'"
_END_TAG_DELIMITERS = b">/" + _WHITESPACE
_COMMENT_OPEN = b"<!--"
_COMMENT_CLOSE = b"-->"


def _is_letter(byte: int) -> bool:
    return 0x41 <= byte <= 0x5A or 0x61 <= byte <= 0x7A


def _decode(value: bytes) -> str:
    return html.unescape(value.decode("utf-8", errors="replace"))


def parse_tag(raw: bytes) -> Tuple[str, Dict[str, str]]:
    """
    Extract ``(name, attrs)`` from the raw bytes of a tag.

    Attribute names are lowercased; the first occurrence of a name wins and
    valueless attributes map to ``""``.
    """
    match = _TAG_NAME_RE.match(raw)
    if match is None:
        return "", {}

    name = match.group(1).decode("latin-1").lower()
    attrs: Dict[str, str] = {}
    body = raw[match.end():]
    if body.endswith(b">"):
        body = body[:-1]

    for attr in _ATTR_RE.finditer(body):
        key = attr.group(1).decode("utf-8", errors="replace").lower()
        if key in attrs:
            continue
        value = attr.group(2)
        if value is None:
            attrs[key] = ""
            continue
        if len(value) >= 2 and value[:1] in (b'"', b"'") and value[-1:] == value[:1]:
            value = value[1:-1]
        attrs[key] = _decode(value)

    return name, attrs


# ============================================================================
# Tokenizer
# ============================================================================

class HTMLTokenizer:
    """
    Incremental HTML tokenizer.

    ``feed()`` returns every token completed by the new bytes; text is
    emitted as soon as it is known not to belong to a tag. ``close()``
    flushes whatever is pending as text. Malformed input never raises.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._pos = 0
        self._state = State.TEXT
        self._quote: Optional[int] = None
        self._raw_tag: Optional[bytes] = None

    @property
    def state(self) -> State:
        return self._state

    @property
    def pending(self) -> bytes:
        """Bytes held back because they may belong to an unfinished token."""
        return bytes(self._buffer)

    def feed(self, data: bytes) -> List[HTMLToken]:
        tokens: List[HTMLToken] = []
        if data:
            self._buffer.extend(data)
        while self._step(tokens):
            pass
        return tokens

    def close(self) -> List[HTMLToken]:
        tokens: List[HTMLToken] = []
        if self._buffer:
            tokens.append(HTMLToken(TokenKind.TEXT, bytes(self._buffer)))
        self._buffer.clear()
        self._reset(State.TEXT)
        self._raw_tag = None
        return tokens

    # ------------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------------

    def _step(self, tokens: List[HTMLToken]) -> bool:
        """Advance the machine. Returns False when more input is needed."""
        buf = self._buffer
        state = self._state

        if state is State.TEXT:
            if self._raw_tag is not None:
                return self._step_raw_text(tokens)
            index = buf.find(b"<", self._pos)
            if index == -1:
                self._emit_text(len(buf), tokens)
                return False
            self._emit_text(index, tokens)
            self._reset(State.TAG_OPEN, 1)
            return True

        if state is State.TAG_OPEN:
            if len(buf) < 2:
                return False
            byte = buf[1]
            if _is_letter(byte):
                self._reset(State.IN_TAG, 2)
            elif byte == 0x2F:  # /
                self._reset(State.TAG_CLOSE, 2)
            elif byte in (0x21, 0x3F):  # ! ?
                self._reset(State.MARKUP_DECL, 2)
            else:
                # a lone "<" is text; rescan from the byte after it
                self._emit_text(1, tokens)
                self._reset(State.TEXT)
            return True

        if state is State.IN_TAG:
            for index in range(self._pos, len(buf)):
                byte = buf[index]
                if byte == 0x3E:  # >
                    self._emit_start_tag(index + 1, tokens)
                    return True
                if byte == 0x3D:  # =
                    self._reset(State.IN_ATTR, index + 1)
                    return True
            self._pos = len(buf)
            return False

        if state is State.IN_ATTR:
            if self._quote is not None:
                index = buf.find(bytes((self._quote,)), self._pos)
                if index == -1:
                    self._pos = len(buf)
                    return False
                self._reset(State.IN_TAG, index + 1)
                return True
            while self._pos < len(buf):
                byte = buf[self._pos]
                if byte in _WHITESPACE:
                    self._pos += 1
                    continue
                if byte in _QUOTES:
                    self._quote = byte
                    self._pos += 1
                    return True
                # unquoted value, or no value at all
                self._state = State.IN_TAG
                return True
            return False

        if state is State.TAG_CLOSE:
            index = buf.find(b">", self._pos)
            if index == -1:
                self._pos = len(buf)
                return False
            raw = bytes(buf[: index + 1])
            name, _ = parse_tag(raw)
            self._consume(index + 1)
            tokens.append(HTMLToken(TokenKind.END_TAG, raw, name=name))
            self._raw_tag = None
            self._reset(State.TEXT)
            return True

        if state is State.MARKUP_DECL:
            head = bytes(buf[:4])
            if len(head) < 4 and _COMMENT_OPEN.startswith(head):
                return False
            if head == _COMMENT_OPEN:
                self._reset(State.COMMENT, 2)
                return True
            index = buf.find(b">", self._pos)
            if index == -1:
                self._pos = len(buf)
                return False
            self._emit(TokenKind.DECLARATION, index + 1, tokens)
            return True

        if state is State.COMMENT:
            index = buf.find(_COMMENT_CLOSE, self._pos)
            if index == -1:
                self._pos = max(2, len(buf) - 2)
                return False
            self._emit(TokenKind.COMMENT, index + 3, tokens)
            return True

        return False

    def _step_raw_text(self, tokens: List[HTMLToken]) -> bool:
        """Scan raw-text content for ``</name`` followed by a delimiter."""
        buf = self._buffer
        closing = b"</" + self._raw_tag
        needed = len(closing) + 1
        search = self._pos

        while True:
            index = buf.find(b"<", search)
            if index == -1:
                self._emit_text(len(buf), tokens)
                return False
            candidate = bytes(buf[index: index + needed]).lower()
            if len(candidate) < needed:
                if closing.startswith(candidate):
                    # may still become the end tag
                    self._emit_text(index, tokens)
                    return False
            elif candidate[:-1] == closing and candidate[-1] in _END_TAG_DELIMITERS:
                self._emit_text(index, tokens)
                self._reset(State.TAG_CLOSE, 2)
                return True
            search = index + 1

    # ------------------------------------------------------------------------
    # Emission helpers
    # ------------------------------------------------------------------------

    def _reset(self, state: State, pos: int = 0) -> None:
        self._state = state
        self._pos = pos
        self._quote = None

    def _consume(self, end: int) -> None:
        del self._buffer[:end]

    def _emit_text(self, end: int, tokens: List[HTMLToken]) -> None:
        if end <= 0:
            return
        tokens.append(HTMLToken(TokenKind.TEXT, bytes(self._buffer[:end])))
        self._consume(end)
        self._pos = 0

    def _emit(self, kind: TokenKind, end: int, tokens: List[HTMLToken]) -> None:
        tokens.append(HTMLToken(kind, bytes(self._buffer[:end])))
        self._consume(end)
        self._reset(State.TEXT)

    def _emit_start_tag(self, end: int, tokens: List[HTMLToken]) -> None:
        raw = bytes(self._buffer[:end])
        name, attrs = parse_tag(raw)
        tokens.append(HTMLToken(TokenKind.START_TAG, raw, name=name, attrs=attrs))
        self._consume(end)
        self._reset(State.TEXT)
        if name in RAW_TEXT_ELEMENTS:
            self._raw_tag = name.encode("latin-1")


# ============================================================================
# Output Items
# ============================================================================

@dataclass(frozen=True)
class Passthrough:
    """Original input bytes, emitted unchanged."""
    data: bytes

    def render(self, encoding: str) -> bytes:
        return self.data


@dataclass(frozen=True)
class MetaTag:
    name: str
    token: str

    def render(self, encoding: str) -> bytes:
        markup = '<meta name="%s" content="%s"/>' % (
            html.escape(self.name, quote=True),
            html.escape(self.token, quote=True),
        )
        return markup.encode(encoding, errors="xmlcharrefreplace")


@dataclass(frozen=True)
class HiddenInput:
    name: str
    token: str

    def render(self, encoding: str) -> bytes:
        markup = '<input type="hidden" name="%s" value="%s" />' % (
            html.escape(self.name, quote=True),
            html.escape(self.token, quote=True),
        )
        return markup.encode(encoding, errors="xmlcharrefreplace")


OutputItem = Union[Passthrough, MetaTag, HiddenInput]


# ============================================================================
# Rewriter
# ============================================================================

_ABSOLUTE_ACTION_RE = re.compile(r"^https?://([^/:?#]+)(?:[/:?#]|$)", re.IGNORECASE)


def is_cross_origin(action: Optional[str], host: str) -> bool:
    """
    True when ``action`` is an absolute http(s) URL naming another host.

    Relative, empty and protocol-relative actions count as same-origin.
    """
    if not action:
        return False
    match = _ABSOLUTE_ACTION_RE.match(action.strip())
    if match is None:
        return False
    return match.group(1).lower() != host.lower()


class HTMLRewriter:
    """
    Injects the CSRF token into one HTML response body.

    - After every same-origin ``<form method="post">`` start tag, a hidden
      input named ``config.parameter_name`` carrying the token.
    - With ``config.add_meta``, a ``<meta>`` tag after the first ``<head>``.

    One instance per response. After ``close()`` every call returns ``b""``.
    """

    def __init__(
        self,
        token: str,
        config: CSRFBlockConfig,
        host: str,
        encoding: str = "utf-8",
    ):
        self.token = token
        self.config = config
        self.host = host.lower()
        self.encoding = encoding
        self._tokenizer = HTMLTokenizer()
        self._meta_done = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, chunk: bytes) -> bytes:
        if self._closed:
            return b""
        return self.render(self.rewrite_items(self._tokenizer.feed(chunk)))

    def close(self) -> bytes:
        if self._closed:
            return b""
        self._closed = True
        return self.render(self.rewrite_items(self._tokenizer.close()))

    def process(self, chunk: Optional[bytes]) -> bytes:
        """Feed a chunk, or finish the document when ``chunk`` is None."""
        if chunk is None:
            return self.close()
        return self.feed(chunk)

    def rewrite_items(self, tokens: List[HTMLToken]) -> List[OutputItem]:
        items: List[OutputItem] = []
        for token in tokens:
            items.append(Passthrough(token.raw))
            if token.kind is not TokenKind.START_TAG:
                continue
            if token.name == "head":
                if self.config.add_meta and not self._meta_done:
                    items.append(MetaTag(self.config.meta_name, self.token))
                    self._meta_done = True
            elif token.name == "form" and self._accepts_token(token.attrs):
                items.append(HiddenInput(self.config.parameter_name, self.token))
        return items

    def render(self, items: List[OutputItem]) -> bytes:
        return b"".join(item.render(self.encoding) for item in items)

    def _accepts_token(self, attrs: Dict[str, str]) -> bool:
        method = attrs.get("method", "")
        if method.strip().lower() != "post":
            return False
        return not is_cross_origin(attrs.get("action"), self.host)


async def rewrite_stream(
    chunks: AsyncIterator[bytes],
    rewriter: HTMLRewriter,
) -> AsyncIterator[bytes]:
    """Pipe an async byte stream through ``rewriter``."""
    async for chunk in chunks:
        output = rewriter.feed(chunk)
        if output:
            yield output
    tail = rewriter.close()
    if tail:
        yield tail


__all__ = [
    "TokenKind",
    "HTMLToken",
    "State",
    "RAW_TEXT_ELEMENTS",
    "HTMLTokenizer",
    "Passthrough",
    "MetaTag",
    "HiddenInput",
    "OutputItem",
    "HTMLRewriter",
    "is_cross_origin",
    "parse_tag",
    "rewrite_stream",
]
