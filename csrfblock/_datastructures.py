"""
Core data structures for csrfblock request handling.

Provides:
- MultiDict: Multi-value dictionary for form data
- Headers: Case-insensitive header access, plus CGI-style normalized lookup
- ParsedContentType: Content-Type parsing helper
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import (
    Dict, Iterator, List, Mapping, MutableMapping,
    Optional, Tuple, Union
)


def normalize_header_name(name: str) -> str:
    """
    Normalize a header name for lookup.

    ``X-CSRF-Token`` and ``x_csrf_token`` both become ``X_CSRF_TOKEN``.
    """
    return name.upper().replace("-", "_")


# ============================================================================
# MultiDict
# ============================================================================

class MultiDict(MutableMapping[str, List[str]]):
    """
    Dictionary that supports multiple values per key.

    Used for form data where keys can repeat.
    """

    def __init__(self, items: Optional[Union[List[Tuple[str, str]], Mapping[str, Union[str, List[str]]]]] = None):
        self._data: Dict[str, List[str]] = {}

        if items:
            if isinstance(items, list):
                for key, value in items:
                    self.add(key, value)
            else:
                for key, value in items.items():
                    if isinstance(value, list):
                        self._data[key] = list(value)
                    else:
                        self._data[key] = [value]

    def __getitem__(self, key: str) -> List[str]:
        return self._data[key]

    def __setitem__(self, key: str, value: Union[str, List[str]]) -> None:
        self._data[key] = list(value) if isinstance(value, list) else [value]

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"MultiDict({self._data})"

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get first value for a key."""
        values = self._data.get(key)
        return values[0] if values else default

    def get_all(self, key: str) -> List[str]:
        """Get all values for a key."""
        return self._data.get(key, [])

    def add(self, key: str, value: str) -> None:
        """Append a value to a key."""
        self._data.setdefault(key, []).append(value)


# ============================================================================
# Headers
# ============================================================================

@dataclass
class Headers:
    """
    Case-insensitive header access over raw ASGI header pairs.

    Besides plain lookups, ``get_normalized`` matches names the way CGI
    environments expose them (uppercase, ``-`` replaced by ``_``), so a
    configured ``X-CSRF-Token`` also finds ``x_csrf_token``.
    """

    raw: List[Tuple[bytes, bytes]] = field(default_factory=list)
    _index: Dict[str, List[bytes]] = field(default_factory=dict, init=False, repr=False)
    _normalized: Dict[str, List[bytes]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        for name, value in self.raw:
            key = name.decode("latin-1")
            self._index.setdefault(key.lower(), []).append(value)
            self._normalized.setdefault(normalize_header_name(key), []).append(value)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Get first value for header (case-insensitive)."""
        values = self._index.get(name.lower())
        if values:
            return values[0].decode("latin-1")
        return default

    def get_normalized(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get first value for an already-normalized header key."""
        values = self._normalized.get(key)
        if values:
            return values[0].decode("latin-1")
        return default

    def get_all(self, name: str) -> List[str]:
        """Get all values for header (case-insensitive)."""
        return [value.decode("latin-1") for value in self._index.get(name.lower(), [])]

    def keys(self) -> Iterator[str]:
        for name, _ in self.raw:
            yield name.decode("latin-1")


# ============================================================================
# ParsedContentType
# ============================================================================

@dataclass
class ParsedContentType:
    """
    Parsed Content-Type header.

    Extracts media type and parameters (e.g., charset, boundary).
    """

    media_type: str
    params: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, content_type: Optional[str]) -> Optional["ParsedContentType"]:
        if not content_type:
            return None

        parts = content_type.split(";")
        media_type = parts[0].strip().lower()

        params = {}
        for part in parts[1:]:
            if "=" in part:
                key, value = part.split("=", 1)
                params[key.strip().lower()] = value.strip().strip('"')

        return cls(media_type=media_type, params=params)

    @property
    def charset(self) -> str:
        """Charset parameter (default: utf-8)."""
        return self.params.get("charset", "utf-8")

    @property
    def boundary(self) -> Optional[str]:
        """Boundary parameter (multipart only)."""
        return self.params.get("boundary")
