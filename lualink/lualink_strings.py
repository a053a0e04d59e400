"""
Refcounted storage for strings that exist without a runtime context.

A literal string handle built before any interpreter is involved owns a
pooled buffer instead of a registry anchor. Copies share the buffer and
bump its count; the buffer is dropped from the pool when the last holder
releases it. Buffers are immutable and never move once allocated.
"""
from __future__ import annotations

from typing import Optional, Set, Union

from lualink.lualink_errors import InvalidHandle


class PooledString:
    """One shared, refcounted byte buffer.

    `text` keeps the original str of a text literal so a runtime context
    can re-encode it with its own encoding; it is None for byte literals.
    """
    __slots__ = ("data", "text", "refcount", "__weakref__")

    def __init__(self, data: bytes, text: Optional[str] = None):
        self.data = data
        self.text = text
        self.refcount = 1

    def __len__(self) -> int:
        return len(self.data)

    def __repr__(self):
        return f"PooledString({self.data!r}, refcount={self.refcount})"


class StringPool:
    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self._live: Set[PooledString] = set()

    def intern(self, value: Union[str, bytes, bytearray]) -> PooledString:
        """Allocate a new buffer holding `value` with a count of one.

        Every call allocates; identical literals are not deduplicated.
        """
        if isinstance(value, str):
            data = value.encode(self.encoding)
        elif isinstance(value, (bytes, bytearray)):
            data = bytes(value)
        else:
            raise TypeError(f"expected str or bytes, not {type(value).__name__}")
        entry = PooledString(data, value if isinstance(value, str) else None)
        self._live.add(entry)
        return entry

    def retain(self, entry: PooledString) -> PooledString:
        if entry not in self._live:
            raise InvalidHandle("retain of a released string buffer")
        entry.refcount += 1
        return entry

    def release(self, entry: PooledString) -> None:
        if entry not in self._live:
            raise InvalidHandle("release of a released string buffer")
        entry.refcount -= 1
        if entry.refcount == 0:
            self._live.discard(entry)

    def decode(self, entry: PooledString) -> str:
        return entry.data.decode(self.encoding, errors="replace")

    @property
    def live_count(self) -> int:
        """Number of buffers still held by at least one handle."""
        return len(self._live)

    def __len__(self) -> int:
        return len(self._live)

    def __contains__(self, entry) -> bool:
        return entry in self._live


# Shared by every context-free string handle in the process.
STRING_POOL = StringPool()
