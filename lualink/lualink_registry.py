"""
The per-context reference registry.

Maps integer ids to runtime values so that garbage-collected values stay
reachable for as long as a host handle anchors them. Holding the value in
the registry keeps the runtime-side object alive; releasing the id drops
that hold. Freed ids are reused, most recently freed first.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List

from lualink.lualink_errors import ContextClosedError, InvalidHandle

log = logging.getLogger(__name__)


class ReferenceRegistry:
    def __init__(self):
        self._slots: Dict[int, Any] = {}
        self._free: List[int] = []
        self._next_id = 1
        self._closed = False

    def _check_open(self):
        if self._closed:
            raise ContextClosedError("runtime context has been closed; its handles are no longer valid")

    def anchor(self, value: Any) -> int:
        """Register `value` under a fresh id and return the id."""
        self._check_open()
        if self._free:
            ref = self._free.pop()
        else:
            ref = self._next_id
            self._next_id += 1
        self._slots[ref] = value
        return ref

    def get(self, ref: int) -> Any:
        self._check_open()
        try:
            return self._slots[ref]
        except KeyError:
            raise InvalidHandle(f"reference {ref} is not anchored") from None

    def duplicate(self, ref: int) -> int:
        """Re-anchor the value behind `ref` under a second, independent id."""
        return self.anchor(self.get(ref))

    def release(self, ref: int) -> None:
        self._check_open()
        if ref not in self._slots:
            raise InvalidHandle(f"reference {ref} is not anchored")
        del self._slots[ref]
        self._free.append(ref)

    def poison(self) -> int:
        """Drop every anchor and refuse all further use. Returns the number dropped."""
        dropped = len(self._slots)
        self._slots.clear()
        self._free.clear()
        self._closed = True
        return dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def __contains__(self, ref) -> bool:
        return ref in self._slots

    def __len__(self) -> int:
        return len(self._slots)
