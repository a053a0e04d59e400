"""
Deferred handles to a single table slot.

A TableIndexProxy names one (table, key) pair. The key is anchored in the
registry for the proxy's lifetime so any value kind can serve as a key;
the table is referenced by the registry id of its existing handle and is
never re-anchored. Once that handle is released or given another value
the proxy refuses to touch the slot. Reading materializes the current
slot contents, writing stores into the slot.
"""
from __future__ import annotations

from typing import Any, Optional, TYPE_CHECKING

from lualink.lualink_datatypes import ValueHandle, ValueKind, coerce_handle
from lualink.lualink_errors import (
    CrossContextError, InvalidHandle, LuaTypeError, NotBoundToTable,
)

if TYPE_CHECKING:
    from lualink.lualink_runtime import RuntimeContext


class TableIndexProxy:
    """One slot of one table.

    `TableIndexProxy()` is invalid and every operation on it fails with
    InvalidHandle. `TableIndexProxy(key=k, context=ctx)` is valid but not
    bound to a table until `bind()` is called; reads and writes through it
    fail with NotBoundToTable.
    """

    def __init__(self, table: Optional[ValueHandle] = None, key: Any = None, *,
                 context: Optional["RuntimeContext"] = None):
        self._context: Optional["RuntimeContext"] = None
        self._table: Optional[ValueHandle] = None
        self._table_ref: Optional[int] = None
        self._table_value: Any = None
        self._key_ref: Optional[int] = None

        if table is not None:
            if not isinstance(table, ValueHandle) or not table.is_table():
                raise LuaTypeError("not a table")
            if context is not None and context is not table.context:
                raise CrossContextError()
            context = table._check_state()
        elif context is None:
            if key is not None:
                raise InvalidHandle("a table index needs a table or a runtime context")
            return

        context._check_open()
        key_handle, owned = coerce_handle(key, context)
        try:
            key_handle._check_consistency(context)
            with context.balanced():
                key_handle._push(context)
                self._key_ref = context.anchor(-1)
        finally:
            if owned:
                key_handle.release()
        self._context = context
        self._set_table(table)

    def __del__(self):
        context = getattr(self, "_context", None)
        if context is not None and not context.closed:
            self.release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __repr__(self):
        if self._context is None:
            return "<TableIndexProxy invalid>"
        bound = "bound" if self._table is not None else "unbound"
        return f"<TableIndexProxy {bound} key_ref={self._key_ref}>"

    # ---------------------------------------------------------------
    # State
    # ---------------------------------------------------------------

    @property
    def context(self) -> Optional["RuntimeContext"]:
        return self._context

    @property
    def is_valid(self) -> bool:
        return self._context is not None

    @property
    def is_bound(self) -> bool:
        return self._table is not None

    @property
    def table_ref(self) -> Optional[int]:
        return self._table_ref

    @property
    def key_ref(self) -> Optional[int]:
        return self._key_ref

    def _check_valid(self) -> "RuntimeContext":
        if self._context is None:
            raise InvalidHandle("attempted to use an invalid table index")
        self._context._check_open()
        return self._context

    def _check_bound(self) -> "RuntimeContext":
        context = self._check_valid()
        if self._table is None:
            raise NotBoundToTable("table index is not connected to a table")
        table = self._table
        if (table.kind is not ValueKind.TABLE or table.ref != self._table_ref
                or context.registry.get(self._table_ref) is not self._table_value):
            raise InvalidHandle("the table behind this index has been released or reassigned")
        return context

    def _set_table(self, table: Optional[ValueHandle]):
        self._table = table
        if table is None:
            self._table_ref = self._table_value = None
        else:
            self._table_ref = table.ref
            self._table_value = table.context.registry.get(table.ref)

    # ---------------------------------------------------------------
    # Lifetime
    # ---------------------------------------------------------------

    def release(self) -> None:
        """Drop the key anchor. The proxy becomes invalid."""
        context, key_ref = self._context, self._key_ref
        self._context, self._key_ref = None, None
        self._set_table(None)
        if context is not None and key_ref is not None:
            context.release(key_ref)

    def copy(self) -> "TableIndexProxy":
        """A second proxy for the same slot, with its own key anchor."""
        self._check_valid()
        clone = TableIndexProxy()
        clone._copy_from(self)
        return clone

    __copy__ = copy

    def _copy_from(self, other: "TableIndexProxy"):
        if other._context is None:
            return
        context = other._check_valid()
        self._key_ref = context.duplicate(other._key_ref)
        self._context = context
        self._table = other._table
        self._table_ref = other._table_ref
        self._table_value = other._table_value

    def assign(self, other: Optional["TableIndexProxy"]) -> "TableIndexProxy":
        """Become a copy of `other`, or invalid when `other` is None."""
        if other is self:
            return self
        self.release()
        if other is not None:
            self._copy_from(other)
        return self

    def bind(self, table: ValueHandle) -> "TableIndexProxy":
        context = self._check_valid()
        if not isinstance(table, ValueHandle) or not table.is_table():
            raise LuaTypeError("not a table")
        table._check_consistency(context)
        self._set_table(table)
        return self

    # ---------------------------------------------------------------
    # Slot access
    # ---------------------------------------------------------------

    def read(self) -> ValueHandle:
        """Materialize the current contents of the slot."""
        context = self._check_bound()
        with context.balanced():
            context.push_ref(self._table_ref)
            context.push_ref(self._key_ref)
            context.gettable(-2)
            return ValueHandle._load(context, -1)

    def write(self, value: Any) -> "TableIndexProxy":
        """Store `value` into the slot."""
        context = self._check_bound()
        handle, owned = coerce_handle(value, context)
        try:
            handle._check_consistency(context)
            with context.balanced():
                context.push_ref(self._table_ref)
                context.push_ref(self._key_ref)
                handle._push(context)
                context.settable(-3)
        finally:
            if owned:
                handle.release()
        return self
