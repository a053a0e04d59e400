"""
Defines the value handle: a host-side, referenceable view of one Lua value.

A handle is a tagged variant over every Lua value kind. Immediate kinds
(nil, booleans, numbers, native functions, light userdata) carry their
payload directly. Reference kinds (strings, functions, userdata, threads,
tables) carry an id into the registry of the runtime context recorded on
the handle. Strings built without a context live in the shared string
pool instead.
"""
from __future__ import annotations

import math
import struct
import sys
from enum import Enum
from typing import Any, Callable, Iterator, Optional, Tuple, TYPE_CHECKING

from lupa import lua_type

from lualink.lualink_errors import (
    CrossContextError, InvalidHandle, LuaTypeError,
)
from lualink.lualink_strings import STRING_POOL, PooledString

if TYPE_CHECKING:
    from lualink.lualink_proxy import TableIndexProxy
    from lualink.lualink_runtime import RuntimeContext


class ValueKind(Enum):
    NIL = "nil"
    BOOLEAN = "boolean"
    NUMBER = "number"
    INTEGER = "integer"
    STRING = "string"
    STATELESS_STRING = "stateless-string"
    FUNCTION = "function"
    NATIVE_FUNCTION = "native-function"
    USERDATA = "userdata"
    LIGHT_USERDATA = "light-userdata"
    THREAD = "thread"
    TABLE = "table"


REFERENCE_KINDS = frozenset({
    ValueKind.STRING, ValueKind.FUNCTION, ValueKind.USERDATA,
    ValueKind.THREAD, ValueKind.TABLE,
})

_LUA_TYPE_KINDS = {
    "function": ValueKind.FUNCTION,
    "table": ValueKind.TABLE,
    "thread": ValueKind.THREAD,
    "userdata": ValueKind.USERDATA,
}

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

# 2**52 + 2**51: adding it to a double leaves the value, rounded half to
# even, in the low word of the mantissa.
_MAGIC = 6755399441055744.0


# ===================================================================
# Numeric helpers
# ===================================================================

def number_to_integer(n: float) -> int:
    """Round `n` to an integer the way the runtime does, half to even.

    Only the low 32 bits of the result are meaningful.
    """
    low, high = struct.unpack("=ii", struct.pack("=d", float(n) + _MAGIC))
    return high if sys.byteorder == "big" else low


def classify_number(n: float | int) -> Tuple[ValueKind, float | int]:
    """Classify a numeric value as INTEGER when it survives an int64 round trip."""
    if isinstance(n, int):
        return ValueKind.INTEGER, n
    n = float(n)
    if math.isfinite(n) and INT64_MIN <= n < 2 ** 63:
        i = int(n)
        if float(i) == n:
            return ValueKind.INTEGER, i
    return ValueKind.NUMBER, n


def _check_int64(i: int) -> int:
    if not INT64_MIN <= i <= INT64_MAX:
        raise OverflowError(f"integer {i} does not fit in 64 bits")
    return i


def classify_raw(raw: Any) -> ValueKind:
    """Map a raw runtime value (as lupa hands it to Python) to its kind."""
    if raw is None:
        return ValueKind.NIL
    if isinstance(raw, bool):
        return ValueKind.BOOLEAN
    if isinstance(raw, (int, float)):
        return classify_number(raw)[0]
    if isinstance(raw, (str, bytes)):
        return ValueKind.STRING
    kind = _LUA_TYPE_KINDS.get(lua_type(raw))
    if kind is not None:
        return kind
    if callable(raw):
        return ValueKind.NATIVE_FUNCTION
    return ValueKind.LIGHT_USERDATA


def coerce_handle(value: Any, context: Optional["RuntimeContext"]) -> Tuple["ValueHandle", bool]:
    """Return `value` as a handle, plus whether the caller owns (and must release) it."""
    from lualink.lualink_proxy import TableIndexProxy
    if isinstance(value, ValueHandle):
        return value, False
    if isinstance(value, TableIndexProxy):
        return value.read(), True
    return ValueHandle(value, context=context), True


# ===================================================================
# The value handle
# ===================================================================

class ValueHandle:
    """A referenceable handle to one Lua value.

    Accessors are total: asking for the wrong kind returns a neutral
    default (False, 0, "", None) rather than failing. Mutators release the
    previous payload before installing the new one.
    """
    __slots__ = ("_context", "_kind", "_value", "__weakref__")

    def __init__(self, value: Any = None, *, context: Optional["RuntimeContext"] = None):
        self._context = None
        self._kind = ValueKind.NIL
        self._value = None

        if isinstance(value, ValueHandle):
            if context is not None and value._context is not None and value._context is not context:
                raise CrossContextError()
            self._copy_from(value)
            if self._context is None:
                self._context = context
            return

        self._context = context
        if value is None:
            return
        if isinstance(value, bool):
            self._kind, self._value = ValueKind.BOOLEAN, value
        elif isinstance(value, int):
            self._kind, self._value = ValueKind.INTEGER, _check_int64(value)
        elif isinstance(value, float):
            self._kind, self._value = classify_number(value)
        elif isinstance(value, (str, bytes, bytearray)):
            if context is None:
                self._kind, self._value = ValueKind.STATELESS_STRING, STRING_POOL.intern(value)
            else:
                self._install_string(value)
        elif lua_type(value) is not None:
            if context is None:
                raise InvalidHandle("a runtime value needs a runtime context to be anchored")
            if not context.owns(value):
                self._context = None
                raise CrossContextError("runtime value belongs to another runtime context")
            with context.balanced():
                context.push(value)
                self._load_from(context, -1)
        elif callable(value):
            self._kind, self._value = ValueKind.NATIVE_FUNCTION, value
        else:
            self._kind, self._value = ValueKind.LIGHT_USERDATA, value

    @classmethod
    def bound(cls, context: "RuntimeContext") -> "ValueHandle":
        """A nil handle recorded on `context`."""
        return cls(context=context)

    @classmethod
    def _load(cls, context: "RuntimeContext", idx: int = -1) -> "ValueHandle":
        """Load the stack value at `idx` into a new handle, anchoring reference kinds."""
        handle = cls(context=context)
        handle._load_from(context, idx)
        return handle

    def _load_from(self, context: "RuntimeContext", idx: int):
        raw = context.value_at(idx)
        kind = classify_raw(raw)
        match kind:
            case ValueKind.NIL:
                value = None
            case ValueKind.INTEGER | ValueKind.NUMBER:
                kind, value = classify_number(raw)
            case ValueKind.BOOLEAN | ValueKind.NATIVE_FUNCTION | ValueKind.LIGHT_USERDATA:
                value = raw
            case _:
                value = context.anchor(idx)
        self._context = context
        self._kind = kind
        self._value = value

    def __del__(self):
        context = getattr(self, "_context", None)
        if context is not None and context.closed:
            return
        if getattr(self, "_kind", None) is not None:
            self.release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __repr__(self):
        from lualink.lualink_printer import Printer
        if self._context is not None and self._context.closed:
            return f"<ValueHandle {self._kind.value} (context closed)>"
        return f"<ValueHandle {self._kind.value} {Printer(max_depth=1).pformat(self)}>"

    # ---------------------------------------------------------------
    # Lifetime
    # ---------------------------------------------------------------

    @property
    def context(self) -> Optional["RuntimeContext"]:
        return self._context

    @property
    def kind(self) -> ValueKind:
        return self._kind

    @property
    def ref(self) -> Optional[int]:
        """The registry id of a reference-kind handle, else None."""
        return self._value if self._kind in REFERENCE_KINDS else None

    def is_ref_type(self) -> bool:
        return self._kind in REFERENCE_KINDS

    def release(self) -> None:
        """Drop the payload's anchor or pooled buffer. The handle becomes nil."""
        kind, value = self._kind, self._value
        self._kind, self._value = ValueKind.NIL, None
        if kind in REFERENCE_KINDS:
            self._context.release(value)
        elif kind is ValueKind.STATELESS_STRING:
            STRING_POOL.release(value)

    def _copy_from(self, other: "ValueHandle"):
        context, kind, value = other._context, other._kind, other._value
        if kind in REFERENCE_KINDS:
            value = context.duplicate(value)
        elif kind is ValueKind.STATELESS_STRING:
            STRING_POOL.retain(value)
        self._context, self._kind, self._value = context, kind, value

    def copy(self) -> "ValueHandle":
        """An independent handle to the same value.

        Reference kinds get a fresh anchor, pooled strings share their
        buffer, immediate kinds are copied outright.
        """
        clone = ValueHandle()
        clone._copy_from(self)
        return clone

    __copy__ = copy

    def assign(self, other: Any) -> "ValueHandle":
        """Replace this handle's identity, context included, with a copy of `other`."""
        if other is self:
            return self
        if not isinstance(other, ValueHandle):
            other = ValueHandle(other, context=self._context)
            self.release()
            self._context, self._kind, self._value = other._context, other._kind, other._value
            other._kind, other._value = ValueKind.NIL, None
            return self
        self.release()
        self._copy_from(other)
        return self

    def move(self) -> "ValueHandle":
        """Transfer the payload to a new handle; this handle is left nil."""
        moved = ValueHandle()
        moved._context, moved._kind, moved._value = self._context, self._kind, self._value
        self._kind, self._value = ValueKind.NIL, None
        return moved

    def attach(self, context: "RuntimeContext") -> "ValueHandle":
        """Record `context` on a context-free handle."""
        if self._context is None:
            self._context = context
        elif self._context is not context:
            raise CrossContextError()
        return self

    # ---------------------------------------------------------------
    # Checks
    # ---------------------------------------------------------------

    def _check_state(self) -> "RuntimeContext":
        if self._context is None:
            raise InvalidHandle("cannot operate on a handle that is not attached to a runtime context")
        self._context._check_open()
        return self._context

    def _check_consistency(self, context: "RuntimeContext"):
        if self._context is not None and self._context is not context:
            raise CrossContextError()

    def _check_is_table(self) -> "RuntimeContext":
        if self._kind is not ValueKind.TABLE:
            raise LuaTypeError("not a table")
        return self._check_state()

    def _push(self, context: "RuntimeContext"):
        match self._kind:
            case ValueKind.NIL:
                context.push(None)
            case ValueKind.STATELESS_STRING:
                entry = self._value
                context.push(entry.data if entry.text is None else context.encode(entry.text))
            case ValueKind.STRING | ValueKind.FUNCTION | ValueKind.USERDATA | ValueKind.THREAD | ValueKind.TABLE:
                self._check_state()
                context.push_ref(self._value)
            case _:
                context.push(self._value)

    # ---------------------------------------------------------------
    # Kind predicates
    # ---------------------------------------------------------------

    def is_nil(self) -> bool:
        return self._kind is ValueKind.NIL

    def is_boolean(self) -> bool:
        return self._kind is ValueKind.BOOLEAN

    def is_number(self) -> bool:
        return self._kind in (ValueKind.NUMBER, ValueKind.INTEGER)

    def is_integer(self) -> bool:
        return self._kind is ValueKind.INTEGER

    def is_string(self) -> bool:
        return self._kind in (ValueKind.STRING, ValueKind.STATELESS_STRING)

    def is_stateless_string(self) -> bool:
        return self._kind is ValueKind.STATELESS_STRING

    def is_function(self) -> bool:
        return self._kind in (ValueKind.FUNCTION, ValueKind.NATIVE_FUNCTION)

    def is_native_function(self) -> bool:
        return self._kind is ValueKind.NATIVE_FUNCTION

    def is_userdata(self) -> bool:
        return self._kind in (ValueKind.USERDATA, ValueKind.LIGHT_USERDATA)

    def is_light_userdata(self) -> bool:
        return self._kind is ValueKind.LIGHT_USERDATA

    def is_thread(self) -> bool:
        return self._kind is ValueKind.THREAD

    def is_table(self) -> bool:
        return self._kind is ValueKind.TABLE

    # ---------------------------------------------------------------
    # Mutators
    # ---------------------------------------------------------------

    def set_as_nil(self) -> None:
        self.release()

    def set_as_boolean(self, b: bool) -> None:
        b = bool(b)
        self.release()
        self._kind, self._value = ValueKind.BOOLEAN, b

    def set_as_number(self, n: float) -> None:
        kind, value = classify_number(float(n))
        self.release()
        self._kind, self._value = kind, value

    def set_as_integer(self, i: int) -> None:
        i = _check_int64(int(i))
        self.release()
        self._kind, self._value = ValueKind.INTEGER, i

    def set_as_string(self, s: str | bytes) -> None:
        if not isinstance(s, (str, bytes, bytearray)):
            raise TypeError(f"expected str or bytes, not {type(s).__name__}")
        if self._context is None:
            self.release()
            self._kind, self._value = ValueKind.STATELESS_STRING, STRING_POOL.intern(s)
            return
        self._check_state()
        self.release()
        self._install_string(s)

    def _install_string(self, s: str | bytes):
        context = self._context
        with context.balanced():
            context.push(context.encode(s))
            self._value = context.anchor(-1)
            self._kind = ValueKind.STRING

    def set_as_native_function(self, fn: Callable) -> None:
        if not callable(fn) or lua_type(fn) is not None:
            raise TypeError("expected a host callable")
        self.release()
        self._kind, self._value = ValueKind.NATIVE_FUNCTION, fn

    def set_as_light_userdata(self, obj: Any) -> None:
        self.release()
        self._kind, self._value = ValueKind.LIGHT_USERDATA, obj

    # ---------------------------------------------------------------
    # Accessors
    # ---------------------------------------------------------------

    def to_boolean(self) -> bool:
        if self._kind is ValueKind.BOOLEAN:
            return self._value
        return False

    def to_number(self) -> float:
        match self._kind:
            case ValueKind.NUMBER:
                return self._value
            case ValueKind.INTEGER:
                return float(self._value)
        return 0.0

    def to_integer(self) -> int:
        match self._kind:
            case ValueKind.INTEGER:
                return self._value
            case ValueKind.NUMBER:
                return number_to_integer(self._value)
        return 0

    def to_bytes(self) -> bytes:
        match self._kind:
            case ValueKind.STRING:
                return self._check_state().encode(self._context.registry.get(self._value))
            case ValueKind.STATELESS_STRING:
                return self._value.data
        return b""

    def to_string(self) -> str:
        match self._kind:
            case ValueKind.STRING:
                return self._check_state().decode(self._context.registry.get(self._value))
            case ValueKind.STATELESS_STRING:
                return STRING_POOL.decode(self._value)
        return ""

    def to_native_function(self) -> Optional[Callable]:
        if self._kind is ValueKind.NATIVE_FUNCTION:
            return self._value
        return None

    def to_userdata(self) -> Any:
        match self._kind:
            case ValueKind.USERDATA:
                return self._check_state().registry.get(self._value)
            case ValueKind.LIGHT_USERDATA:
                return self._value
        return None

    def length(self) -> int:
        """Length of a table (the `#` operator) or of a string in bytes; 0 otherwise."""
        match self._kind:
            case ValueKind.TABLE:
                return len(self._check_state().registry.get(self._value))
            case ValueKind.STRING | ValueKind.STATELESS_STRING:
                return len(self.to_bytes())
        return 0

    # ---------------------------------------------------------------
    # Tables
    # ---------------------------------------------------------------

    def table_get(self, key: Any) -> "ValueHandle":
        context = self._check_is_table()
        key, owned = coerce_handle(key, context)
        try:
            key._check_consistency(context)
            with context.balanced():
                self._push(context)
                key._push(context)
                context.gettable(-2)
                return ValueHandle._load(context, -1)
        finally:
            if owned:
                key.release()

    def table_set(self, key: Any, value: Any) -> None:
        context = self._check_is_table()
        key, owned_key = coerce_handle(key, context)
        value, owned_value = coerce_handle(value, context)
        try:
            key._check_consistency(context)
            value._check_consistency(context)
            with context.balanced():
                self._push(context)
                key._push(context)
                value._push(context)
                context.settable(-3)
        finally:
            if owned_key:
                key.release()
            if owned_value:
                value.release()

    def items(self) -> Iterator[Tuple["ValueHandle", "ValueHandle"]]:
        """Iterate the (key, value) pairs of a table in the runtime's `next` order."""
        context = self._check_is_table()
        key = ValueHandle.bound(context)
        while True:
            with context.balanced():
                self._push(context)
                key._push(context)
                if not context.next(-2):
                    return
                next_key = ValueHandle._load(context, -2)
                value = ValueHandle._load(context, -1)
            key.release()
            key = next_key
            yield next_key.copy(), value

    def index(self, key: Any) -> "TableIndexProxy":
        """A deferred handle to the slot `key` of this table."""
        from lualink.lualink_proxy import TableIndexProxy
        return TableIndexProxy(self, key)

    def __getitem__(self, key: Any) -> "ValueHandle":
        with self.index(key) as slot:
            return slot.read()

    def __setitem__(self, key: Any, value: Any) -> None:
        with self.index(key) as slot:
            slot.write(value)

    # Slot reads never raise IndexError; iterate with items().
    __iter__ = None

    # ---------------------------------------------------------------
    # Calls
    # ---------------------------------------------------------------

    def __call__(self, *args: Any):
        from lualink.lualink_call import CallInvoker
        return CallInvoker(self).args(*args).invoke()

    def to_callable(self) -> Callable:
        """A plain host callable that invokes this function through the call protocol."""
        from lualink.lualink_call import CallInvoker
        CallInvoker(self)
        callee = self.copy()

        def call(*args):
            return CallInvoker(callee).args(*args).invoke()
        call.handle = callee
        return call
