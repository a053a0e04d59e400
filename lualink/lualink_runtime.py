"""
The runtime context: one embedded Lua interpreter and its stack discipline.

`lupa` owns the interpreter itself. The context keeps an explicit
evaluation stack of raw runtime values next to it, and every other part of
lualink talks to the interpreter only through the stack primitives below
(push/pop, anchor/release, gettable/settable, pcall). Values are handed to
and from `lupa` in its Python representation.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from lupa import LuaError, LuaRuntime

from lualink.lualink_config import BindingConfig, ReturnPolicy, get_config
from lualink.lualink_errors import ContextClosedError, ScriptError
from lualink.lualink_registry import ReferenceRegistry

if TYPE_CHECKING:
    from lualink.lualink_datatypes import ValueHandle

log = logging.getLogger(__name__)

# Status codes returned by pcall, as the C API reports them.
OK = 0
ERRRUN = 2

# ===================================================================
# Helper chunks, compiled once per context
# ===================================================================

# Each chunk captures the globals it needs as upvalues so it keeps working
# while the standard library is withheld from the global table.
_CALL_CHUNK = """
local select = select
local function collect(...)
  return {[0] = select('#', ...), ...}
end
return function(f, ...)
  return collect(f(...))
end
"""

_GETTABLE_CHUNK = """
return function(t, k)
  return t[k]
end
"""

_SETTABLE_CHUNK = """
return function(t, k, v)
  t[k] = v
end
"""

_NEXT_CHUNK = """
local next = next
return function(t, k)
  return next(t, k)
end
"""

_IDENTITY_CHUNK = """
return function(v)
  return v
end
"""

_LOAD_CHUNK = """
local load, error = load, error
return function(source, name)
  local f, err = load(source, name)
  if not f then
    error(err, 0)
  end
  return f
end
"""


def _error_message(exc: LuaError) -> str:
    if exc.args:
        msg = exc.args[0]
        if isinstance(msg, bytes):
            return msg.decode("utf-8", errors="replace")
        return str(msg)
    return str(exc)


class RuntimeContext:
    """Owns exactly one interpreter instance.

    A context cannot be copied; it is passed around by reference and torn
    down exactly once by `close()` (or by leaving a `with` block). Closing
    poisons the registry, so every handle still anchored in it becomes
    unusable.
    """

    def __init__(self, config: Optional[BindingConfig] = None):
        self.config = config or get_config()
        # Strings come back from the runtime as raw bytes; the configured
        # encoding is applied only by encode() and decode().
        self._lua: Optional[LuaRuntime] = LuaRuntime(
            encoding=None,
            source_encoding=self.config.encoding or "UTF-8",
            register_eval=False,
            register_builtins=False,
            unpack_returned_tuples=True,
        )
        self._stack: List[Any] = []
        self._registry = ReferenceRegistry()

        self._call = self._lua.execute(_CALL_CHUNK)
        self._gettable = self._lua.execute(_GETTABLE_CHUNK)
        self._settable = self._lua.execute(_SETTABLE_CHUNK)
        self._next = self._lua.execute(_NEXT_CHUNK)
        self._load = self._lua.execute(_LOAD_CHUNK)
        self._identity = self._lua.execute(_IDENTITY_CHUNK)

        # Start out like a bare interpreter: library globals are withheld
        # until open_libs() puts them back.
        self._libs: Dict[Any, Any] = {}
        globals_table = self._lua.globals()
        for name in list(globals_table.keys()):
            self._libs[name] = globals_table[name]
        for name in self._libs:
            globals_table[name] = None

        log.debug("runtime context created (return policy %s)", self.config.return_policy.value)
        if self.config.open_libs:
            self.open_libs()

    def _dbg(self, *parts):
        if self.config.debug:
            log.debug(" ".join(str(p) for p in parts))

    def __copy__(self):
        raise TypeError("RuntimeContext cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("RuntimeContext cannot be copied")

    def __reduce__(self):
        raise TypeError("RuntimeContext cannot be pickled")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __repr__(self):
        state = "closed" if self.closed else f"top={len(self._stack)} anchors={len(self._registry)}"
        return f"<RuntimeContext {state}>"

    # ---------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._lua is None

    @property
    def return_policy(self) -> ReturnPolicy:
        return self.config.return_policy

    @property
    def registry(self) -> ReferenceRegistry:
        return self._registry

    def _check_open(self):
        if self._lua is None:
            raise ContextClosedError("runtime context has been closed; its handles are no longer valid")

    def encode(self, s: str | bytes) -> bytes:
        """Bytes as the interpreter stores them. Strings always cross into the runtime as bytes."""
        if isinstance(s, str):
            return s.encode(self.config.encoding or "utf-8")
        return bytes(s)

    def decode(self, raw: str | bytes) -> str:
        if isinstance(raw, str):
            return raw
        return bytes(raw).decode(self.config.encoding or "utf-8", errors="replace")

    def close(self) -> None:
        """Tear down the interpreter. Safe to call more than once."""
        if self._lua is None:
            return
        live = self._registry.poison()
        if live:
            log.warning("closing runtime context with %d live anchors", live)
        self._stack.clear()
        self._libs.clear()
        self._call = self._gettable = self._settable = self._next = self._load = self._identity = None
        self._lua = None
        log.debug("runtime context closed")

    # ---------------------------------------------------------------
    # Stack primitives
    # ---------------------------------------------------------------

    def _abs_index(self, idx: int) -> int:
        top = len(self._stack)
        pos = idx if idx > 0 else top + idx + 1
        if idx == 0 or pos < 1 or pos > top:
            raise IndexError(f"stack index {idx} out of range (top is {top})")
        return pos

    def gettop(self) -> int:
        self._check_open()
        return len(self._stack)

    def settop(self, top: int) -> None:
        self._check_open()
        if top < 0:
            top = len(self._stack) + top + 1
        if top > len(self._stack):
            self._stack.extend([None] * (top - len(self._stack)))
        else:
            del self._stack[top:]

    def push(self, raw: Any) -> None:
        self._check_open()
        self._stack.append(raw)

    def pop(self, n: int = 1) -> None:
        self._check_open()
        if n > len(self._stack):
            raise IndexError(f"cannot pop {n} values from a stack of {len(self._stack)}")
        if n:
            del self._stack[-n:]

    def value_at(self, idx: int = -1) -> Any:
        self._check_open()
        return self._stack[self._abs_index(idx) - 1]

    @contextmanager
    def balanced(self):
        """Restore the stack to its current depth however the block exits."""
        top = self.gettop()
        try:
            yield top
        finally:
            if not self.closed:
                self.settop(top)

    # ---------------------------------------------------------------
    # Registry
    # ---------------------------------------------------------------

    def anchor(self, idx: int = -1) -> int:
        """Anchor the value at `idx` under a fresh registry id. The stack is unchanged."""
        self._check_open()
        ref = self._registry.anchor(self.value_at(idx))
        self._dbg("anchor", ref)
        return ref

    def push_ref(self, ref: int) -> None:
        self._check_open()
        self._stack.append(self._registry.get(ref))

    def duplicate(self, ref: int) -> int:
        self._check_open()
        new_ref = self._registry.duplicate(ref)
        self._dbg("duplicate", ref, "->", new_ref)
        return new_ref

    def release(self, ref: int) -> None:
        self._check_open()
        self._registry.release(ref)
        self._dbg("release", ref)

    def owns(self, raw: Any) -> bool:
        """Whether the runtime object `raw` was created by this context's interpreter."""
        self._check_open()
        try:
            self._identity(raw)
        except LuaError:
            return False
        return True

    # ---------------------------------------------------------------
    # Tables and calls
    # ---------------------------------------------------------------

    def _protected(self, fn, *args):
        try:
            return fn(*args)
        except LuaError as e:
            raise ScriptError(_error_message(e)) from None

    def createtable(self, narr: int = 0, nrec: int = 0) -> None:
        """Push a new empty table. The size hints are advisory."""
        self._check_open()
        self._stack.append(self._lua.table())

    def gettable(self, idx: int) -> None:
        """Replace the key on top of the stack with table[key], table being at `idx`."""
        self._check_open()
        table = self.value_at(idx)
        key = self.value_at(-1)
        value = self._protected(self._gettable, table, key)
        self._stack[-1] = value

    def settable(self, idx: int) -> None:
        """Do table[key] = value with key at -2 and value at -1, popping both."""
        self._check_open()
        table = self.value_at(idx)
        key = self.value_at(-2)
        value = self.value_at(-1)
        self._protected(self._settable, table, key, value)
        self.pop(2)

    def next(self, idx: int) -> bool:
        """Pop a key and push the next key/value pair of the table at `idx`.

        Returns False, pushing nothing, once the traversal is complete.
        """
        self._check_open()
        table = self.value_at(idx)
        key = self.value_at(-1)
        self.pop(1)
        result = self._protected(self._next, table, key)
        if not isinstance(result, tuple):
            return False
        next_key, value = result
        self._stack.append(next_key)
        self._stack.append(value)
        return True

    def pcall(self, nargs: int) -> int:
        """Call the function below the top `nargs` values in protected mode.

        The function and its arguments are popped. On success every result
        is pushed; on a runtime error the message is pushed and ERRRUN is
        returned.
        """
        self._check_open()
        base = len(self._stack) - nargs - 1
        if base < 0:
            raise IndexError("pcall without a function on the stack")
        fn = self._stack[base]
        args = self._stack[base + 1:]
        del self._stack[base:]
        self._dbg("pcall", "nargs", nargs)
        try:
            packed = self._call(fn, *args)
        except LuaError as e:
            self._stack.append(_error_message(e))
            return ERRRUN
        count = packed[0]
        for i in range(1, count + 1):
            self._stack.append(packed[i])
        return OK

    def getglobal(self, name: str) -> None:
        self._check_open()
        self._stack.append(self._protected(self._gettable, self._lua.globals(), self.encode(name)))

    def setglobal(self, name: str) -> None:
        """Pop the top value into the global `name`."""
        self._check_open()
        value = self.value_at(-1)
        self._protected(self._settable, self._lua.globals(), self.encode(name), value)
        self.pop(1)

    # ---------------------------------------------------------------
    # Surrounding conveniences
    # ---------------------------------------------------------------

    def open_libs(self) -> None:
        """Install the standard library into the global table."""
        self._check_open()
        globals_table = self._lua.globals()
        for name, lib in self._libs.items():
            globals_table[name] = lib
        log.debug("opened %d standard library globals", len(self._libs))

    def do_string(self, source: str) -> None:
        """Compile and run `source`. Results are discarded."""
        self._check_open()
        try:
            self._lua.execute(source)
        except LuaError as e:
            message = _error_message(e)
            log.debug("do_string failed: %s", message)
            raise ScriptError(message) from None

    def load_string(self, source: str, name: str = "=chunk") -> "ValueHandle":
        """Compile `source` without running it and return the chunk as a function handle."""
        from lualink.lualink_datatypes import ValueHandle
        self._check_open()
        with self.balanced():
            self.push(self._protected(self._load, self.encode(source), self.encode(name)))
            return ValueHandle._load(self, -1)

    def create_string(self, s: str | bytes) -> "ValueHandle":
        from lualink.lualink_datatypes import ValueHandle
        handle = ValueHandle.bound(self)
        handle.set_as_string(s)
        return handle

    def create_table(self, narr: int = 0, nrec: int = 0) -> "ValueHandle":
        """Create a table and return an anchored handle to it."""
        from lualink.lualink_datatypes import ValueHandle
        with self.balanced():
            self.createtable(narr, nrec)
            return ValueHandle._load(self, -1)

    def get_global(self, name: str) -> "ValueHandle":
        from lualink.lualink_datatypes import ValueHandle
        with self.balanced():
            self.getglobal(name)
            return ValueHandle._load(self, -1)

    def set_global(self, value: Any, name: str) -> None:
        from lualink.lualink_datatypes import coerce_handle
        handle, owned = coerce_handle(value, self)
        try:
            with self.balanced():
                handle._push(self)
                self.setglobal(name)
        finally:
            if owned:
                handle.release()
