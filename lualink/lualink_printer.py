"""
A pretty-printer for value handles.
"""
from lualink.lualink_datatypes import ValueHandle, ValueKind

_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\0": "\\0",
}


class Printer:
    """Formats value handles as Lua-literal text."""

    def __init__(self, indent_width=2, max_depth=8):
        self._indent_char = " " * indent_width
        self.max_depth = max_depth
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format a handle (or a plain Python value)."""
        if not isinstance(obj, ValueHandle):
            with ValueHandle(obj) as handle:
                return self.pformat(handle, level)
        handler = self._handlers.get(obj.kind, self._pformat_opaque)
        return handler(obj, level)

    def _create_handlers(self):
        return {
            ValueKind.NIL: self._pformat_nil,
            ValueKind.BOOLEAN: self._pformat_bool,
            ValueKind.INTEGER: self._pformat_integer,
            ValueKind.NUMBER: self._pformat_number,
            ValueKind.STRING: self._pformat_str,
            ValueKind.STATELESS_STRING: self._pformat_str,
            ValueKind.TABLE: self._pformat_table,
            ValueKind.NATIVE_FUNCTION: self._pformat_native,
            ValueKind.LIGHT_USERDATA: self._pformat_light_userdata,
        }

    def _pformat_nil(self, obj, level):
        return "nil"

    def _pformat_bool(self, obj, level):
        return "true" if obj.to_boolean() else "false"

    def _pformat_integer(self, obj, level):
        return str(obj.to_integer())

    def _pformat_number(self, obj, level):
        n = obj.to_number()
        if n != n:
            return "0/0"
        if n in (float("inf"), float("-inf")):
            return "math.huge" if n > 0 else "-math.huge"
        return repr(n)

    def _pformat_str(self, obj, level):
        text = obj.to_string()
        return '"' + "".join(_ESCAPES.get(c, c) for c in text) + '"'

    def _pformat_native(self, obj, level):
        fn = obj.to_native_function()
        name = getattr(fn, "__qualname__", None) or type(fn).__name__
        return f"<native-function {name}>"

    def _pformat_light_userdata(self, obj, level):
        return f"<light-userdata {type(obj.to_userdata()).__name__}>"

    def _pformat_opaque(self, obj, level):
        return f"<{obj.kind.value}>"

    def _pformat_key(self, key, level):
        if key.is_string():
            text = key.to_string()
            if text.isidentifier() and text.isascii():
                return text
        return f"[{self.pformat(key, level)}]"

    def _pformat_table(self, obj, level):
        if level >= self.max_depth:
            return "{...}"
        entries = []
        for key, value in obj.items():
            with key, value:
                entries.append(f"{self._pformat_key(key, level + 1)} = {self.pformat(value, level + 1)}")
        if not entries:
            return "{}"
        one_line = "{" + ", ".join(entries) + "}"
        if len(one_line) <= 72 and "\n" not in one_line:
            return one_line
        indent = self._indent_char * (level + 1)
        closing = self._indent_char * level
        return "{\n" + ",\n".join(indent + e for e in entries) + "\n" + closing + "}"
