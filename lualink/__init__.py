"""
Host-side value handles for an embedded Lua runtime.
"""
from lualink.lualink_errors import (
    LuaLinkError, InvalidHandle, NotBoundToTable, ContextClosedError,
    LuaTypeError, CrossContextError, ScriptError, TooManyReturns,
    ConfigurationError,
)
from lualink.lualink_config import BindingConfig, ReturnPolicy, configure, get_config, load_config
from lualink.lualink_strings import STRING_POOL, StringPool
from lualink.lualink_registry import ReferenceRegistry
from lualink.lualink_runtime import RuntimeContext
from lualink.lualink_datatypes import ValueHandle, ValueKind
from lualink.lualink_proxy import TableIndexProxy
from lualink.lualink_call import CallInvoker
from lualink.lualink_printer import Printer

__all__ = [
    "LuaLinkError", "InvalidHandle", "NotBoundToTable", "ContextClosedError",
    "LuaTypeError", "CrossContextError", "ScriptError", "TooManyReturns",
    "ConfigurationError",
    "BindingConfig", "ReturnPolicy", "configure", "get_config", "load_config",
    "STRING_POOL", "StringPool", "ReferenceRegistry", "RuntimeContext",
    "ValueHandle", "ValueKind", "TableIndexProxy", "CallInvoker", "Printer",
]
