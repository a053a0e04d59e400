"""
Exception types raised by the lualink value-handle layer.

Every error is surfaced synchronously to the caller; nothing in this
package retries or recovers on its own.
"""


class LuaLinkError(Exception):
    """Base class for all lualink errors."""
    pass


class InvalidHandle(LuaLinkError):
    """An operation was attempted on a default or unattached handle or proxy."""
    pass


class NotBoundToTable(InvalidHandle):
    """A table slot proxy was used before being bound to a table."""
    pass


class ContextClosedError(InvalidHandle):
    """A handle outlived the runtime context that anchors it."""
    pass


class LuaTypeError(LuaLinkError, TypeError):
    """The active kind of a handle does not support the operation."""
    pass


class CrossContextError(LuaTypeError):
    """Two handles from different runtime contexts were combined."""
    def __init__(self, message: str = "cross-context value"):
        super().__init__(message)


class ScriptError(LuaLinkError):
    """The embedded runtime raised an error during a protected call."""
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TooManyReturns(LuaLinkError):
    """A call produced more than one result under the single return policy."""
    def __init__(self, count: int):
        super().__init__(f"a function may not return more than 1 value (got {count})")
        self.count = count


class ConfigurationError(LuaLinkError, ValueError):
    """A configuration file or environment override holds an unusable value."""
    pass
