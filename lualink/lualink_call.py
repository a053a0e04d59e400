"""
The call protocol: marshal a function handle and its arguments into a
protected call, then aggregate the results per the return policy of the
callee's runtime context.
"""
from __future__ import annotations

import logging
from typing import Any, List

from lualink.lualink_config import ReturnPolicy
from lualink.lualink_datatypes import ValueHandle, ValueKind, coerce_handle
from lualink.lualink_errors import (
    InvalidHandle, LuaTypeError, ScriptError, TooManyReturns,
)
from lualink.lualink_runtime import OK

log = logging.getLogger(__name__)

CALLABLE_KINDS = (ValueKind.FUNCTION, ValueKind.NATIVE_FUNCTION)


class CallInvoker:
    """Builds and performs one call.

        result = CallInvoker(fn).arg(1).arg("x").invoke()

    Arguments are pushed left to right. Non-handle arguments are wrapped in
    temporary handles that are released once the call returns.
    """

    def __init__(self, callee: ValueHandle):
        if not isinstance(callee, ValueHandle) or callee.kind not in CALLABLE_KINDS:
            raise LuaTypeError("not callable")
        if callee.context is None:
            raise InvalidHandle("cannot call a function handle that is not attached to a runtime context")
        self.callee = callee
        self.context = callee.context
        self._args: List[Any] = []

    def arg(self, value: Any) -> "CallInvoker":
        self._args.append(value)
        return self

    def args(self, *values: Any) -> "CallInvoker":
        self._args.extend(values)
        return self

    def invoke(self):
        context = self.context
        context._check_open()
        self.callee._check_state()

        handles = []
        owned = []
        try:
            # Every argument is checked before anything is pushed.
            for value in self._args:
                handle, is_owned = coerce_handle(value, context)
                handles.append(handle)
                if is_owned:
                    owned.append(handle)
                handle._check_consistency(context)
            return self._do_call(handles)
        finally:
            for handle in owned:
                handle.release()

    def _do_call(self, handles: List[ValueHandle]):
        context = self.context
        base = context.gettop()
        try:
            self.callee._push(context)
            for handle in handles:
                handle._push(context)
            nargs = len(handles)
            prev_top = context.gettop()

            if context.pcall(nargs) != OK:
                message = context.decode(context.value_at(-1))
                context.pop(1)
                log.debug("call failed: %s", message)
                raise ScriptError(message)

            retc = context.gettop() - prev_top + nargs + 1
            return self._collect(base, retc)
        finally:
            if not context.closed:
                context.settop(base)

    def _collect(self, base: int, retc: int):
        context = self.context
        policy = context.return_policy

        if policy is ReturnPolicy.SINGLE and retc > 1:
            raise TooManyReturns(retc)

        results = [ValueHandle._load(context, base + 1 + i) for i in range(retc)]
        context.settop(base)

        if policy is ReturnPolicy.VECTOR:
            return results
        if retc == 0:
            return ValueHandle.bound(context)
        if retc == 1:
            return results[0]

        try:
            table = context.create_table(retc, 0)
            for i, result in enumerate(results):
                table.table_set(i, result)
            return table
        finally:
            for result in results:
                result.release()
