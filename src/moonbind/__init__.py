"""
moonbind - embed a Lua VM in Python.

Create a VM, exchange values with it through reference handles and run
code under the load/execute protocol. Every operation keeps the VM's operand
stack balanced, and errors are reported to a per-VM error handler.
"""

from .convert import push_value, to_python
from .allocator import DefaultAllocator, LimitedAllocator, allocator_function
from .stack import ScopedSavedStack
from .error_handler import ErrorHandler, stderror_out
from .ref import (
    LuaRef,
    LuaTable,
    LuaFunction,
    LuaThread,
    FunctionResults,
    TableKeyReference,
)
from .gc import GCType
from .state import State, standard_libs, no_load_lib, default_panic
from .lua import (
    LuaState,
    LuaError,
    LuaSyntaxError,
    LuaMemoryError,
    LuaPanic,
    TimeLimitError,
    LUA_OK,
    LUA_YIELD,
    LUA_ERRRUN,
    LUA_ERRSYNTAX,
    LUA_ERRMEM,
    LUA_ERRGCMM,
    LUA_ERRERR,
    LUA_ERRFILE,
)

__version__ = "0.1.0"
__all__ = [
    "State",
    "standard_libs",
    "no_load_lib",
    "default_panic",
    "DefaultAllocator",
    "LimitedAllocator",
    "allocator_function",
    "ScopedSavedStack",
    "ErrorHandler",
    "stderror_out",
    "LuaRef",
    "LuaTable",
    "LuaFunction",
    "LuaThread",
    "FunctionResults",
    "TableKeyReference",
    "GCType",
    "push_value",
    "to_python",
    "LuaState",
    "LuaError",
    "LuaSyntaxError",
    "LuaMemoryError",
    "LuaPanic",
    "TimeLimitError",
]
