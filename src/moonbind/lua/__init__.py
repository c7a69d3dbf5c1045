"""
A small Lua 5.3 engine reached through a C-API-shaped stack interface.

Only the stack API is meant to be used from outside this package; the
lexer, parser, compiler and interpreter behind it may change freely.
"""

from .api import (
    LuaState,
    new_state,
    upvalueindex,
    chunkid,
    LUA_REGISTRYINDEX,
    LUA_RIDX_MAINTHREAD,
    LUA_RIDX_GLOBALS,
    LUA_MULTRET,
    LUA_OPEQ,
    LUA_OPLT,
    LUA_OPLE,
)
from .errors import (
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
from .heap import (
    LUA_GCSTOP,
    LUA_GCRESTART,
    LUA_GCCOLLECT,
    LUA_GCCOUNT,
    LUA_GCCOUNTB,
    LUA_GCSTEP,
    LUA_GCSETPAUSE,
    LUA_GCSETSTEPMUL,
    LUA_GCISRUNNING,
)
from .values import (
    LUA_TNONE,
    LUA_TNIL,
    LUA_TBOOLEAN,
    LUA_TLIGHTUSERDATA,
    LUA_TNUMBER,
    LUA_TSTRING,
    LUA_TTABLE,
    LUA_TFUNCTION,
    LUA_TUSERDATA,
    LUA_TTHREAD,
)

__version__ = "0.1.0"
__all__ = [
    "LuaState",
    "new_state",
    "upvalueindex",
    "chunkid",
    "LuaError",
    "LuaSyntaxError",
    "LuaMemoryError",
    "LuaPanic",
    "TimeLimitError",
]
