"""Auxiliary helpers built on the stack API (the lauxlib layer)."""

import sys
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple

from .api import (
    LuaState, LUA_REGISTRYINDEX, LUA_MULTRET, new_state as _new_state,
)
from .errors import LUA_OK, LUA_ERRFILE
from .values import (
    LUA_TNONE, LUA_TNIL, LUA_TNUMBER, LUA_TSTRING, LUA_TTABLE,
    LUA_TUSERDATA, LUA_TBOOLEAN, TYPE_NAMES, number_to_string, tostring_basic,
)
from .vm import CallFrame, current_line

LUA_NOREF = -2
LUA_REFNIL = -1
# Slot of the free list in reference tables
FREELIST = 0

LUA_LOADED_TABLE = "_LOADED"

PyCFunction = Callable[[LuaState], int]
FunctionList = Iterable[Tuple[str, PyCFunction]]


def panic(L: LuaState) -> int:
    """Default panic function: report the error on stderr."""
    if L.type(-1) == LUA_TSTRING or L.type(-1) == LUA_TNUMBER:
        message = L.tostring(-1)
    else:
        message = "error object is not a string"
    print(f"PANIC: unprotected error in call to Lua API ({message})", file=sys.stderr)
    return 0


def new_state() -> Optional[LuaState]:
    """Create a state with the default allocator and panic function."""
    L = _new_state()
    if L is not None:
        L.atpanic(panic)
    return L


# ---- Errors ----

def where(L: LuaState, level: int) -> str:
    """Position prefix ("chunk:line: ") of the function at ``level``."""
    info = L.callinfo(level)
    if isinstance(info, CallFrame):
        return f"{info.closure.proto.source}:{current_line(info)}: "
    return ""


def error(L: LuaState, message: str) -> int:
    """Raise ``message`` prefixed with the caller's position."""
    L.pushstring(where(L, 1) + message)
    return L.error()


def _function_name(L: LuaState) -> str:
    if L.native_calls:
        return L.native_calls[-1].func.name
    return "?"


def argerror(L: LuaState, arg: int, extramsg: str) -> int:
    name = _function_name(L)
    return error(L, f"bad argument #{arg} to '{name}' ({extramsg})")


def typeerror(L: LuaState, arg: int, tname: str) -> int:
    if getmetafield(L, arg, "__name") == LUA_TSTRING:
        typearg = L.tostring(-1)
    elif L.type(arg) == LUA_TNONE:
        typearg = "no value"
    else:
        typearg = TYPE_NAMES[L.type(arg)]
    return argerror(L, arg, f"{tname} expected, got {typearg}")


def argcheck(L: LuaState, cond: Any, arg: int, extramsg: str) -> None:
    if not cond:
        argerror(L, arg, extramsg)


# ---- Argument checks ----

def checkany(L: LuaState, arg: int) -> None:
    if L.type(arg) == LUA_TNONE:
        argerror(L, arg, "value expected")


def checktype(L: LuaState, arg: int, t: int) -> None:
    if L.type(arg) != t:
        typeerror(L, arg, TYPE_NAMES[t])


def checknumber(L: LuaState, arg: int) -> Any:
    value = L.tonumber(arg)
    if value is None:
        typeerror(L, arg, "number")
    return value


def checkinteger(L: LuaState, arg: int) -> int:
    value = L.tointeger(arg)
    if value is None:
        if L.isnumber(arg):
            argerror(L, arg, "number has no integer representation")
        typeerror(L, arg, "number")
    return value


def checkstring(L: LuaState, arg: int) -> str:
    value = L.tostring(arg)
    if value is None:
        typeerror(L, arg, "string")
    return value


def optnumber(L: LuaState, arg: int, default: Any) -> Any:
    if L.isnoneornil(arg):
        return default
    return checknumber(L, arg)


def optinteger(L: LuaState, arg: int, default: int) -> int:
    if L.isnoneornil(arg):
        return default
    return checkinteger(L, arg)


def optstring(L: LuaState, arg: int, default: Optional[str]) -> Optional[str]:
    if L.isnoneornil(arg):
        return default
    return checkstring(L, arg)


def checkoption(L: LuaState, arg: int, default: Optional[str], options: Sequence[str]) -> int:
    name = optstring(L, arg, default) if default is not None else checkstring(L, arg)
    if name in options:
        return options.index(name)
    return argerror(L, arg, f"invalid option '{name}'")


# ---- Metatables ----

def getmetafield(L: LuaState, obj: int, event: str) -> int:
    """Push field ``event`` of the metatable of ``obj``; return its type (nil: nothing pushed)."""
    if not L.getmetatable(obj):
        return LUA_TNIL
    L.pushstring(event)
    tt = L.rawget(-2)
    if tt == LUA_TNIL:
        L.pop(2)
    else:
        L.remove(-2)
    return tt


def callmeta(L: LuaState, obj: int, event: str) -> bool:
    """Call metamethod ``event`` of ``obj`` with it as argument, pushing the result."""
    obj = L.absindex(obj)
    if getmetafield(L, obj, event) == LUA_TNIL:
        return False
    L.pushvalue(obj)
    L.call(1, 1)
    return True


def newmetatable(L: LuaState, tname: str) -> bool:
    """Create the registry metatable ``tname``; False if it already exists."""
    if L.getfield(LUA_REGISTRYINDEX, tname) != LUA_TNIL:
        return False
    L.pop()
    L.createtable(0, 2)
    L.pushstring(tname)
    L.setfield(-2, "__name")
    L.pushvalue(-1)
    L.setfield(LUA_REGISTRYINDEX, tname)
    return True


def tolstring(L: LuaState, idx: int) -> str:
    """Convert any value to a string the way ``tostring`` does, pushing it."""
    if callmeta(L, idx, "__tostring"):
        if not L.isstring(-1):
            error(L, "'__tostring' must return a string")
        return L.tostring(-1)
    tp = L.type(idx)
    if tp == LUA_TNUMBER:
        text = number_to_string(L.index2value(idx))
    elif tp == LUA_TSTRING:
        text = L.index2value(idx)
    elif tp == LUA_TBOOLEAN:
        text = "true" if L.toboolean(idx) else "false"
    elif tp <= LUA_TNIL:
        text = "nil"
    else:
        value = L.index2value(idx)
        if getmetafield(L, idx, "__name") == LUA_TSTRING:
            kind = L.tostring(-1)
            L.pop()
            text = f"{kind}: 0x{id(value):08x}"
        else:
            text = tostring_basic(value)
    return L.pushstring(text)


def objlen(L: LuaState, idx: int) -> int:
    """Length of the value at idx as an integer (honours ``__len``)."""
    L.len(idx)
    n = L.tointeger(-1)
    if n is None:
        error(L, "object length is not an integer")
    L.pop()
    return n


# ---- References ----

def ref(L: LuaState, t: int) -> int:
    """Pop the top value into table ``t`` and return its integer key."""
    if L.isnil(-1):
        L.pop()
        return LUA_REFNIL
    t = L.absindex(t)
    L.rawgeti(t, FREELIST)
    key = L.tointeger(-1) or 0
    L.pop()
    if key != 0:
        L.rawgeti(t, key)
        L.rawseti(t, FREELIST)
    else:
        key = L.rawlen(t) + 1
    L.rawseti(t, key)
    return key


def unref(L: LuaState, t: int, key: int) -> None:
    """Release ``key`` so the referenced value can be collected."""
    if key >= 0:
        t = L.absindex(t)
        L.rawgeti(t, FREELIST)
        L.rawseti(t, key)
        L.pushinteger(key)
        L.rawseti(t, FREELIST)


# ---- Loading ----

def loadbuffer(L: LuaState, buff: str, name: Optional[str] = None, mode: Optional[str] = None) -> int:
    return L.load(buff, name if name is not None else buff, mode)


def loadstring(L: LuaState, s: str) -> int:
    return loadbuffer(L, s, s)


def loadfile(L: LuaState, filename: str, mode: Optional[str] = None) -> int:
    """Load a chunk from a file; status LUA_ERRFILE if it cannot be read."""
    try:
        with open(filename, "r", encoding="utf-8") as f:
            source = f.read()
    except OSError as e:
        L.pushstring(f"cannot open {filename}: {e.strerror}")
        return LUA_ERRFILE
    except UnicodeDecodeError:
        L.pushstring(f"cannot read {filename}: invalid UTF-8")
        return LUA_ERRFILE
    if source.startswith("#"):
        # Skip a shebang line, keeping line numbers
        newline = source.find("\n")
        source = "" if newline < 0 else source[newline:]
    return L.load(source, f"@{filename}", mode)


def dostring(L: LuaState, s: str) -> int:
    status = loadstring(L, s)
    if status != LUA_OK:
        return status
    return L.pcall(0, LUA_MULTRET, 0)


def dofile(L: LuaState, filename: str) -> int:
    status = loadfile(L, filename)
    if status != LUA_OK:
        return status
    return L.pcall(0, LUA_MULTRET, 0)


# ---- Libraries ----

def getsubtable(L: LuaState, idx: int, fname: str) -> bool:
    """Push ``t[fname]`` creating it when missing; True if it existed."""
    if L.getfield(idx, fname) == LUA_TTABLE:
        return True
    L.pop()
    idx = L.absindex(idx)
    L.newtable()
    L.pushvalue(-1)
    L.setfield(idx, fname)
    return False


def requiref(L: LuaState, modname: str, openf: PyCFunction, glb: bool) -> None:
    """Open a library once, caching it in ``_LOADED``; leaves it on the stack."""
    getsubtable(L, LUA_REGISTRYINDEX, LUA_LOADED_TABLE)
    L.getfield(-1, modname)
    if not L.toboolean(-1):
        L.pop()
        L.pushpyfunction(openf, name=modname)
        L.pushstring(modname)
        L.call(1, 1)
        L.pushvalue(-1)
        L.setfield(-3, modname)
    L.remove(-2)
    if glb:
        L.pushvalue(-1)
        L.setglobal(modname)


def setfuncs(L: LuaState, funcs: FunctionList, nup: int = 0) -> None:
    """Register functions into the table below the ``nup`` upvalues on the top."""
    for name, fn in funcs:
        for _ in range(nup):
            L.pushvalue(-nup)
        L.pushpyfunction(fn, nup, name)
        L.setfield(-(nup + 2), name)
    L.pop(nup)


def newlib(L: LuaState, funcs: Sequence[Tuple[str, PyCFunction]]) -> None:
    L.createtable(0, len(funcs))
    setfuncs(L, funcs, 0)


def checkfunction(L: LuaState, arg: int) -> None:
    if not L.isfunction(arg):
        typeerror(L, arg, "function")


def checktable(L: LuaState, arg: int) -> None:
    checktype(L, arg, LUA_TTABLE)


def checkudata(L: LuaState, arg: int, tname: str) -> Any:
    """The userdata at ``arg`` whose metatable is registry[tname]."""
    if L.type(arg) == LUA_TUSERDATA and L.getmetatable(arg):
        L.getfield(LUA_REGISTRYINDEX, tname)
        same = L.rawequal(-1, -2)
        L.pop(2)
        if same:
            return L.index2value(arg)
    return typeerror(L, arg, tname)
