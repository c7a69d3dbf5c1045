"""Conversions between Python values and VM values.

Python -> VM: ``None`` is nil, ``bool``/``int``/``float``/``str`` map to the
matching Lua types (an ``int`` outside the 64-bit range becomes a float),
reference handles push the value they hold, ``dict`` becomes a new table,
``list``/``tuple`` a new sequence, callables become host functions and
anything else is wrapped in a userdata.

VM -> Python: scalars come back as Python values, tables, functions and
threads as reference handles, userdata as the object it wraps.
"""

import logging
import math
from typing import Any, Callable

from . import ref
from .lua import (
    LuaState, LuaError,
    LUA_TNIL, LUA_TBOOLEAN, LUA_TNUMBER, LUA_TSTRING, LUA_TTABLE,
    LUA_TFUNCTION, LUA_TUSERDATA, LUA_TTHREAD,
)
from .lua.errors import LuaYield
from .lua.values import MAXINTEGER, MININTEGER

logger = logging.getLogger(__name__)


def push_value(L: LuaState, value: Any) -> None:
    """Push a Python value onto ``L``'s stack."""
    if value is None:
        L.pushnil()
    elif isinstance(value, bool):
        L.pushboolean(value)
    elif isinstance(value, int):
        if MININTEGER <= value <= MAXINTEGER:
            L.pushinteger(value)
        else:
            # Read the way Lua reads an integer numeral too wide for 64 bits
            L.pushnumber(_int_to_float(value))
    elif isinstance(value, float):
        L.pushnumber(value)
    elif isinstance(value, str):
        L.pushstring(value)
    elif isinstance(value, (bytes, bytearray)):
        L.pushstring(value.decode("latin-1"))
    elif isinstance(value, (ref.LuaRef, ref.TableKeyReference)):
        value.push(L)
    elif isinstance(value, LuaState):
        L.push(value)
    elif isinstance(value, dict):
        L.createtable(0, len(value))
        for key, item in value.items():
            push_value(L, key)
            push_value(L, item)
            L.rawset(-3)
    elif isinstance(value, (list, tuple)):
        L.createtable(len(value), 0)
        for i, item in enumerate(value, 1):
            push_value(L, item)
            L.rawseti(-2, i)
    elif callable(value):
        push_function(L, value)
    else:
        L.newuserdata(0, value)


def _int_to_float(value: int) -> float:
    try:
        return float(value)
    except OverflowError:
        return math.inf if value > 0 else -math.inf


def to_python(L: LuaState, idx: int = -1) -> Any:
    """Convert the value at ``idx`` without popping it."""
    tp = L.type(idx)
    if tp <= LUA_TNIL:
        return None
    if tp == LUA_TBOOLEAN:
        return L.toboolean(idx)
    if tp == LUA_TNUMBER or tp == LUA_TSTRING:
        return L.index2value(idx)
    if tp == LUA_TUSERDATA:
        return L.touserdata(idx)
    L.pushvalue(idx)
    if tp == LUA_TTABLE:
        return ref.LuaTable.from_stack_top(L)
    if tp == LUA_TFUNCTION:
        return ref.LuaFunction.from_stack_top(L)
    if tp == LUA_TTHREAD:
        return ref.LuaThread.from_stack_top(L)
    return ref.LuaRef.from_stack_top(L)


def push_function(L: LuaState, fn: Callable[..., Any]) -> None:
    """Push ``fn`` as a host function.

    Arguments are converted with ``to_python``; a tuple result is returned
    as multiple values. A Python exception becomes a Lua error carrying
    its message.
    """

    def trampoline(L: LuaState) -> int:
        args = [to_python(L, i) for i in range(1, L.gettop() + 1)]
        try:
            result = fn(*args)
        except (LuaError, LuaYield):
            raise
        except Exception as e:
            logger.debug("Host function %r raised %s", fn, type(e).__name__)
            raise LuaError(f"{type(e).__name__}: {e}") from e
        if result is None:
            return 0
        if isinstance(result, tuple):
            for item in result:
                push_value(L, item)
            return len(result)
        push_value(L, result)
        return 1

    L.pushpyfunction(trampoline, 0, getattr(fn, "__name__", "?"))
