"""Standard library: base functions, coroutine, table, string and math.

Every library is opened by a loader ``open_xxx(L) -> int`` that leaves the
library table on the stack, the shape ``auxlib.requiref`` expects.
"""

import functools
import math
import re
import string as _string

from . import auxlib
from .api import LuaState, LUA_MULTRET, upvalueindex
from .errors import LUA_OK, LUA_YIELD, LUA_ERRRUN
from .heap import (
    LUA_GCSTOP, LUA_GCRESTART, LUA_GCCOLLECT, LUA_GCCOUNT, LUA_GCCOUNTB,
    LUA_GCSTEP, LUA_GCSETPAUSE, LUA_GCSETSTEPMUL, LUA_GCISRUNNING,
)
from .lexer import str_to_number
from .values import (
    LUA_TNIL, LUA_TNUMBER, LUA_TSTRING, LUA_TTABLE, LUA_TFUNCTION,
    MAXINTEGER, MININTEGER, float_to_integer, wrap_integer,
)
from . import vm

LUA_VERSION = "Lua 5.3"

# Largest result accepted by unpack and string.rep
MAXRESULTS = 1000000
MAXSTRINGSIZE = 2**31 - 1


# ---- Base library ----

def base_print(L: LuaState) -> int:
    parts = []
    for i in range(1, L.gettop() + 1):
        parts.append(auxlib.tolstring(L, i))
        L.pop()
    print("\t".join(parts))
    return 0


def base_type(L: LuaState) -> int:
    auxlib.checkany(L, 1)
    L.pushstring(L.typename(L.type(1)))
    return 1


def base_tostring(L: LuaState) -> int:
    auxlib.checkany(L, 1)
    auxlib.tolstring(L, 1)
    return 1


def _str_to_int(text: str, base: int):
    s = text.strip().lower()
    negative = s.startswith("-")
    if negative:
        s = s[1:]
    if not s:
        return None
    n = 0
    for c in s:
        if c.isdigit():
            digit = ord(c) - ord("0")
        elif "a" <= c <= "z":
            digit = ord(c) - ord("a") + 10
        else:
            return None
        if digit >= base:
            return None
        n = n * base + digit
    return wrap_integer(-n if negative else n)


def base_tonumber(L: LuaState) -> int:
    if L.isnoneornil(2):
        if L.type(1) == LUA_TNUMBER:
            L.settop(1)
            return 1
        if L.type(1) == LUA_TSTRING:
            n = str_to_number(L.tostring(1))
            if n is not None:
                L.push(n)
                return 1
        auxlib.checkany(L, 1)
    else:
        base = auxlib.checkinteger(L, 2)
        auxlib.checktype(L, 1, LUA_TSTRING)
        auxlib.argcheck(L, 2 <= base <= 36, 2, "base out of range")
        n = _str_to_int(L.tostring(1), base)
        if n is not None:
            L.pushinteger(n)
            return 1
    L.pushnil()
    return 1


def ipairs_aux(L: LuaState) -> int:
    i = auxlib.checkinteger(L, 2) + 1
    L.pushinteger(i)
    return 1 if L.geti(1, i) == LUA_TNIL else 2


def base_ipairs(L: LuaState) -> int:
    auxlib.checkany(L, 1)
    L.pushvalue(upvalueindex(1))
    L.pushvalue(1)
    L.pushinteger(0)
    return 3


def base_next(L: LuaState) -> int:
    auxlib.checktype(L, 1, LUA_TTABLE)
    L.settop(2)
    if L.next(1):
        return 2
    L.pushnil()
    return 1


def base_pairs(L: LuaState) -> int:
    auxlib.checkany(L, 1)
    if auxlib.getmetafield(L, 1, "__pairs") == LUA_TNIL:
        L.pushvalue(upvalueindex(1))
        L.pushvalue(1)
        L.pushnil()
    else:
        L.pushvalue(1)
        L.call(1, 3)
    return 3


def base_select(L: LuaState) -> int:
    n = L.gettop()
    if L.type(1) == LUA_TSTRING and L.tostring(1) == "#":
        L.pushinteger(n - 1)
        return 1
    i = auxlib.checkinteger(L, 1)
    if i < 0:
        i = n + i
    elif i > n:
        i = n
    auxlib.argcheck(L, 1 <= i, 1, "index out of range")
    return n - i


def base_rawequal(L: LuaState) -> int:
    auxlib.checkany(L, 1)
    auxlib.checkany(L, 2)
    L.pushboolean(L.rawequal(1, 2))
    return 1


def base_rawlen(L: LuaState) -> int:
    auxlib.argcheck(L, L.type(1) in (LUA_TTABLE, LUA_TSTRING), 1, "table or string expected")
    L.pushinteger(L.rawlen(1))
    return 1


def base_rawget(L: LuaState) -> int:
    auxlib.checktype(L, 1, LUA_TTABLE)
    auxlib.checkany(L, 2)
    L.settop(2)
    L.rawget(1)
    return 1


def base_rawset(L: LuaState) -> int:
    auxlib.checktype(L, 1, LUA_TTABLE)
    auxlib.checkany(L, 2)
    auxlib.checkany(L, 3)
    L.settop(3)
    L.rawset(1)
    return 1


def base_getmetatable(L: LuaState) -> int:
    auxlib.checkany(L, 1)
    if not L.getmetatable(1):
        L.pushnil()
        return 1
    auxlib.getmetafield(L, 1, "__metatable")
    return 1


def base_setmetatable(L: LuaState) -> int:
    t = L.type(2)
    auxlib.checktype(L, 1, LUA_TTABLE)
    if t != LUA_TNIL and t != LUA_TTABLE:
        auxlib.typeerror(L, 2, "nil or table")
    if auxlib.getmetafield(L, 1, "__metatable") != LUA_TNIL:
        return auxlib.error(L, "cannot change a protected metatable")
    L.settop(2)
    L.setmetatable(1)
    return 1


def base_error(L: LuaState) -> int:
    level = auxlib.optinteger(L, 2, 1)
    L.settop(1)
    if L.type(1) == LUA_TSTRING and level > 0:
        L.pushstring(auxlib.where(L, level))
        L.pushvalue(1)
        L.concat(2)
    return L.error()


def base_assert(L: LuaState) -> int:
    if L.toboolean(1):
        return L.gettop()
    auxlib.checkany(L, 1)
    L.remove(1)
    L.pushstring("assertion failed!")
    L.settop(1)
    return base_error(L)


def base_pcall(L: LuaState) -> int:
    auxlib.checkany(L, 1)
    L.pushboolean(True)
    L.insert(1)
    status = L.pcall(L.gettop() - 2, LUA_MULTRET, 0)
    if status != LUA_OK:
        L.pushboolean(False)
        L.pushvalue(-2)
        return 2
    return L.gettop()


def base_xpcall(L: LuaState) -> int:
    n = L.gettop()
    auxlib.checktype(L, 2, LUA_TFUNCTION)
    L.pushboolean(True)
    L.pushvalue(1)
    L.rotate(3, 2)
    status = L.pcall(n - 2, LUA_MULTRET, 2)
    if status != LUA_OK:
        L.pushboolean(False)
        L.pushvalue(-2)
        return 2
    return L.gettop() - 2


def _load_result(L: LuaState, status: int, env: int) -> int:
    if status == LUA_OK:
        if env:
            L.pushvalue(env)
            if L.setupvalue(-2, 1) is None:
                L.pop()
        return 1
    L.pushnil()
    L.insert(-2)
    return 2


def base_load(L: LuaState) -> int:
    text = L.tostring(1)
    mode = auxlib.optstring(L, 3, "bt")
    env = 0 if L.isnone(4) else 4
    if text is not None:
        chunkname = auxlib.optstring(L, 2, text)
        return _load_result(L, L.load(text, chunkname, mode), env)
    chunkname = auxlib.optstring(L, 2, "=(load)")
    auxlib.checktype(L, 1, LUA_TFUNCTION)
    pieces = []
    while True:
        L.pushvalue(1)
        status = L.pcall(0, 1, 0)
        if status != LUA_OK:
            return _load_result(L, status, env)
        if L.isnil(-1):
            L.pop()
            break
        if not L.isstring(-1):
            L.pop()
            L.pushstring("reader function must return a string")
            return _load_result(L, LUA_ERRRUN, env)
        piece = L.tostring(-1)
        L.pop()
        if not piece:
            break
        pieces.append(piece)
    return _load_result(L, L.load("".join(pieces), chunkname, mode), env)


GC_OPTIONS = ["stop", "restart", "collect", "count", "step", "setpause", "setstepmul", "isrunning"]
GC_CODES = [LUA_GCSTOP, LUA_GCRESTART, LUA_GCCOLLECT, LUA_GCCOUNT, LUA_GCSTEP,
            LUA_GCSETPAUSE, LUA_GCSETSTEPMUL, LUA_GCISRUNNING]


def base_collectgarbage(L: LuaState) -> int:
    option = GC_CODES[auxlib.checkoption(L, 1, "collect", GC_OPTIONS)]
    extra = auxlib.optinteger(L, 2, 0)
    result = L.gc(option, extra)
    if option == LUA_GCCOUNT:
        L.pushnumber(result + L.gc(LUA_GCCOUNTB, 0) / 1024)
    elif option == LUA_GCSTEP or option == LUA_GCISRUNNING:
        L.pushboolean(result)
    else:
        L.pushinteger(result)
    return 1


BASE_FUNCS = [
    ("assert", base_assert),
    ("collectgarbage", base_collectgarbage),
    ("error", base_error),
    ("getmetatable", base_getmetatable),
    ("load", base_load),
    ("next", base_next),
    ("pcall", base_pcall),
    ("print", base_print),
    ("rawequal", base_rawequal),
    ("rawget", base_rawget),
    ("rawlen", base_rawlen),
    ("rawset", base_rawset),
    ("select", base_select),
    ("setmetatable", base_setmetatable),
    ("tonumber", base_tonumber),
    ("tostring", base_tostring),
    ("type", base_type),
    ("xpcall", base_xpcall),
]


def open_base(L: LuaState) -> int:
    L.pushglobaltable()
    auxlib.setfuncs(L, BASE_FUNCS)
    # pairs and ipairs return their iterator from an upvalue
    L.getfield(-1, "next")
    L.pushpyfunction(base_pairs, 1, "pairs")
    L.setfield(-2, "pairs")
    L.pushpyfunction(ipairs_aux, 0, "ipairs_aux")
    L.pushpyfunction(base_ipairs, 1, "ipairs")
    L.setfield(-2, "ipairs")
    L.pushvalue(-1)
    L.setfield(-2, "_G")
    L.pushstring(LUA_VERSION)
    L.setfield(-2, "_VERSION")
    return 1


# ---- Coroutine library ----

def _getco(L: LuaState) -> LuaState:
    co = L.tothread(1)
    auxlib.argcheck(L, co is not None, 1, "coroutine expected")
    return co


def _auxresume(L: LuaState, co: LuaState, narg: int) -> int:
    L.xmove(co, narg)
    status, nres = co.resume(L, narg)
    if status == LUA_OK or status == LUA_YIELD:
        co.xmove(L, nres)
        return nres
    # Move the error message
    co.xmove(L, 1)
    return -1


def co_create(L: LuaState) -> int:
    auxlib.checktype(L, 1, LUA_TFUNCTION)
    co = L.newthread()
    L.pushvalue(1)
    L.xmove(co, 1)
    return 1


def co_resume(L: LuaState) -> int:
    co = _getco(L)
    r = _auxresume(L, co, L.gettop() - 1)
    if r < 0:
        L.pushboolean(False)
        L.insert(-2)
        return 2
    L.pushboolean(True)
    L.insert(-(r + 1))
    return r + 1


def co_auxwrap(L: LuaState) -> int:
    co = L.tothread(upvalueindex(1))
    r = _auxresume(L, co, L.gettop())
    if r < 0:
        if L.type(-1) == LUA_TSTRING:
            L.pushstring(auxlib.where(L, 1))
            L.insert(-2)
            L.concat(2)
        return L.error()
    return r


def co_wrap(L: LuaState) -> int:
    co_create(L)
    L.pushpyfunction(co_auxwrap, 1, "wrap")
    return 1


def co_yield(L: LuaState) -> int:
    return L.yield_(L.gettop())


def coroutine_status(L: LuaState, co: LuaState) -> str:
    """Status name of ``co`` as seen from the running thread ``L``."""
    if L is co:
        return "running"
    if co.status == LUA_YIELD:
        return "suspended"
    if co.status != LUA_OK:
        return "dead"
    if co.frames or co.native_calls or co in co.G.running:
        return "normal"
    if co.gettop() == 0:
        return "dead"
    return "suspended"


def co_status(L: LuaState) -> int:
    L.pushstring(coroutine_status(L, _getco(L)))
    return 1


def co_running(L: LuaState) -> int:
    ismain = L.pushthread()
    L.pushboolean(ismain)
    return 2


def co_isyieldable(L: LuaState) -> int:
    L.pushboolean(L.isyieldable())
    return 1


COROUTINE_FUNCS = [
    ("create", co_create),
    ("isyieldable", co_isyieldable),
    ("resume", co_resume),
    ("running", co_running),
    ("status", co_status),
    ("wrap", co_wrap),
    ("yield", co_yield),
]


def open_coroutine(L: LuaState) -> int:
    auxlib.newlib(L, COROUTINE_FUNCS)
    return 1


# ---- Table library ----

def _checktab(L: LuaState, arg: int) -> None:
    if L.type(arg) != LUA_TTABLE and not L.getmetatable(arg):
        auxlib.typeerror(L, arg, "table")
    elif L.type(arg) != LUA_TTABLE:
        L.pop()


def _aux_getn(L: LuaState, arg: int) -> int:
    _checktab(L, arg)
    return auxlib.objlen(L, arg)


def tab_insert(L: LuaState) -> int:
    e = _aux_getn(L, 1) + 1
    nargs = L.gettop()
    if nargs == 2:
        pos = e
    elif nargs == 3:
        pos = auxlib.checkinteger(L, 2)
        auxlib.argcheck(L, 1 <= pos <= e, 2, "position out of bounds")
        for i in range(e, pos, -1):
            L.geti(1, i - 1)
            L.seti(1, i)
    else:
        return auxlib.error(L, "wrong number of arguments to 'insert'")
    L.seti(1, pos)
    return 0


def tab_remove(L: LuaState) -> int:
    size = _aux_getn(L, 1)
    pos = auxlib.optinteger(L, 2, size)
    if pos != size:
        auxlib.argcheck(L, 1 <= pos <= size + 1, 1, "position out of bounds")
    L.geti(1, pos)
    while pos < size:
        L.geti(1, pos + 1)
        L.seti(1, pos)
        pos += 1
    L.pushnil()
    L.seti(1, pos)
    return 1


def tab_concat(L: LuaState) -> int:
    _checktab(L, 1)
    sep = auxlib.optstring(L, 2, "")
    first = auxlib.optinteger(L, 3, 1)
    last = auxlib.checkinteger(L, 4) if not L.isnoneornil(4) else auxlib.objlen(L, 1)
    parts = []
    for i in range(first, last + 1):
        L.geti(1, i)
        if not L.isstring(-1):
            return auxlib.error(
                L, f"invalid value (at index {i}) in table for 'concat'")
        parts.append(L.tostring(-1))
        L.pop()
    L.pushstring(sep.join(parts))
    return 1


def tab_pack(L: LuaState) -> int:
    n = L.gettop()
    L.createtable(n, 1)
    L.insert(1)
    for i in range(n, 0, -1):
        L.seti(1, i)
    L.pushinteger(n)
    L.setfield(1, "n")
    return 1


def tab_unpack(L: LuaState) -> int:
    first = auxlib.optinteger(L, 2, 1)
    last = auxlib.checkinteger(L, 3) if not L.isnoneornil(3) else auxlib.objlen(L, 1)
    if first > last:
        return 0
    n = last - first + 1
    if n >= MAXRESULTS:
        return auxlib.error(L, "too many results to unpack")
    for i in range(first, last + 1):
        L.geti(1, i)
    return n


def tab_sort(L: LuaState) -> int:
    n = _aux_getn(L, 1)
    if n > 1:
        auxlib.argcheck(L, n < MAXSTRINGSIZE, 1, "array too big")
        has_comp = not L.isnoneornil(2)
        if has_comp:
            auxlib.checktype(L, 2, LUA_TFUNCTION)
        L.settop(2)
        values = []
        for i in range(1, n + 1):
            L.geti(1, i)
            values.append(L.index2value(-1))
            L.pop()

        def compare(a, b):
            if not has_comp:
                return -1 if vm.less_than(L, a, b) else 0
            L.pushvalue(2)
            L.push(a)
            L.push(b)
            L.call(2, 1)
            result = L.toboolean(-1)
            L.pop()
            return -1 if result else 0

        values.sort(key=functools.cmp_to_key(compare))
        for i, value in enumerate(values, 1):
            L.push(value)
            L.seti(1, i)
    return 0


TABLE_FUNCS = [
    ("concat", tab_concat),
    ("insert", tab_insert),
    ("pack", tab_pack),
    ("remove", tab_remove),
    ("sort", tab_sort),
    ("unpack", tab_unpack),
]


def open_table(L: LuaState) -> int:
    auxlib.newlib(L, TABLE_FUNCS)
    return 1


# ---- String library ----

_UPPER = str.maketrans(_string.ascii_lowercase, _string.ascii_uppercase)
_LOWER = str.maketrans(_string.ascii_uppercase, _string.ascii_lowercase)
_PATTERN_SPECIALS = frozenset("^$*+?.([%-")
_FORMAT_ITEM = re.compile(r"%([-+ #0]*)(\d{0,2})(?:\.(\d{0,2}))?(.?)")


def _posrelat(pos: int, length: int) -> int:
    if pos >= 0:
        return pos
    if -pos > length:
        return 0
    return length + pos + 1


def str_len(L: LuaState) -> int:
    L.pushinteger(len(auxlib.checkstring(L, 1)))
    return 1


def str_sub(L: LuaState) -> int:
    s = auxlib.checkstring(L, 1)
    length = len(s)
    start = _posrelat(auxlib.checkinteger(L, 2), length)
    end = _posrelat(auxlib.optinteger(L, 3, -1), length)
    if start < 1:
        start = 1
    if end > length:
        end = length
    L.pushstring(s[start - 1:end] if start <= end else "")
    return 1


def str_upper(L: LuaState) -> int:
    L.pushstring(auxlib.checkstring(L, 1).translate(_UPPER))
    return 1


def str_lower(L: LuaState) -> int:
    L.pushstring(auxlib.checkstring(L, 1).translate(_LOWER))
    return 1


def str_rep(L: LuaState) -> int:
    s = auxlib.checkstring(L, 1)
    n = auxlib.checkinteger(L, 2)
    sep = auxlib.optstring(L, 3, "")
    if n <= 0:
        L.pushstring("")
        return 1
    size = len(s) * n + len(sep) * (n - 1)
    if size > MAXSTRINGSIZE:
        return auxlib.error(L, "resulting string too large")
    # The result is built in a buffer of its full size before it is pushed
    heap = L.G.heap
    buffer = heap.allocate(None, LUA_TSTRING, size)
    try:
        result = (s + sep) * (n - 1) + s
    finally:
        heap.free(buffer, size)
    L.pushstring(result)
    return 1


def str_reverse(L: LuaState) -> int:
    L.pushstring(auxlib.checkstring(L, 1)[::-1])
    return 1


def str_byte(L: LuaState) -> int:
    s = auxlib.checkstring(L, 1)
    length = len(s)
    posi = _posrelat(auxlib.optinteger(L, 2, 1), length)
    pose = _posrelat(auxlib.optinteger(L, 3, posi), length)
    if posi < 1:
        posi = 1
    if pose > length:
        pose = length
    if posi > pose:
        return 0
    for c in s[posi - 1:pose]:
        L.pushinteger(ord(c))
    return pose - posi + 1


def str_char(L: LuaState) -> int:
    chars = []
    for i in range(1, L.gettop() + 1):
        c = auxlib.checkinteger(L, i)
        auxlib.argcheck(L, 0 <= c <= 255, i, "value out of range")
        chars.append(chr(c))
    L.pushstring("".join(chars))
    return 1


def str_find(L: LuaState) -> int:
    s = auxlib.checkstring(L, 1)
    pattern = auxlib.checkstring(L, 2)
    init = _posrelat(auxlib.optinteger(L, 3, 1), len(s))
    if init < 1:
        init = 1
    if init > len(s) + 1:
        L.pushnil()
        return 1
    if not L.toboolean(4) and any(c in _PATTERN_SPECIALS for c in pattern):
        return auxlib.error(L, "pattern matching is not supported (use plain find)")
    pos = s.find(pattern, init - 1)
    if pos < 0:
        L.pushnil()
        return 1
    L.pushinteger(pos + 1)
    L.pushinteger(pos + len(pattern))
    return 2


def _quote_string(s: str) -> str:
    out = ['"']
    for i, c in enumerate(s):
        if c in '"\\\n':
            out.append("\\" + c)
        elif c == "\r":
            out.append("\\r")
        elif c == "\0" or ord(c) < 32 or ord(c) == 127:
            following = s[i + 1:i + 2]
            if following.isdigit():
                out.append("\\%03d" % ord(c))
            else:
                out.append("\\%d" % ord(c))
        else:
            out.append(c)
    out.append('"')
    return "".join(out)


def _quote_value(L: LuaState, arg: int) -> str:
    tp = L.type(arg)
    value = L.index2value(arg)
    if tp == LUA_TSTRING:
        return _quote_string(value)
    if tp == LUA_TNUMBER:
        if type(value) is int:
            if value == MININTEGER:
                return "0x8000000000000000"
            return str(value)
        if value == math.inf:
            return "1e9999"
        if value == -math.inf:
            return "-1e9999"
        if value != value:
            return "(0/0)"
        if value.is_integer():
            return "%.1f" % value if abs(value) < 1e16 else value.hex()
        return value.hex()
    if value is None:
        return "nil"
    if type(value) is bool:
        return "true" if value else "false"
    return auxlib.argerror(L, arg, "value has no literal form")


def str_format(L: LuaState) -> int:
    fmt = auxlib.checkstring(L, 1)
    top = L.gettop()
    arg = 1
    out = []
    i = 0
    n = len(fmt)
    while i < n:
        c = fmt[i]
        if c != "%":
            out.append(c)
            i += 1
            continue
        if fmt[i + 1:i + 2] == "%":
            out.append("%")
            i += 2
            continue
        m = _FORMAT_ITEM.match(fmt, i)
        flags, width, precision, conversion = m.groups()
        if not conversion:
            return auxlib.error(L, "invalid conversion '%' to 'format'")
        if conversion not in "cdiouxXaAeEfFgGqs":
            return auxlib.error(L, f"invalid option '%{conversion}' to 'format'")
        arg += 1
        if arg > top:
            return auxlib.argerror(L, arg, "no value")
        spec = "%" + flags + width + ("." + precision if precision is not None else "")
        if conversion == "c":
            out.append((spec + "s") % chr(auxlib.checkinteger(L, arg) & 0xFF))
        elif conversion in "di":
            out.append((spec + "d") % auxlib.checkinteger(L, arg))
        elif conversion in "ouxX":
            value = auxlib.checkinteger(L, arg)
            if value < 0:
                value += 2**64
            out.append((spec + ("d" if conversion == "u" else conversion)) % value)
        elif conversion in "aA":
            text = float(auxlib.checknumber(L, arg)).hex()
            if conversion == "A":
                text = text.upper()
            out.append(("%" + flags.replace("0", "") + width + "s") % text)
        elif conversion in "eEfFgG":
            out.append((spec + conversion) % float(auxlib.checknumber(L, arg)))
        elif conversion == "q":
            out.append(_quote_value(L, arg))
        else:
            text = auxlib.tolstring(L, arg)
            L.pop()
            out.append((spec + "s") % text)
        i = m.end()
    L.pushstring("".join(out))
    return 1


STRING_FUNCS = [
    ("byte", str_byte),
    ("char", str_char),
    ("find", str_find),
    ("format", str_format),
    ("len", str_len),
    ("lower", str_lower),
    ("rep", str_rep),
    ("reverse", str_reverse),
    ("sub", str_sub),
    ("upper", str_upper),
]


def _create_string_metatable(L: LuaState) -> None:
    """Make every string index the string library."""
    L.createtable(0, 1)
    L.pushstring("")
    L.pushvalue(-2)
    L.setmetatable(-2)
    L.pop()
    L.pushvalue(-2)
    L.setfield(-2, "__index")
    L.pop()


def open_string(L: LuaState) -> int:
    auxlib.newlib(L, STRING_FUNCS)
    _create_string_metatable(L)
    return 1


# ---- Math library ----

def _push_numint(L: LuaState, value: float) -> None:
    n = float_to_integer(value)
    if n is not None:
        L.pushinteger(n)
    else:
        L.pushnumber(value)


def math_floor(L: LuaState) -> int:
    if L.isinteger(1):
        L.settop(1)
        return 1
    x = float(auxlib.checknumber(L, 1))
    _push_numint(L, float(math.floor(x)) if math.isfinite(x) else x)
    return 1


def math_ceil(L: LuaState) -> int:
    if L.isinteger(1):
        L.settop(1)
        return 1
    x = float(auxlib.checknumber(L, 1))
    _push_numint(L, float(math.ceil(x)) if math.isfinite(x) else x)
    return 1


def math_abs(L: LuaState) -> int:
    if L.isinteger(1):
        L.pushinteger(abs(L.tointeger(1)))
    else:
        L.pushnumber(abs(auxlib.checknumber(L, 1)))
    return 1


def _minmax(L: LuaState, want_max: bool) -> int:
    n = L.gettop()
    auxlib.argcheck(L, n >= 1, 1, "number expected")
    best = 1
    best_value = auxlib.checknumber(L, 1)
    for i in range(2, n + 1):
        value = auxlib.checknumber(L, i)
        if (best_value < value) if want_max else (value < best_value):
            best = i
            best_value = value
    L.pushvalue(best)
    return 1


def math_max(L: LuaState) -> int:
    return _minmax(L, True)


def math_min(L: LuaState) -> int:
    return _minmax(L, False)


def math_sqrt(L: LuaState) -> int:
    x = float(auxlib.checknumber(L, 1))
    L.pushnumber(math.sqrt(x) if x >= 0 else math.nan)
    return 1


def math_fmod(L: LuaState) -> int:
    if L.isinteger(1) and L.isinteger(2):
        a = L.tointeger(1)
        d = L.tointeger(2)
        if d == 0:
            return auxlib.argerror(L, 2, "zero")
        r = abs(a) % abs(d)
        L.pushinteger(-r if a < 0 else r)
        return 1
    a = float(auxlib.checknumber(L, 1))
    b = float(auxlib.checknumber(L, 2))
    try:
        L.pushnumber(math.fmod(a, b))
    except ValueError:
        L.pushnumber(math.nan)
    return 1


def math_exp(L: LuaState) -> int:
    try:
        L.pushnumber(math.exp(auxlib.checknumber(L, 1)))
    except OverflowError:
        L.pushnumber(math.inf)
    return 1


def math_log(L: LuaState) -> int:
    x = float(auxlib.checknumber(L, 1))
    base = auxlib.optnumber(L, 2, None)
    if x == 0:
        result = -math.inf
    elif x < 0:
        result = math.nan
    elif base is None:
        result = math.log(x)
    elif base == 2:
        result = math.log2(x)
    elif base == 10:
        result = math.log10(x)
    else:
        result = math.log(x) / math.log(base)
    L.pushnumber(result)
    return 1


def _trig(fn):
    def wrapper(L: LuaState) -> int:
        try:
            L.pushnumber(fn(float(auxlib.checknumber(L, 1))))
        except ValueError:
            L.pushnumber(math.nan)
        return 1
    wrapper.__name__ = fn.__name__
    return wrapper


def math_atan(L: LuaState) -> int:
    y = float(auxlib.checknumber(L, 1))
    x = float(auxlib.optnumber(L, 2, 1.0))
    L.pushnumber(math.atan2(y, x))
    return 1


def math_tointeger(L: LuaState) -> int:
    n = L.tointeger(1)
    if n is not None:
        L.pushinteger(n)
    else:
        auxlib.checkany(L, 1)
        L.pushnil()
    return 1


def math_type(L: LuaState) -> int:
    if L.type(1) == LUA_TNUMBER:
        L.pushstring("integer" if L.isinteger(1) else "float")
    else:
        auxlib.checkany(L, 1)
        L.pushnil()
    return 1


def math_ult(L: LuaState) -> int:
    a = auxlib.checkinteger(L, 1)
    b = auxlib.checkinteger(L, 2)
    L.pushboolean((a & 0xFFFFFFFFFFFFFFFF) < (b & 0xFFFFFFFFFFFFFFFF))
    return 1


MATH_FUNCS = [
    ("abs", math_abs),
    ("atan", math_atan),
    ("ceil", math_ceil),
    ("cos", _trig(math.cos)),
    ("exp", math_exp),
    ("floor", math_floor),
    ("fmod", math_fmod),
    ("log", math_log),
    ("max", math_max),
    ("min", math_min),
    ("sin", _trig(math.sin)),
    ("sqrt", math_sqrt),
    ("tan", _trig(math.tan)),
    ("tointeger", math_tointeger),
    ("type", math_type),
    ("ult", math_ult),
]


def open_math(L: LuaState) -> int:
    auxlib.newlib(L, MATH_FUNCS)
    L.pushnumber(math.pi)
    L.setfield(-2, "pi")
    L.pushnumber(math.inf)
    L.setfield(-2, "huge")
    L.pushinteger(MAXINTEGER)
    L.setfield(-2, "maxinteger")
    L.pushinteger(MININTEGER)
    L.setfield(-2, "mininteger")
    return 1


STANDARD_LIBS = [
    ("_G", open_base),
    ("coroutine", open_coroutine),
    ("table", open_table),
    ("string", open_string),
    ("math", open_math),
]


def openlibs(L: LuaState) -> None:
    """Open every standard library into the globals."""
    for name, loader in STANDARD_LIBS:
        auxlib.requiref(L, name, loader, True)
        L.pop()
