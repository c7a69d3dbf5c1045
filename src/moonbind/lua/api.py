"""The operand-stack API of the VM.

``LuaState`` mirrors the Lua 5.3 C API: values are exchanged through a
stack indexed from the current function's base (positive indices) or from
the top (negative indices), plus the registry pseudo-index and upvalue
pseudo-indices for running host functions. Each ``LuaState`` is one thread;
threads created by ``newthread`` share their main thread's global state.
"""

import functools
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from .compiler import compile_chunk
from .errors import (
    LUA_OK, LUA_YIELD, LUA_ERRRUN, LUA_ERRSYNTAX, LUA_ERRMEM, LUA_ERRERR,
    LuaError, LuaSyntaxError, LuaMemoryError, LuaPanic, LuaYield, TimeLimitError,
)
from .heap import (
    Heap, AllocFunction, default_alloc, proto_constants,
    LUA_GCSTOP, LUA_GCRESTART, LUA_GCCOLLECT, LUA_GCCOUNT, LUA_GCCOUNTB,
    LUA_GCSTEP, LUA_GCSETPAUSE, LUA_GCSETSTEPMUL, LUA_GCISRUNNING,
)
from .parser import Parser
from .values import (
    GCObject, Cell, LuaTable, LuaClosure, PyFunction, Userdata,
    LUA_TNONE, LUA_TNIL, LUA_TTHREAD, TYPE_NAMES, THREAD_SIZE,
    type_of, is_falsy, raw_equal, to_number, to_integer, number_to_string,
    wrap_integer, string_size,
)
from . import vm
from .vm import CallFrame, NativeCall


LUA_REGISTRYINDEX = -1001000
LUA_RIDX_MAINTHREAD = 1
LUA_RIDX_GLOBALS = 2
LUA_MULTRET = -1

# Comparison operators for compare()
LUA_OPEQ = 0
LUA_OPLT = 1
LUA_OPLE = 2

# Arithmetic operators for arith()
LUA_OPADD = 0
LUA_OPSUB = 1
LUA_OPMUL = 2
LUA_OPMOD = 3
LUA_OPPOW = 4
LUA_OPDIV = 5
LUA_OPIDIV = 6
LUA_OPBAND = 7
LUA_OPBOR = 8
LUA_OPBXOR = 9
LUA_OPSHL = 10
LUA_OPSHR = 11
LUA_OPUNM = 12
LUA_OPBNOT = 13

_ARITH_OPCODES = {
    LUA_OPADD: vm.OpCode.ADD,
    LUA_OPSUB: vm.OpCode.SUB,
    LUA_OPMUL: vm.OpCode.MUL,
    LUA_OPMOD: vm.OpCode.MOD,
    LUA_OPPOW: vm.OpCode.POW,
    LUA_OPDIV: vm.OpCode.DIV,
    LUA_OPIDIV: vm.OpCode.IDIV,
    LUA_OPBAND: vm.OpCode.BAND,
    LUA_OPBOR: vm.OpCode.BOR,
    LUA_OPBXOR: vm.OpCode.BXOR,
    LUA_OPSHL: vm.OpCode.SHL,
    LUA_OPSHR: vm.OpCode.SHR,
}

# Longest chunk name kept in messages
LUA_IDSIZE = 60

PanicFunction = Callable[["LuaState"], int]


def upvalueindex(i: int) -> int:
    """Pseudo-index of the i-th upvalue of the running host function."""
    return LUA_REGISTRYINDEX - i


def chunkid(source: str) -> str:
    """Shorten a chunk name for messages: "=name", "@file" or source text."""
    if source.startswith("="):
        return source[1:LUA_IDSIZE]
    if source.startswith("@"):
        if len(source) <= LUA_IDSIZE:
            return source[1:]
        return "..." + source[-(LUA_IDSIZE - 4):]
    first_line, newline, _ = source.partition("\n")
    limit = LUA_IDSIZE - len('[string "..."]') - 1
    if newline or len(first_line) > limit:
        return f'[string "{first_line[:limit]}..."]'
    return f'[string "{first_line}"]'


class GlobalState:
    """State shared by a main thread and its coroutines."""

    def __init__(self, heap: Heap):
        self.heap = heap
        heap.roots = self.roots
        self.registry: Optional[LuaTable] = None
        self.main: Optional["LuaState"] = None
        # Metatables for non-table types (the string metatable lives here)
        self.type_metatables: Dict[int, LuaTable] = {}
        self.panic: Optional[PanicFunction] = None
        self.protected = 0
        self.c_calls = 0
        self.time_limit: Optional[float] = None
        self.deadline: Optional[float] = None
        # Threads currently inside resume, innermost last
        self.running: List["LuaState"] = []
        self.closed = False

    def roots(self) -> Iterator[Any]:
        yield self.registry
        yield self.main
        yield from self.running
        yield from self.type_metatables.values()


def _protect(method):
    """Run the panic function when an error escapes every protected call.

    An unprotected call also starts the execution time limit, so metamethods
    it reaches are stopped like code run by ``pcall``.
    """

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        G = self.G
        armed = G.protected == 0 and G.deadline is None and G.time_limit is not None
        if armed:
            G.deadline = time.monotonic() + G.time_limit
        try:
            return method(self, *args, **kwargs)
        except LuaError as e:
            if G.protected or isinstance(e, LuaPanic):
                raise
            self._panic(e)
        finally:
            if armed:
                G.deadline = None

    return wrapper


class LuaState(GCObject):
    """A thread of the VM and the stack API used to drive it."""

    type_tag = LUA_TTHREAD

    def __init__(self, G: GlobalState):
        super().__init__()
        self.G = G
        self.stack: List[Any] = []
        self.base = 0
        self.frames: List[CallFrame] = []
        self.native_calls: List[NativeCall] = []
        self.status = LUA_OK
        # Non-yieldable call depth
        self.nny = 0

    def storage_size(self) -> int:
        return THREAD_SIZE

    def references(self) -> Iterator[Any]:
        """Values reachable from this thread, for the collector."""
        yield from self.stack
        for frame in self.frames:
            yield frame.closure
            for value in frame.slots:
                yield value.value if type(value) is Cell else value
            yield from frame.stack
            yield from frame.varargs
        for record in self.native_calls:
            yield record.func

    def __repr__(self) -> str:
        return f"LuaState(top={len(self.stack)}, status={self.status})"

    # ---- Index handling ----

    def _position(self, idx: int) -> int:
        if idx > 0:
            return self.base + idx - 1
        if idx > LUA_REGISTRYINDEX:
            return len(self.stack) + idx
        raise IndexError(f"pseudo-index {idx} has no stack position")

    def index2value(self, idx: int) -> Any:
        """Value at an acceptable index (nil when beyond the top)."""
        if idx > 0:
            position = self.base + idx - 1
            if position < len(self.stack):
                return self.stack[position]
            return None
        if idx > LUA_REGISTRYINDEX:
            return self.stack[len(self.stack) + idx]
        if idx == LUA_REGISTRYINDEX:
            return self.G.registry
        n = LUA_REGISTRYINDEX - idx
        if not self.native_calls:
            return None
        upvalues = self.native_calls[-1].func.upvalues
        if n > len(upvalues):
            return None
        return upvalues[n - 1]

    def _store(self, idx: int, value: Any) -> None:
        if idx < LUA_REGISTRYINDEX:
            self.native_calls[-1].func.upvalues[LUA_REGISTRYINDEX - idx - 1] = value
        else:
            self.stack[self._position(idx)] = value

    def push(self, value: Any) -> None:
        """Push any VM value."""
        self.stack.append(value)

    # ---- Basic stack manipulation ----

    def absindex(self, idx: int) -> int:
        if idx > 0 or idx <= LUA_REGISTRYINDEX:
            return idx
        return len(self.stack) - self.base + idx + 1

    def gettop(self) -> int:
        return len(self.stack) - self.base

    def settop(self, idx: int) -> None:
        stack = self.stack
        if idx >= 0:
            new_top = self.base + idx
            if new_top > len(stack):
                stack.extend([None] * (new_top - len(stack)))
        else:
            new_top = len(stack) + idx + 1
        del stack[new_top:]

    def pop(self, n: int = 1) -> None:
        self.settop(-n - 1)

    def pushvalue(self, idx: int) -> None:
        self.stack.append(self.index2value(idx))

    def rotate(self, idx: int, n: int) -> None:
        """Rotate the values from idx to the top by n positions towards the top."""
        start = self._position(idx)
        segment = self.stack[start:]
        if not segment:
            return
        n %= len(segment)
        self.stack[start:] = segment[-n:] + segment[:-n] if n else segment

    def insert(self, idx: int) -> None:
        self.rotate(idx, 1)

    def remove(self, idx: int) -> None:
        self.rotate(idx, -1)
        self.pop()

    def replace(self, idx: int) -> None:
        self.copy(-1, idx)
        self.pop()

    def copy(self, fromidx: int, toidx: int) -> None:
        self._store(toidx, self.index2value(fromidx))

    def checkstack(self, n: int) -> bool:
        return True

    def xmove(self, to: "LuaState", n: int) -> None:
        """Move the top n values to another thread of the same state."""
        if n <= 0 or to is self:
            return
        split = len(self.stack) - n
        values = self.stack[split:]
        del self.stack[split:]
        to.stack.extend(values)

    # ---- Access functions ----

    def type(self, idx: int) -> int:
        if idx > 0 and self.base + idx - 1 >= len(self.stack):
            return LUA_TNONE
        if idx < LUA_REGISTRYINDEX:
            n = LUA_REGISTRYINDEX - idx
            if not self.native_calls or n > len(self.native_calls[-1].func.upvalues):
                return LUA_TNONE
        return type_of(self.index2value(idx))

    def typename(self, tp: int) -> str:
        return TYPE_NAMES[tp]

    def isnone(self, idx: int) -> bool:
        return self.type(idx) == LUA_TNONE

    def isnil(self, idx: int) -> bool:
        return self.type(idx) == LUA_TNIL

    def isnoneornil(self, idx: int) -> bool:
        return self.type(idx) <= LUA_TNIL

    def isboolean(self, idx: int) -> bool:
        return type(self.index2value(idx)) is bool

    def isnumber(self, idx: int) -> bool:
        return to_number(self.index2value(idx)) is not None

    def isinteger(self, idx: int) -> bool:
        return type(self.index2value(idx)) is int

    def isstring(self, idx: int) -> bool:
        return type(self.index2value(idx)) in (str, int, float)

    def istable(self, idx: int) -> bool:
        return isinstance(self.index2value(idx), LuaTable)

    def isfunction(self, idx: int) -> bool:
        return vm.is_function(self.index2value(idx))

    def ispyfunction(self, idx: int) -> bool:
        return isinstance(self.index2value(idx), PyFunction)

    def isuserdata(self, idx: int) -> bool:
        return isinstance(self.index2value(idx), Userdata)

    def isthread(self, idx: int) -> bool:
        return isinstance(self.index2value(idx), LuaState)

    def toboolean(self, idx: int) -> bool:
        return not is_falsy(self.index2value(idx))

    def tonumber(self, idx: int) -> Union[int, float, None]:
        """The number at idx (strings are converted), or None."""
        return to_number(self.index2value(idx))

    def tointeger(self, idx: int) -> Optional[int]:
        """The integer at idx (exact conversions only), or None."""
        return to_integer(self.index2value(idx))

    def tostring(self, idx: int) -> Optional[str]:
        """The string at idx (numbers are converted), or None."""
        value = self.index2value(idx)
        if type(value) is str:
            return value
        if type(value) in (int, float):
            return number_to_string(value)
        return None

    def touserdata(self, idx: int) -> Any:
        value = self.index2value(idx)
        if isinstance(value, Userdata):
            return value.value
        return None

    def tothread(self, idx: int) -> Optional["LuaState"]:
        value = self.index2value(idx)
        return value if isinstance(value, LuaState) else None

    def topointer(self, idx: int) -> int:
        value = self.index2value(idx)
        if isinstance(value, GCObject):
            return id(value)
        return 0

    def rawequal(self, idx1: int, idx2: int) -> bool:
        return raw_equal(self.index2value(idx1), self.index2value(idx2))

    def rawlen(self, idx: int) -> int:
        value = self.index2value(idx)
        if type(value) is str:
            return len(value)
        if isinstance(value, LuaTable):
            return value.length()
        if isinstance(value, Userdata):
            return value.size
        return 0

    @_protect
    def compare(self, idx1: int, idx2: int, op: int) -> bool:
        a = self.index2value(idx1)
        b = self.index2value(idx2)
        if op == LUA_OPEQ:
            return vm.values_equal(self, a, b)
        if op == LUA_OPLT:
            return vm.less_than(self, a, b)
        if op == LUA_OPLE:
            return vm.less_equal(self, a, b)
        raise ValueError(f"invalid comparison option {op}")

    @_protect
    def arith(self, op: int) -> None:
        """Apply an operator to the top one or two values, replacing them."""
        if op == LUA_OPUNM:
            self.stack.append(vm.unary_minus(self, self.stack.pop()))
        elif op == LUA_OPBNOT:
            self.stack.append(vm.bitwise_not(self, self.stack.pop()))
        else:
            b = self.stack.pop()
            a = self.stack.pop()
            self.stack.append(vm.arith(self, _ARITH_OPCODES[op], a, b))

    @_protect
    def concat(self, n: int) -> None:
        """Concatenate the top n values, leaving the result."""
        if n == 0:
            self.stack.append("")
            return
        split = len(self.stack) - n
        values = self.stack[split:]
        result = values[-1]
        for value in reversed(values[:-1]):
            result = vm.concat_values(self, value, result)
        del self.stack[split:]
        self.stack.append(result)

    @_protect
    def len(self, idx: int) -> None:
        """Push the length of the value at idx (honours ``__len``)."""
        self.stack.append(vm.length_of(self, self.index2value(idx)))

    # ---- Push functions ----

    def pushnil(self) -> None:
        self.stack.append(None)

    def pushnumber(self, n: float) -> None:
        self.stack.append(float(n))

    def pushinteger(self, n: int) -> None:
        self.stack.append(wrap_integer(int(n)))

    @_protect
    def pushstring(self, s: str) -> str:
        self.G.heap.charge_string(string_size(s))
        self.stack.append(s)
        return s

    def pushboolean(self, b: Any) -> None:
        self.stack.append(bool(b))

    def pushpyfunction(self, fn: Callable[["LuaState"], int], n: int = 0,
                       name: Optional[str] = None) -> None:
        """Push a host function, popping n values as its upvalues."""
        upvalues: List[Any] = []
        if n:
            split = len(self.stack) - n
            upvalues = self.stack[split:]
            del self.stack[split:]
        func = PyFunction(fn, upvalues, name or getattr(fn, "__name__", "?"))
        self.stack.append(self.G.heap.register(func))

    def pushglobaltable(self) -> None:
        self.stack.append(self.G.registry.get(LUA_RIDX_GLOBALS))

    def pushthread(self) -> bool:
        """Push this thread; return True if it is the main thread."""
        self.stack.append(self)
        return self is self.G.main

    def createtable(self, narr: int = 0, nrec: int = 0) -> LuaTable:
        table = self.G.heap.register(LuaTable(narr, nrec))
        self.stack.append(table)
        return table

    def newtable(self) -> LuaTable:
        return self.createtable(0, 0)

    def newuserdata(self, size: int = 0, value: Any = None) -> Userdata:
        userdata = self.G.heap.register(Userdata(value, size))
        self.stack.append(userdata)
        return userdata

    # ---- Get functions ----

    @_protect
    def gettable(self, idx: int) -> int:
        table = self.index2value(idx)
        key = self.stack.pop()
        value = vm.index_value(self, table, key)
        self.stack.append(value)
        return type_of(value)

    @_protect
    def getfield(self, idx: int, k: str) -> int:
        value = vm.index_value(self, self.index2value(idx), k)
        self.stack.append(value)
        return type_of(value)

    @_protect
    def geti(self, idx: int, i: int) -> int:
        value = vm.index_value(self, self.index2value(idx), i)
        self.stack.append(value)
        return type_of(value)

    def rawget(self, idx: int) -> int:
        table = self.index2value(idx)
        value = table.get(self.stack.pop())
        self.stack.append(value)
        return type_of(value)

    def rawgeti(self, idx: int, n: int) -> int:
        value = self.index2value(idx).get(n)
        self.stack.append(value)
        return type_of(value)

    @_protect
    def getglobal(self, name: str) -> int:
        value = vm.index_value(self, self.G.registry.get(LUA_RIDX_GLOBALS), name)
        self.stack.append(value)
        return type_of(value)

    def getmetatable(self, idx: int) -> bool:
        """Push the metatable of the value at idx; False (nothing pushed) if none."""
        mt = vm.get_metatable(self, self.index2value(idx))
        if mt is None:
            return False
        self.stack.append(mt)
        return True

    def getuservalue(self, idx: int) -> int:
        value = self.index2value(idx).uservalue
        self.stack.append(value)
        return type_of(value)

    # ---- Set functions ----

    @_protect
    def settable(self, idx: int) -> None:
        table = self.index2value(idx)
        value = self.stack.pop()
        key = self.stack.pop()
        vm.set_index(self, table, key, value)

    @_protect
    def setfield(self, idx: int, k: str) -> None:
        table = self.index2value(idx)
        vm.set_index(self, table, k, self.stack.pop())

    @_protect
    def seti(self, idx: int, i: int) -> None:
        table = self.index2value(idx)
        vm.set_index(self, table, i, self.stack.pop())

    @_protect
    def rawset(self, idx: int) -> None:
        table = self.index2value(idx)
        value = self.stack.pop()
        key = self.stack.pop()
        table.set(key, value)

    @_protect
    def rawseti(self, idx: int, i: int) -> None:
        table = self.index2value(idx)
        table.set(i, self.stack.pop())

    @_protect
    def setglobal(self, name: str) -> None:
        vm.set_index(self, self.G.registry.get(LUA_RIDX_GLOBALS), name, self.stack.pop())

    def setmetatable(self, idx: int) -> None:
        """Pop a table (or nil) and make it the metatable of the value at idx."""
        obj = self.index2value(idx)
        mt = self.stack.pop()
        if isinstance(obj, (LuaTable, Userdata)):
            obj.metatable = mt
        elif mt is None:
            self.G.type_metatables.pop(type_of(obj), None)
        else:
            self.G.type_metatables[type_of(obj)] = mt

    def setuservalue(self, idx: int) -> None:
        self.index2value(idx).uservalue = self.stack.pop()

    # ---- Calls and loading ----

    @_protect
    def call(self, nargs: int, nresults: int) -> None:
        """Call the function below the top nargs values."""
        func_idx = len(self.stack) - nargs - 1
        vm.call_at(self, func_idx, nresults)

    def pcall(self, nargs: int, nresults: int, msgh: int = 0) -> int:
        """Call in protected mode; on error leave the error value and return its status."""
        G = self.G
        func_idx = len(self.stack) - nargs - 1
        handler = self.index2value(msgh) if msgh else None
        saved_frames = len(self.frames)
        saved_natives = len(self.native_calls)
        saved_base = self.base
        saved_nny = self.nny
        saved_c_calls = G.c_calls
        outermost = G.protected == 0 and G.deadline is None
        if outermost and G.time_limit is not None:
            G.deadline = time.monotonic() + G.time_limit
        G.protected += 1
        status = LUA_OK
        value: Any = None
        try:
            vm.call_at(self, func_idx, nresults)
        except TimeLimitError as e:
            if not outermost:
                raise
            status, value = e.status, e.value
        except LuaError as e:
            status, value = e.status, e.value
        except RecursionError:
            status, value = LUA_ERRRUN, "stack overflow"
        finally:
            G.protected -= 1
            self.nny = saved_nny
            G.c_calls = saved_c_calls
            if outermost:
                G.deadline = None
        if status == LUA_OK:
            return LUA_OK

        del self.frames[saved_frames:]
        del self.native_calls[saved_natives:]
        self.base = saved_base
        del self.stack[func_idx:]
        if handler is not None and status == LUA_ERRRUN:
            G.protected += 1
            try:
                value = vm.call_function(self, handler, [value], 1)[0]
            except (LuaError, RecursionError):
                del self.frames[saved_frames:]
                del self.native_calls[saved_natives:]
                self.base = saved_base
                del self.stack[func_idx:]
                status, value = LUA_ERRERR, "error in error handling"
            finally:
                G.protected -= 1
        self.stack.append(value)
        return status

    def load(self, source: str, chunkname: Optional[str] = None, mode: Optional[str] = None) -> int:
        """Compile a chunk and push it as a function, or push the error message."""
        name = chunkid(chunkname if chunkname is not None else source)
        mode = mode or "bt"
        if source.startswith("\x1b"):
            self.stack.append(f"{name}: attempt to load a binary chunk (mode is '{mode}')"
                              if "b" not in mode else f"{name}: bad binary format (precompiled chunks are not supported)")
            return LUA_ERRSYNTAX
        if "t" not in mode:
            self.stack.append(f"attempt to load a text chunk (mode is '{mode}')")
            return LUA_ERRSYNTAX
        try:
            chunk = Parser(source).parse()
            proto = compile_chunk(chunk, name)
        except LuaSyntaxError as e:
            self.stack.append(e.format(name))
            return LUA_ERRSYNTAX
        except RecursionError:
            self.stack.append(f"{name}: chunk has too many syntax levels")
            return LUA_ERRSYNTAX
        heap = self.G.heap
        try:
            heap.charge_string(sum(string_size(k) for k in proto_constants(proto, set()) if type(k) is str))
            closure = heap.register(LuaClosure(proto, [Cell(self.G.registry.get(LUA_RIDX_GLOBALS))]))
        except LuaMemoryError as e:
            self.stack.append(e.value)
            return LUA_ERRMEM
        self.stack.append(closure)
        return LUA_OK

    @_protect
    def error(self) -> int:
        """Raise the value on top of the stack as an error."""
        raise LuaError(self.stack[-1])

    def _panic(self, error: LuaError) -> None:
        self.stack.append(error.value)
        if self.G.panic is not None:
            self.G.panic(self)
        raise LuaPanic(error.value, error.status) from error

    def atpanic(self, panicf: Optional[PanicFunction]) -> Optional[PanicFunction]:
        """Set the function run before an unprotected error reaches the host."""
        old = self.G.panic
        self.G.panic = panicf
        return old

    def callinfo(self, level: int) -> Union[CallFrame, NativeCall, None]:
        """The running function at ``level`` (0 is the current one)."""
        entries: List[Union[CallFrame, NativeCall]] = []
        natives = self.native_calls
        n = 0
        for depth, frame in enumerate(self.frames):
            while n < len(natives) and natives[n].frame_depth <= depth:
                entries.append(natives[n])
                n += 1
            entries.append(frame)
        entries.extend(natives[n:])
        index = len(entries) - 1 - level
        if 0 <= index < len(entries):
            return entries[index]
        return None

    # ---- Coroutines ----

    def newthread(self) -> "LuaState":
        thread = self.G.heap.register(LuaState(self.G))
        self.stack.append(thread)
        return thread

    def _resume_error(self, message: str, nargs: int) -> Tuple[int, int]:
        del self.stack[len(self.stack) - nargs:]
        self.stack.append(message)
        return LUA_ERRRUN, 1

    def resume(self, from_: Optional["LuaState"], nargs: int) -> Tuple[int, int]:
        """Start or continue this coroutine with the top nargs values.

        Returns ``(status, nresults)``; the results (yielded values, return
        values or the error object) are the top values of this thread.
        """
        G = self.G
        if self.status == LUA_OK:
            if self in G.running or self.frames or self.native_calls or self is G.main:
                return self._resume_error("cannot resume non-suspended coroutine", nargs)
            if len(self.stack) - nargs < 1:
                return self._resume_error("cannot resume dead coroutine", nargs)
        elif self.status != LUA_YIELD:
            return self._resume_error("cannot resume dead coroutine", nargs)
        if G.c_calls >= vm.LUAI_MAXCCALLS:
            return self._resume_error("C stack overflow", nargs)

        outermost = G.protected == 0 and G.deadline is None
        if outermost and G.time_limit is not None:
            G.deadline = time.monotonic() + G.time_limit
        G.protected += 1
        G.c_calls += 1
        G.running.append(self)
        status = LUA_OK
        value: Any = None
        try:
            if self.status == LUA_OK:
                vm.call_at(self, len(self.stack) - nargs - 1, LUA_MULTRET, yieldable=True)
            else:
                self.status = LUA_OK
                vm.finish_native_call(self, nargs)
        except LuaYield as y:
            self.status = LUA_YIELD
            return LUA_YIELD, y.nresults
        except TimeLimitError as e:
            self.status = e.status
            if not outermost:
                raise
            status, value = e.status, e.value
        except LuaError as e:
            status, value = e.status, e.value
        except RecursionError:
            status, value = LUA_ERRRUN, "stack overflow"
        finally:
            G.running.pop()
            G.protected -= 1
            G.c_calls -= 1
            if outermost:
                G.deadline = None

        if status == LUA_OK:
            return LUA_OK, len(self.stack)
        self.status = status
        self.frames = []
        self.native_calls = []
        self.base = 0
        self.stack = [value]
        return status, 1

    def yield_(self, nresults: int) -> int:
        """Suspend the running coroutine, yielding the top nresults values."""
        if self.nny > 0:
            if self is self.G.main:
                raise LuaError("attempt to yield from outside a coroutine")
            raise LuaError("attempt to yield across a C-call boundary")
        raise LuaYield(nresults)

    def isyieldable(self) -> bool:
        return self.nny == 0

    # ---- Upvalues ----

    def getupvalue(self, funcindex: int, n: int) -> Optional[str]:
        """Push upvalue n of a function and return its name, or None."""
        func = self.index2value(funcindex)
        if isinstance(func, LuaClosure):
            if 1 <= n <= len(func.upvals):
                self.stack.append(func.upvals[n - 1].value)
                return func.proto.upvalues[n - 1].name
        elif isinstance(func, PyFunction):
            if 1 <= n <= len(func.upvalues):
                self.stack.append(func.upvalues[n - 1])
                return ""
        return None

    def setupvalue(self, funcindex: int, n: int) -> Optional[str]:
        """Pop a value into upvalue n of a function; return its name, or None."""
        func = self.index2value(funcindex)
        if isinstance(func, LuaClosure):
            if 1 <= n <= len(func.upvals):
                func.upvals[n - 1].value = self.stack.pop()
                return func.proto.upvalues[n - 1].name
        elif isinstance(func, PyFunction):
            if 1 <= n <= len(func.upvalues):
                func.upvalues[n - 1] = self.stack.pop()
                return ""
        return None

    # ---- Misc ----

    @_protect
    def next(self, idx: int) -> bool:
        """Pop a key and push the next key-value pair; False at the end."""
        table = self.index2value(idx)
        entry = table.next(self.stack.pop())
        if entry is None:
            return False
        self.stack.extend(entry)
        return True

    def gc(self, what: int, data: int = 0) -> int:
        """Control the collector; option codes and results follow lua_gc."""
        heap = self.G.heap
        if what == LUA_GCSTOP:
            heap.running = False
            return 0
        if what == LUA_GCRESTART:
            heap.running = True
            return 0
        if what == LUA_GCCOLLECT:
            heap.full_collect()
            return 0
        if what == LUA_GCCOUNT:
            return heap.total >> 10
        if what == LUA_GCCOUNTB:
            return heap.total & 0x3FF
        if what == LUA_GCSTEP:
            return 1 if heap.step(data) else 0
        if what == LUA_GCSETPAUSE:
            return heap.set_pause(data)
        if what == LUA_GCSETSTEPMUL:
            return heap.set_stepmul(data)
        if what == LUA_GCISRUNNING:
            return 1 if heap.running else 0
        return -1

    def close(self) -> None:
        """Destroy every object of the state and return all memory."""
        G = self.G
        if G.closed:
            return
        G.closed = True
        G.heap.close()
        main = G.main
        if main._block is not None:
            G.heap.free(main._block, main._block_size)
            main._block = None
        main.stack = []
        main.frames = []
        main.native_calls = []


def new_state(alloc: Optional[AllocFunction] = None, ud: Any = None) -> Optional[LuaState]:
    """Create a state whose memory comes from ``alloc(ud, ptr, osize, nsize)``.

    Returns None if the allocator refuses the initial allocations.
    """
    heap = Heap(alloc or default_alloc, ud)
    G = GlobalState(heap)
    L = LuaState(G)
    try:
        L._block = heap.allocate(None, LUA_TTHREAD, THREAD_SIZE)
    except LuaMemoryError:
        return None
    L._block_size = THREAD_SIZE
    L._heap = heap
    # The main thread can never yield
    L.nny = 1
    G.main = L
    try:
        registry = heap.register(LuaTable(2, 0))
        globals_table = heap.register(LuaTable())
        G.registry = registry
        registry.set(LUA_RIDX_MAINTHREAD, L)
        registry.set(LUA_RIDX_GLOBALS, globals_table)
    except LuaMemoryError:
        L.close()
        return None
    return L
