"""Virtual machine for executing Lua bytecode.

Lua-to-Lua calls push a ``CallFrame`` and continue in the same loop, so
only calls that enter the VM from Python (API calls, metamethods) nest
Python frames. Host functions run on the thread's value stack with the
calling convention of the C API: arguments above ``L.base``, the number
of results returned.
"""

import math
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from .opcodes import OpCode, ARG_COUNT
from .errors import LuaError, TimeLimitError, runtime_error
from .values import (
    Cell, LuaTable, LuaClosure, PyFunction, Userdata,
    MAXINTEGER, MININTEGER,
    type_name, type_of, is_falsy, raw_equal, to_number, to_integer,
    number_to_string, wrap_integer, string_size,
)


# Frames of Lua functions on one thread
MAX_FRAMES = 100000
# Nesting of calls that re-enter the VM from Python
LUAI_MAXCCALLS = 80
# Metamethod chains (__index, __newindex) longer than this are loops
MAXTAGLOOP = 2000
# Instructions between time limit checks
CHECK_INTERVAL = 1000


@dataclass
class CallFrame:
    """Call frame of a Lua function."""
    closure: LuaClosure
    slots: List[Any]
    varargs: List[Any]
    nresults: int  # Results wanted by the caller (-1: all + count)
    entry: bool    # Entered from Python: results go to the thread stack
    func_idx: int = 0
    stack: List[Any] = field(default_factory=list)
    pc: int = 0
    last_pc: int = 0


@dataclass
class NativeCall:
    """A running host function."""
    func: PyFunction
    func_idx: int
    old_base: int
    nresults: int
    from_vm: bool    # Called by the interpreter loop of the top frame
    frame_depth: int


ARITH_EVENTS = {
    OpCode.ADD: "__add",
    OpCode.SUB: "__sub",
    OpCode.MUL: "__mul",
    OpCode.DIV: "__div",
    OpCode.IDIV: "__idiv",
    OpCode.MOD: "__mod",
    OpCode.POW: "__pow",
    OpCode.BAND: "__band",
    OpCode.BOR: "__bor",
    OpCode.BXOR: "__bxor",
    OpCode.SHL: "__shl",
    OpCode.SHR: "__shr",
    OpCode.CONCAT: "__concat",
}

BITWISE_OPS = frozenset([OpCode.BAND, OpCode.BOR, OpCode.BXOR, OpCode.SHL, OpCode.SHR])


# ---- Metatables ----

def get_metatable(L, value: Any) -> Optional[LuaTable]:
    if isinstance(value, (LuaTable, Userdata)):
        return value.metatable
    return L.G.type_metatables.get(type_of(value))


def get_metamethod(L, value: Any, event: str) -> Any:
    mt = get_metatable(L, value)
    if mt is None:
        return None
    return mt.get_str(event)


def is_function(value: Any) -> bool:
    return isinstance(value, (LuaClosure, PyFunction))


def type_error(value: Any, operation: str, info: Optional[str] = None) -> LuaError:
    message = f"attempt to {operation} a {type_name(value)} value"
    if info:
        message += f" ({info})"
    return runtime_error(message)


def _info(varinfo: Optional[Tuple[Optional[str], ...]], index: int) -> Optional[str]:
    if varinfo is None or index >= len(varinfo):
        return None
    return varinfo[index]


# ---- Indexing ----

def index_value(L, obj: Any, key: Any, info: Optional[str] = None) -> Any:
    """obj[key] with ``__index`` metamethods."""
    for _ in range(MAXTAGLOOP):
        if type(obj) is LuaTable:
            value = obj.get(key)
            if value is not None:
                return value
            mt = obj.metatable
            if mt is None:
                return None
            handler = mt.get_str("__index")
            if handler is None:
                return None
        else:
            handler = get_metamethod(L, obj, "__index")
            if handler is None:
                raise type_error(obj, "index", info)
        if is_function(handler):
            return call_function(L, handler, [obj, key], 1)[0]
        obj = handler
        info = None
    raise runtime_error("'__index' chain too long; possible loop")


def set_index(L, obj: Any, key: Any, value: Any, info: Optional[str] = None) -> None:
    """obj[key] = value with ``__newindex`` metamethods."""
    for _ in range(MAXTAGLOOP):
        if type(obj) is LuaTable:
            mt = obj.metatable
            handler = None
            if mt is not None and obj.get(key) is None:
                handler = mt.get_str("__newindex")
            if handler is None:
                obj.set(key, value)
                return
        else:
            handler = get_metamethod(L, obj, "__newindex")
            if handler is None:
                raise type_error(obj, "index", info)
        if is_function(handler):
            call_function(L, handler, [obj, key, value], 0)
            return
        obj = handler
        info = None
    raise runtime_error("'__newindex' chain too long; possible loop")


# ---- Arithmetic ----

def _shift_left(a: int, b: int) -> int:
    if b <= -64 or b >= 64:
        return 0
    if b >= 0:
        return wrap_integer((a << b) & 0xFFFFFFFFFFFFFFFF)
    return wrap_integer((a & 0xFFFFFFFFFFFFFFFF) >> -b)


def _float_floor(value: float) -> float:
    if math.isinf(value) or value != value:
        return value
    return float(math.floor(value))


def _float_mod(a: float, b: float) -> float:
    if b == 0 or math.isinf(a) or a != a or b != b:
        return math.nan
    if math.isinf(b):
        result = a
    else:
        result = math.fmod(a, b)
    if result != 0 and (result < 0) != (b < 0):
        result += b
    return result


def _float_div(a: float, b: float) -> float:
    if b == 0:
        if a == 0 or a != a:
            return math.nan
        negative = (a < 0) != (math.copysign(1.0, b) < 0)
        return -math.inf if negative else math.inf
    return a / b


def _pow(a: float, b: float) -> float:
    try:
        return math.pow(a, b)
    except OverflowError:
        return math.inf
    except ValueError:
        # C pow gives inf for a zero base with a negative exponent
        return math.inf if a == 0 else math.nan


def arith_numbers(op: OpCode, a: Any, b: Any) -> Any:
    """Apply an arithmetic operator to two numbers."""
    both_int = type(a) is int and type(b) is int
    if op == OpCode.ADD:
        return wrap_integer(a + b) if both_int else float(a) + float(b)
    if op == OpCode.SUB:
        return wrap_integer(a - b) if both_int else float(a) - float(b)
    if op == OpCode.MUL:
        return wrap_integer(a * b) if both_int else float(a) * float(b)
    if op == OpCode.DIV:
        return _float_div(float(a), float(b))
    if op == OpCode.POW:
        return _pow(float(a), float(b))
    if op == OpCode.IDIV:
        if both_int:
            if b == 0:
                raise runtime_error("attempt to perform 'n//0'")
            return wrap_integer(a // b)
        return _float_floor(_float_div(float(a), float(b)))
    if op == OpCode.MOD:
        if both_int:
            if b == 0:
                raise runtime_error("attempt to perform 'n%0'")
            return a % b
        return _float_mod(float(a), float(b))
    raise ValueError(f"Not an arithmetic operator: {op}")


def bitwise_integers(op: OpCode, a: int, b: int) -> int:
    if op == OpCode.BAND:
        return a & b
    if op == OpCode.BOR:
        return a | b
    if op == OpCode.BXOR:
        return a ^ b
    if op == OpCode.SHL:
        return _shift_left(a, b)
    if op == OpCode.SHR:
        return _shift_left(a, -b)
    raise ValueError(f"Not a bitwise operator: {op}")


def _coerce_integer(value: Any) -> Optional[int]:
    if type(value) is str:
        number = to_number(value)
        return None if number is None else to_integer(number)
    return to_integer(value) if type(value) in (int, float) else None


def arith(L, op: OpCode, a: Any, b: Any, varinfo: Any = None) -> Any:
    """Binary arithmetic, bitwise and concatenation with metamethods."""
    if op == OpCode.CONCAT:
        return concat_values(L, a, b, varinfo)
    if op in BITWISE_OPS:
        ia, ib = _coerce_integer(a), _coerce_integer(b)
        if ia is not None and ib is not None:
            return bitwise_integers(op, ia, ib)
    else:
        na = to_number(a)
        nb = to_number(b)
        if na is not None and nb is not None:
            return arith_numbers(op, na, nb)
    handler = get_metamethod(L, a, ARITH_EVENTS[op])
    if handler is None:
        handler = get_metamethod(L, b, ARITH_EVENTS[op])
    if handler is not None:
        return call_function(L, handler, [a, b], 1)[0]
    if op in BITWISE_OPS:
        if _is_number(a) and _is_number(b):
            raise runtime_error("number has no integer representation")
        bad = 1 if _is_number(a) or (type(a) is str and to_number(a) is not None) else 0
        operand = b if bad else a
        raise type_error(operand, "perform bitwise operation on", _info(varinfo, bad))
    bad = 1 if to_number(a) is not None else 0
    operand = b if bad else a
    raise type_error(operand, "perform arithmetic on", _info(varinfo, bad))


def _is_number(value: Any) -> bool:
    return type(value) is int or type(value) is float


def _tostring_for_concat(value: Any) -> Optional[str]:
    if type(value) is str:
        return value
    if _is_number(value):
        return number_to_string(value)
    return None


def concat_values(L, a: Any, b: Any, varinfo: Any = None) -> Any:
    sa = _tostring_for_concat(a)
    sb = _tostring_for_concat(b)
    if sa is not None and sb is not None:
        result = sa + sb
        L.G.heap.charge_string(string_size(result))
        return result
    handler = get_metamethod(L, a, "__concat")
    if handler is None:
        handler = get_metamethod(L, b, "__concat")
    if handler is not None:
        return call_function(L, handler, [a, b], 1)[0]
    bad = 1 if sa is not None else 0
    raise type_error(b if bad else a, "concatenate", _info(varinfo, bad))


def unary_minus(L, a: Any, varinfo: Any = None) -> Any:
    if type(a) is int:
        return wrap_integer(-a)
    if type(a) is float:
        return -a
    number = to_number(a) if type(a) is str else None
    if number is not None:
        return unary_minus(L, number)
    handler = get_metamethod(L, a, "__unm")
    if handler is not None:
        return call_function(L, handler, [a, a], 1)[0]
    raise type_error(a, "perform arithmetic on", _info(varinfo, 0))


def bitwise_not(L, a: Any, varinfo: Any = None) -> Any:
    value = _coerce_integer(a)
    if value is not None:
        return ~value
    handler = get_metamethod(L, a, "__bnot")
    if handler is not None:
        return call_function(L, handler, [a, a], 1)[0]
    if _is_number(a):
        raise runtime_error("number has no integer representation")
    raise type_error(a, "perform bitwise operation on", _info(varinfo, 0))


def length_of(L, value: Any, varinfo: Any = None) -> Any:
    """The ``#`` operator."""
    if type(value) is str:
        return len(value)
    handler = get_metamethod(L, value, "__len")
    if handler is not None:
        return call_function(L, handler, [value], 1)[0]
    if type(value) is LuaTable:
        return value.length()
    raise type_error(value, "get length of", _info(varinfo, 0))


# ---- Comparison ----

def _compare_error(a: Any, b: Any) -> LuaError:
    t1, t2 = type_name(a), type_name(b)
    if t1 == t2:
        return runtime_error(f"attempt to compare two {t1} values")
    return runtime_error(f"attempt to compare {t1} with {t2}")


def values_equal(L, a: Any, b: Any) -> bool:
    """The ``==`` operator."""
    if raw_equal(a, b):
        return True
    ta = type(a)
    if ta is not type(b) or ta not in (LuaTable, Userdata):
        return False
    handler = get_metamethod(L, a, "__eq")
    if handler is None:
        handler = get_metamethod(L, b, "__eq")
    if handler is None:
        return False
    return not is_falsy(call_function(L, handler, [a, b], 1)[0])


def less_than(L, a: Any, b: Any) -> bool:
    if _is_number(a) and _is_number(b):
        return a < b
    if type(a) is str and type(b) is str:
        return a < b
    handler = get_metamethod(L, a, "__lt")
    if handler is None:
        handler = get_metamethod(L, b, "__lt")
    if handler is None:
        raise _compare_error(a, b)
    return not is_falsy(call_function(L, handler, [a, b], 1)[0])


def less_equal(L, a: Any, b: Any) -> bool:
    if _is_number(a) and _is_number(b):
        return a <= b
    if type(a) is str and type(b) is str:
        return a <= b
    handler = get_metamethod(L, a, "__le")
    if handler is None:
        handler = get_metamethod(L, b, "__le")
    if handler is not None:
        return not is_falsy(call_function(L, handler, [a, b], 1)[0])
    handler = get_metamethod(L, a, "__lt")
    if handler is None:
        handler = get_metamethod(L, b, "__lt")
    if handler is None:
        raise _compare_error(a, b)
    return is_falsy(call_function(L, handler, [b, a], 1)[0])


# ---- Loops ----

def _for_limit(limit: Any, step: int) -> Optional[int]:
    """Integer limit of an integer loop, or None if the loop must not run."""
    if type(limit) is int:
        return limit
    if type(limit) is not float:
        raise runtime_error("'for' limit must be a number")
    if limit != limit:
        return None
    if limit >= 2**63:
        return MAXINTEGER
    if limit < -2**63:
        return MININTEGER
    return math.floor(limit) if step > 0 else math.ceil(limit)


def _for_prep(init: Any, limit: Any, step: Any) -> Optional[Tuple[Any, Any, Any]]:
    """Validate loop parameters; None when the body never runs."""
    if type(init) is int and type(step) is int:
        if step == 0:
            raise runtime_error("'for' step is zero")
        ilimit = _for_limit(limit, step)
        if ilimit is None or (init > ilimit if step > 0 else init < ilimit):
            return None
        return init, ilimit, step
    if not _is_number(limit):
        raise runtime_error("'for' limit must be a number")
    if not _is_number(step):
        raise runtime_error("'for' step must be a number")
    if not _is_number(init):
        raise runtime_error("'for' initial value must be a number")
    init, limit, step = float(init), float(limit), float(step)
    if step == 0:
        raise runtime_error("'for' step is zero")
    if init > limit if step > 0 else init < limit:
        return None
    return init, limit, step


# ---- Calls ----

def new_frame(closure: LuaClosure, args: List[Any], nresults: int, entry: bool) -> CallFrame:
    proto = closure.proto
    slots = [None] * proto.num_slots
    nparams = proto.num_params
    count = min(nparams, len(args))
    slots[0:count] = args[0:count]
    varargs = args[nparams:] if proto.is_vararg else []
    return CallFrame(closure, slots, varargs, nresults, entry)


def push_results(stack: List[Any], results: List[Any], nresults: int) -> None:
    """Push results adjusted to ``nresults`` (-1: all of them and their count)."""
    if nresults < 0:
        stack.extend(results)
        stack.append(len(results))
    elif len(results) >= nresults:
        stack.extend(results[:nresults])
    else:
        stack.extend(results)
        stack.extend([None] * (nresults - len(results)))


def resolve_callable(L, func: Any, args: List[Any], info: Optional[str] = None) -> Any:
    """Follow ``__call`` until a function is found, prepending to ``args``."""
    for _ in range(MAXTAGLOOP):
        if is_function(func):
            return func
        handler = get_metamethod(L, func, "__call")
        if handler is None:
            raise type_error(func, "call", info)
        args.insert(0, func)
        func = handler
        info = None
    raise runtime_error("'__call' chain too long; possible loop")


def call_native(L, func: PyFunction, func_idx: int, nresults: int, from_vm: bool) -> List[Any]:
    """Run a host function whose arguments sit above ``func_idx``."""
    stack = L.stack
    record = NativeCall(func, func_idx, L.base, nresults, from_vm, len(L.frames))
    L.native_calls.append(record)
    L.base = func_idx + 1
    n = func.fn(L)
    if n is None:
        n = 0
    top = len(stack)
    if n > top - L.base:
        raise runtime_error("not enough elements in the stack")
    results = stack[top - n:] if n else []
    del stack[func_idx:]
    L.base = record.old_base
    L.native_calls.pop()
    return results


def call_at(L, func_idx: int, nresults: int, yieldable: bool = False) -> None:
    """Call the function at ``L.stack[func_idx]`` with the values above it.

    Leaves the results (adjusted to ``nresults`` unless it is -1) at
    ``func_idx``. Unless ``yieldable``, the callee may not yield.
    """
    G = L.G
    if G.c_calls >= LUAI_MAXCCALLS:
        raise runtime_error("C stack overflow")
    G.c_calls += 1
    if not yieldable:
        L.nny += 1
    try:
        stack = L.stack
        func = stack[func_idx]
        if not is_function(func):
            args = stack[func_idx + 1:]
            func = resolve_callable(L, func, args)
            del stack[func_idx:]
            stack.append(func)
            stack.extend(args)
        if isinstance(func, LuaClosure):
            if len(L.frames) >= MAX_FRAMES:
                raise runtime_error("stack overflow")
            args = stack[func_idx + 1:]
            del stack[func_idx:]
            frame = new_frame(func, args, -1, True)
            frame.func_idx = func_idx
            L.frames.append(frame)
            execute(L)
        else:
            results = call_native(L, func, func_idx, -1, False)
            stack.extend(results)
        if nresults >= 0:
            count = len(stack) - func_idx
            if count < nresults:
                stack.extend([None] * (nresults - count))
            elif count > nresults:
                del stack[func_idx + nresults:]
    finally:
        G.c_calls -= 1
        if not yieldable:
            L.nny -= 1


def call_function(L, func: Any, args: List[Any], nresults: int) -> List[Any]:
    """Call ``func`` from Python and return its results as a list."""
    stack = L.stack
    func_idx = len(stack)
    stack.append(func)
    stack.extend(args)
    call_at(L, func_idx, nresults)
    results = stack[func_idx:]
    del stack[func_idx:]
    return results


def finish_native_call(L, nargs: int) -> None:
    """Complete the host call a coroutine yielded from, with the resume arguments."""
    stack = L.stack
    record = L.native_calls.pop()
    results = stack[len(stack) - nargs:] if nargs else []
    del stack[record.func_idx:]
    L.base = record.old_base
    if record.from_vm:
        push_results(L.frames[-1].stack, results, record.nresults)
        execute(L)
    else:
        stack.extend(results)


def current_line(frame: CallFrame) -> int:
    return frame.closure.proto.lines[frame.last_pc]


def _position(frame: CallFrame, pc: int) -> str:
    proto = frame.closure.proto
    return f"{proto.source}:{proto.lines[pc]}:"


# ---- Interpreter loop ----

def execute(L) -> None:
    """Run the top frame of ``L`` until the frame entered from Python returns."""
    G = L.G
    heap = G.heap
    frames = L.frames
    frame = frames[-1]
    closure = frame.closure
    proto = closure.proto
    code = proto.code
    constants = proto.constants
    slots = frame.slots
    stack = frame.stack
    pc = frame.pc
    op_pc = pc
    counter = 0

    try:
        while True:
            op_pc = pc
            op = code[pc]
            nargs = ARG_COUNT[op]
            if nargs == 1:
                arg = code[pc + 1]
            elif nargs:
                arg = code[pc + 1]
                arg2 = code[pc + 2]
            pc += 1 + nargs

            counter += 1
            if counter >= CHECK_INTERVAL:
                counter = 0
                if G.deadline is not None and time.monotonic() > G.deadline:
                    raise TimeLimitError()

            # Stack and variables
            if op == OpCode.LOAD_LOCAL:
                stack.append(slots[arg])

            elif op == OpCode.STORE_LOCAL:
                slots[arg] = stack.pop()

            elif op == OpCode.LOAD_CONST:
                stack.append(constants[arg])

            elif op == OpCode.LOAD_CELL:
                stack.append(slots[arg].value)

            elif op == OpCode.STORE_CELL:
                slots[arg].value = stack.pop()

            elif op == OpCode.NEW_CELL:
                slots[arg] = Cell(stack.pop())

            elif op == OpCode.GET_UPVAL:
                stack.append(closure.upvals[arg].value)

            elif op == OpCode.SET_UPVAL:
                closure.upvals[arg].value = stack.pop()

            elif op == OpCode.LOAD_NIL:
                stack.append(None)

            elif op == OpCode.LOAD_TRUE:
                stack.append(True)

            elif op == OpCode.LOAD_FALSE:
                stack.append(False)

            elif op == OpCode.POP:
                stack.pop()

            elif op == OpCode.DUP:
                stack.append(stack[-1])

            # Tables
            elif op == OpCode.GET_TABLE:
                key = stack.pop()
                obj = stack.pop()
                if type(obj) is LuaTable:
                    value = obj.get(key)
                    if value is None and obj.metatable is not None:
                        frame.pc, frame.last_pc = pc, op_pc
                        value = index_value(L, obj, key)
                    stack.append(value)
                else:
                    frame.pc, frame.last_pc = pc, op_pc
                    stack.append(index_value(L, obj, key, _info(proto.varinfo.get(op_pc), 0)))

            elif op == OpCode.SET_TABLE:
                value = stack.pop()
                key = stack.pop()
                obj = stack.pop()
                frame.pc, frame.last_pc = pc, op_pc
                if type(obj) is LuaTable and obj.metatable is None:
                    obj.set(key, value)
                else:
                    set_index(L, obj, key, value, _info(proto.varinfo.get(op_pc), 0))

            elif op == OpCode.STORE_INDEX:
                value = stack.pop()
                frame.pc, frame.last_pc = pc, op_pc
                set_index(L, slots[arg], slots[arg2], value, _info(proto.varinfo.get(op_pc), 0))

            elif op == OpCode.SELF:
                obj = stack.pop()
                frame.pc, frame.last_pc = pc, op_pc
                stack.append(index_value(L, obj, constants[arg], _info(proto.varinfo.get(op_pc), 0)))
                stack.append(obj)

            elif op == OpCode.NEW_TABLE:
                frame.pc, frame.last_pc = pc, op_pc
                heap.check()
                stack.append(heap.register(LuaTable(arg, arg2)))

            elif op == OpCode.SET_FIELD:
                value = stack.pop()
                key = stack.pop()
                stack[-1].set(key, value)

            elif op == OpCode.SET_LIST:
                split = len(stack) - arg2
                values = stack[split:]
                del stack[split:]
                table = stack[-1]
                for i, value in enumerate(values):
                    table.set(arg + i, value)

            elif op == OpCode.SET_LIST_MULTI:
                count = stack.pop()
                split = len(stack) - count
                values = stack[split:]
                del stack[split:]
                table = stack[-1]
                for i, value in enumerate(values):
                    table.set(arg + i, value)

            # Arithmetic
            elif op == OpCode.ADD or op == OpCode.SUB or op == OpCode.MUL:
                b = stack.pop()
                a = stack.pop()
                if type(a) is int and type(b) is int:
                    if op == OpCode.ADD:
                        result = a + b
                    elif op == OpCode.SUB:
                        result = a - b
                    else:
                        result = a * b
                    if not MININTEGER <= result <= MAXINTEGER:
                        result = wrap_integer(result)
                    stack.append(result)
                else:
                    frame.pc, frame.last_pc = pc, op_pc
                    stack.append(arith(L, op, a, b, proto.varinfo.get(op_pc)))

            elif op in ARITH_EVENTS:
                b = stack.pop()
                a = stack.pop()
                frame.pc, frame.last_pc = pc, op_pc
                stack.append(arith(L, op, a, b, proto.varinfo.get(op_pc)))

            elif op == OpCode.UNM:
                frame.pc, frame.last_pc = pc, op_pc
                stack.append(unary_minus(L, stack.pop(), proto.varinfo.get(op_pc)))

            elif op == OpCode.BNOT:
                frame.pc, frame.last_pc = pc, op_pc
                stack.append(bitwise_not(L, stack.pop(), proto.varinfo.get(op_pc)))

            elif op == OpCode.NOT:
                stack.append(is_falsy(stack.pop()))

            elif op == OpCode.LEN:
                frame.pc, frame.last_pc = pc, op_pc
                stack.append(length_of(L, stack.pop(), proto.varinfo.get(op_pc)))

            # Comparison
            elif op == OpCode.EQ or op == OpCode.NE:
                b = stack.pop()
                a = stack.pop()
                frame.pc, frame.last_pc = pc, op_pc
                result = values_equal(L, a, b)
                stack.append(result if op == OpCode.EQ else not result)

            elif op == OpCode.LT or op == OpCode.LE or op == OpCode.GT or op == OpCode.GE:
                b = stack.pop()
                a = stack.pop()
                frame.pc, frame.last_pc = pc, op_pc
                if op == OpCode.LT:
                    stack.append(less_than(L, a, b))
                elif op == OpCode.LE:
                    stack.append(less_equal(L, a, b))
                elif op == OpCode.GT:
                    stack.append(less_than(L, b, a))
                else:
                    stack.append(less_equal(L, b, a))

            # Control flow
            elif op == OpCode.JUMP:
                pc = arg

            elif op == OpCode.JUMP_IF_FALSE:
                if is_falsy(stack.pop()):
                    pc = arg

            elif op == OpCode.JUMP_IF_TRUE:
                if not is_falsy(stack.pop()):
                    pc = arg

            elif op == OpCode.JUMP_IF_FALSE_KEEP:
                if is_falsy(stack[-1]):
                    pc = arg
                else:
                    stack.pop()

            elif op == OpCode.JUMP_IF_TRUE_KEEP:
                if not is_falsy(stack[-1]):
                    pc = arg
                else:
                    stack.pop()

            # Loops
            elif op == OpCode.FORPREP:
                step = stack.pop()
                limit = stack.pop()
                init = stack.pop()
                frame.pc, frame.last_pc = pc, op_pc
                prepared = _for_prep(init, limit, step)
                if prepared is None:
                    pc = arg2
                else:
                    slots[arg], slots[arg + 1], slots[arg + 2] = prepared

            elif op == OpCode.FORLOOP:
                step = slots[arg + 2]
                index = slots[arg] + step
                if index <= slots[arg + 1] if step > 0 else index >= slots[arg + 1]:
                    slots[arg] = index
                    pc = arg2

            elif op == OpCode.TFORLOOP:
                arg3 = code[op_pc + 3]
                first = stack[-arg2]
                if first is None:
                    del stack[-arg2:]
                    pc = arg3
                else:
                    slots[arg + 2] = first

            # Calls
            elif op == OpCode.CALL or op == OpCode.CALL_MULTI or op == OpCode.TFORCALL:
                if op == OpCode.TFORCALL:
                    func = slots[arg]
                    args = [slots[arg + 1], slots[arg + 2]]
                    nresults = arg2
                else:
                    count = arg
                    if op == OpCode.CALL_MULTI:
                        count += stack.pop()
                    split = len(stack) - count
                    args = stack[split:]
                    del stack[split:]
                    func = stack.pop()
                    nresults = arg2
                frame.pc, frame.last_pc = pc, op_pc
                if not is_function(func):
                    func = resolve_callable(L, func, args, _info(proto.varinfo.get(op_pc), 0))
                if isinstance(func, LuaClosure):
                    if len(frames) >= MAX_FRAMES:
                        raise runtime_error("stack overflow")
                    frame = new_frame(func, args, nresults, False)
                    frames.append(frame)
                    closure = func
                    proto = closure.proto
                    code = proto.code
                    constants = proto.constants
                    slots = frame.slots
                    stack = frame.stack
                    pc = 0
                else:
                    func_idx = len(L.stack)
                    L.stack.append(func)
                    L.stack.extend(args)
                    results = call_native(L, func, func_idx, nresults, True)
                    push_results(stack, results, nresults)

            elif op == OpCode.RETURN or op == OpCode.RETURN_MULTI:
                count = arg
                if op == OpCode.RETURN_MULTI:
                    count += stack.pop()
                results = stack[len(stack) - count:] if count else []
                frames.pop()
                if frame.entry:
                    del L.stack[frame.func_idx:]
                    L.stack.extend(results)
                    return
                nresults = frame.nresults
                frame = frames[-1]
                closure = frame.closure
                proto = closure.proto
                code = proto.code
                constants = proto.constants
                slots = frame.slots
                stack = frame.stack
                pc = frame.pc
                push_results(stack, results, nresults)

            elif op == OpCode.VARARG:
                push_results(stack, frame.varargs, arg)

            elif op == OpCode.CLOSURE:
                frame.pc, frame.last_pc = pc, op_pc
                heap.check()
                child = proto.protos[arg]
                upvals = [
                    slots[desc.index] if desc.in_stack else closure.upvals[desc.index]
                    for desc in child.upvalues
                ]
                stack.append(heap.register(LuaClosure(child, upvals)))

            else:
                raise NotImplementedError(f"Unknown opcode: {op}")

    except LuaError as e:
        if not e.positioned:
            e.positioned = True
            if isinstance(e.value, str):
                e.value = f"{_position(frame, op_pc)} {e.value}"
                e.args = (e.value,)
        raise
