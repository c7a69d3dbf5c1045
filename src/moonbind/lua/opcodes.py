"""Bytecode opcodes for the Lua VM."""

from enum import IntEnum, auto
from typing import List


class OpCode(IntEnum):
    """Bytecode operation codes."""

    # Stack operations
    POP = auto()          # Pop and discard top of stack
    DUP = auto()          # Duplicate top of stack

    # Constants
    LOAD_NIL = auto()
    LOAD_TRUE = auto()
    LOAD_FALSE = auto()
    LOAD_CONST = auto()   # arg = constant index

    # Variables
    LOAD_LOCAL = auto()   # arg = slot
    STORE_LOCAL = auto()  # arg = slot
    NEW_CELL = auto()     # Store top in a fresh cell: arg = slot
    LOAD_CELL = auto()    # arg = slot holding a cell
    STORE_CELL = auto()   # arg = slot holding a cell
    GET_UPVAL = auto()    # arg = upvalue index
    SET_UPVAL = auto()    # arg = upvalue index

    # Tables
    GET_TABLE = auto()    # obj, key -> value
    SET_TABLE = auto()    # obj, key, value ->
    STORE_INDEX = auto()  # value -> ; args = slot of table, slot of key
    SELF = auto()         # obj -> obj[k], obj: arg = constant index of method name
    NEW_TABLE = auto()    # args = array size hint, hash size hint
    SET_FIELD = auto()    # table, key, value -> table
    SET_LIST = auto()     # table, v1..vn -> table: args = first index, n
    SET_LIST_MULTI = auto()  # table, v1..vn, n -> table: arg = first index

    # Arithmetic
    ADD = auto()
    SUB = auto()
    MUL = auto()
    DIV = auto()
    IDIV = auto()
    MOD = auto()
    POW = auto()
    CONCAT = auto()
    UNM = auto()          # Unary minus

    # Bitwise
    BAND = auto()
    BOR = auto()
    BXOR = auto()
    SHL = auto()
    SHR = auto()
    BNOT = auto()

    # Comparison
    EQ = auto()
    NE = auto()
    LT = auto()
    LE = auto()
    GT = auto()
    GE = auto()

    # Other unary
    NOT = auto()
    LEN = auto()

    # Control flow
    JUMP = auto()                # arg = target
    JUMP_IF_FALSE = auto()       # Pop, jump if falsy
    JUMP_IF_TRUE = auto()        # Pop, jump if truthy
    JUMP_IF_FALSE_KEEP = auto()  # Jump keeping the value if falsy, else pop
    JUMP_IF_TRUE_KEEP = auto()   # Jump keeping the value if truthy, else pop

    # Calls
    CALL = auto()         # func, args -> results: args = nargs, nresults (-1 = all + count)
    CALL_MULTI = auto()   # func, args, count -> results: args = fixed nargs, nresults
    RETURN = auto()       # arg = number of values
    RETURN_MULTI = auto() # values, count: arg = fixed number of values
    VARARG = auto()       # arg = wanted (-1 = all + count)
    CLOSURE = auto()      # arg = index of nested prototype

    # Loops
    FORPREP = auto()      # start, limit, step -> : args = base slot, exit target
    FORLOOP = auto()      # args = base slot, body target
    TFORCALL = auto()     # args = base slot, number of variables
    TFORLOOP = auto()     # args = base slot, number of variables, exit target


# Number of inline operands following each opcode
ARG_COUNT = {op: 0 for op in OpCode}
ARG_COUNT.update({
    OpCode.LOAD_CONST: 1,
    OpCode.LOAD_LOCAL: 1,
    OpCode.STORE_LOCAL: 1,
    OpCode.NEW_CELL: 1,
    OpCode.LOAD_CELL: 1,
    OpCode.STORE_CELL: 1,
    OpCode.GET_UPVAL: 1,
    OpCode.SET_UPVAL: 1,
    OpCode.STORE_INDEX: 2,
    OpCode.SELF: 1,
    OpCode.NEW_TABLE: 2,
    OpCode.SET_LIST: 2,
    OpCode.SET_LIST_MULTI: 1,
    OpCode.JUMP: 1,
    OpCode.JUMP_IF_FALSE: 1,
    OpCode.JUMP_IF_TRUE: 1,
    OpCode.JUMP_IF_FALSE_KEEP: 1,
    OpCode.JUMP_IF_TRUE_KEEP: 1,
    OpCode.CALL: 2,
    OpCode.CALL_MULTI: 2,
    OpCode.RETURN: 1,
    OpCode.RETURN_MULTI: 1,
    OpCode.VARARG: 1,
    OpCode.CLOSURE: 1,
    OpCode.FORPREP: 2,
    OpCode.FORLOOP: 2,
    OpCode.TFORCALL: 2,
    OpCode.TFORLOOP: 3,
})

JUMP_OPCODES = frozenset([
    OpCode.JUMP, OpCode.JUMP_IF_FALSE, OpCode.JUMP_IF_TRUE,
    OpCode.JUMP_IF_FALSE_KEEP, OpCode.JUMP_IF_TRUE_KEEP,
])


def disassemble(code: List[int], constants: list) -> str:
    """Disassemble bytecode for debugging."""
    lines = []
    i = 0
    while i < len(code):
        op = OpCode(code[i])
        nargs = ARG_COUNT[op]
        args = code[i + 1:i + 1 + nargs]
        line = f"{i:4d}: {op.name}"
        if args:
            line += " " + " ".join(str(a) for a in args)
        if op == OpCode.LOAD_CONST or op == OpCode.SELF:
            line += f" ({constants[args[0]]!r})"
        lines.append(line)
        i += 1 + nargs
    return "\n".join(lines)
