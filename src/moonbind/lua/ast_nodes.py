"""AST node types for the Lua parser.

Names are resolved while parsing, so the tree never contains a bare
identifier: a name is a local (``LocalName``), an upvalue (``UpvalueName``)
or an index into ``_ENV`` (``Index``).
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Union


@dataclass
class Node:
    """Base class for all AST nodes."""

    def to_dict(self) -> dict:
        """Convert node to dictionary for testing/serialization."""
        result = {"type": self.__class__.__name__}
        for key, value in self.__dict__.items():
            if isinstance(value, (Node, VarInfo)):
                result[key] = value.to_dict()
            elif isinstance(value, list):
                result[key] = [
                    v.to_dict() if isinstance(v, (Node, VarInfo)) else v
                    for v in value
                ]
            else:
                result[key] = value
        return result


@dataclass(eq=False)
class VarInfo:
    """A local variable declaration.

    ``captured`` is set when an inner function refers to the variable; the
    compiler then keeps it in a cell so every closure shares it.
    """

    name: str
    slot: int
    captured: bool = False

    def to_dict(self) -> dict:
        return {"name": self.name, "slot": self.slot, "captured": self.captured}


@dataclass
class UpvalueDesc:
    """Where a function finds an upvalue when its closure is created."""

    name: str
    in_stack: bool  # True: enclosing function's local slot, False: its upvalue
    index: int


# Literals
@dataclass
class NilLiteral(Node):
    """nil"""
    pass


@dataclass
class BooleanLiteral(Node):
    """true / false"""
    value: bool


@dataclass
class NumericLiteral(Node):
    """Numeric literal: 42, 3.14, 0xff"""
    value: Union[int, float]


@dataclass
class StringLiteral(Node):
    """String literal: "hello", [[long]]"""
    value: str


@dataclass
class Vararg(Node):
    """The ``...`` expression."""
    pass


# Names
@dataclass
class LocalName(Node):
    """Reference to a local variable of the current function."""
    var: VarInfo


@dataclass
class UpvalueName(Node):
    """Reference to an upvalue of the current function."""
    index: int
    name: str


# Expressions
@dataclass
class Index(Node):
    """Indexing: obj[key], obj.name, or a global name."""
    obj: Node
    key: Node
    line: int = 0
    name: Optional[str] = None  # Global name, for error messages


@dataclass
class Call(Node):
    """Function call: f(args)"""
    func: Node
    args: List[Node]
    line: int = 0


@dataclass
class MethodCall(Node):
    """Method call: obj:name(args)"""
    obj: Node
    name: str
    args: List[Node]
    line: int = 0


@dataclass
class BinaryExpression(Node):
    """Binary expression: a + b, a .. b, a < b, etc."""
    operator: str
    left: Node
    right: Node
    line: int = 0


@dataclass
class LogicalExpression(Node):
    """Logical expression: a and b, a or b"""
    operator: str  # "and" or "or"
    left: Node
    right: Node


@dataclass
class UnaryExpression(Node):
    """Unary expression: -x, not x, #x, ~x"""
    operator: str
    argument: Node
    line: int = 0


@dataclass
class Paren(Node):
    """Parenthesized expression; truncates multiple results to one."""
    expression: Node


@dataclass
class TableField(Node):
    """One field of a table constructor; ``key`` is None for positional."""
    key: Optional[Node]
    value: Node


@dataclass
class TableConstructor(Node):
    """Table constructor: {1, 2, x = 3, [k] = v}"""
    fields: List[TableField]
    line: int = 0


@dataclass
class FunctionExpression(Node):
    """Function body: function (params) ... end"""
    name: str
    params: List[VarInfo]
    is_vararg: bool
    body: "Block"
    upvalues: List[UpvalueDesc]
    num_slots: int
    line: int = 0
    last_line: int = 0


# Statements
@dataclass
class Block(Node):
    """A sequence of statements."""
    body: List[Node]


@dataclass
class LocalStatement(Node):
    """local a, b = x, y"""
    variables: List[VarInfo]
    values: List[Node]


@dataclass
class LocalFunction(Node):
    """local function f() ... end"""
    variable: VarInfo
    function: FunctionExpression


@dataclass
class AssignStatement(Node):
    """a, b.c, d[e] = x, y, z"""
    targets: List[Node]
    values: List[Node]
    line: int = 0


@dataclass
class CallStatement(Node):
    """A call used as a statement."""
    call: Node


@dataclass
class DoStatement(Node):
    """do ... end"""
    body: Block


@dataclass
class WhileStatement(Node):
    """while test do ... end"""
    test: Node
    body: Block


@dataclass
class RepeatStatement(Node):
    """repeat ... until test"""
    body: Block
    test: Node


@dataclass
class IfStatement(Node):
    """if/elseif/else chain."""
    tests: List[Node]
    blocks: List[Block]
    orelse: Optional[Block] = None


@dataclass
class NumericFor(Node):
    """for v = start, limit, step do ... end"""
    variable: VarInfo
    start: Node
    limit: Node
    step: Optional[Node]
    body: Block
    base: int  # First of three hidden slots
    line: int = 0


@dataclass
class GenericFor(Node):
    """for k, v in explist do ... end"""
    variables: List[VarInfo]
    iterators: List[Node]
    body: Block
    base: int  # First of three hidden slots
    line: int = 0


@dataclass
class ReturnStatement(Node):
    """return explist"""
    values: List[Node]


@dataclass
class BreakStatement(Node):
    """break"""
    line: int = 0


@dataclass
class Chunk(Node):
    """A compiled unit; its main function takes ``...`` and has ``_ENV``."""
    function: FunctionExpression
    source: str = "?"


def is_multi(node: Any) -> bool:
    """True for expressions that can produce several values."""
    return isinstance(node, (Call, MethodCall, Vararg))
