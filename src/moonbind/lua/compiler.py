"""Bytecode compiler - compiles the resolved AST to bytecode."""

from typing import List, Dict, Any, Optional, Tuple
from dataclasses import dataclass, field
from .ast_nodes import (
    Node, UpvalueDesc, NilLiteral, BooleanLiteral, NumericLiteral, StringLiteral,
    Vararg, LocalName, UpvalueName, Index, Call, MethodCall, BinaryExpression,
    LogicalExpression, UnaryExpression, Paren, TableConstructor,
    FunctionExpression, Block, LocalStatement, LocalFunction, AssignStatement,
    CallStatement, DoStatement, WhileStatement, RepeatStatement, IfStatement,
    NumericFor, GenericFor, ReturnStatement, BreakStatement, Chunk, VarInfo,
    is_multi,
)
from .opcodes import OpCode, ARG_COUNT


BINARY_OPCODES = {
    "+": OpCode.ADD,
    "-": OpCode.SUB,
    "*": OpCode.MUL,
    "/": OpCode.DIV,
    "//": OpCode.IDIV,
    "%": OpCode.MOD,
    "^": OpCode.POW,
    "..": OpCode.CONCAT,
    "&": OpCode.BAND,
    "|": OpCode.BOR,
    "~": OpCode.BXOR,
    "<<": OpCode.SHL,
    ">>": OpCode.SHR,
    "==": OpCode.EQ,
    "~=": OpCode.NE,
    "<": OpCode.LT,
    "<=": OpCode.LE,
    ">": OpCode.GT,
    ">=": OpCode.GE,
}

UNARY_OPCODES = {
    "-": OpCode.UNM,
    "not": OpCode.NOT,
    "#": OpCode.LEN,
    "~": OpCode.BNOT,
}

# Positional constructor items are flushed to the table in batches
FIELDS_PER_FLUSH = 50


@dataclass
class FunctionProto:
    """A compiled function."""
    name: str
    source: str
    line: int
    last_line: int
    num_params: int
    is_vararg: bool
    num_slots: int
    code: List[int]
    lines: List[int]
    constants: List[Any]
    protos: List["FunctionProto"]
    upvalues: List[UpvalueDesc]
    # pc -> descriptions of the operands, for error messages
    varinfo: Dict[int, Tuple[Optional[str], ...]] = field(default_factory=dict)


@dataclass
class LoopContext:
    """Context for loops (for break)."""
    break_jumps: List[int] = field(default_factory=list)


def describe(node: Node) -> Optional[str]:
    """Describe where a value came from, as Lua error messages do."""
    if isinstance(node, LocalName):
        return f"local '{node.var.name}'"
    if isinstance(node, UpvalueName):
        return f"upvalue '{node.name}'"
    if isinstance(node, Index):
        if node.name is not None:
            return f"global '{node.name}'"
        if isinstance(node.key, StringLiteral):
            return f"field '{node.key.value}'"
    if isinstance(node, MethodCall):
        return f"method '{node.name}'"
    return None


class Compiler:
    """Compiles one function body to bytecode."""

    def __init__(self, function: FunctionExpression, source: str):
        self.function = function
        self.source = source
        self.code: List[int] = []
        self.lines: List[int] = []
        self.constants: List[Any] = []
        self._constant_index: Dict[Tuple[Any, ...], int] = {}
        self.protos: List[FunctionProto] = []
        self.varinfo: Dict[int, Tuple[Optional[str], ...]] = {}
        self.loop_stack: List[LoopContext] = []
        self.num_slots = function.num_slots
        self.line = function.line

    def compile(self) -> FunctionProto:
        """Compile the function."""
        fn = self.function
        # Captured parameters move into cells on entry
        for var in fn.params:
            if var.captured:
                self._emit(OpCode.LOAD_LOCAL, var.slot)
                self._emit(OpCode.NEW_CELL, var.slot)
        self._compile_block(fn.body)
        self.line = fn.last_line
        self._emit(OpCode.RETURN, 0)
        return FunctionProto(
            name=fn.name,
            source=self.source,
            line=fn.line,
            last_line=fn.last_line,
            num_params=len(fn.params),
            is_vararg=fn.is_vararg,
            num_slots=self.num_slots,
            code=self.code,
            lines=self.lines,
            constants=self.constants,
            protos=self.protos,
            upvalues=fn.upvalues,
            varinfo=self.varinfo,
        )

    def _emit(self, opcode: OpCode, *args: int) -> int:
        """Emit an opcode with its operands, return its position."""
        pos = len(self.code)
        self.code.append(opcode)
        self.code.extend(args)
        self.lines.extend([self.line] * (1 + len(args)))
        return pos

    def _emit_jump(self, opcode: OpCode, *args: int) -> int:
        """Emit a jump-like instruction whose last operand is patched later."""
        return self._emit(opcode, *args, 0)

    def _patch_jump(self, pos: int, target: Optional[int] = None) -> None:
        """Point the jump at ``pos`` to target (or the current position)."""
        if target is None:
            target = len(self.code)
        self.code[pos + ARG_COUNT[OpCode(self.code[pos])]] = target

    def _add_constant(self, value: Any) -> int:
        """Add a constant and return its index."""
        # repr keeps 0.0 and -0.0 apart; type keeps 1 and 1.0 apart
        key = (type(value), repr(value) if isinstance(value, float) else value)
        index = self._constant_index.get(key)
        if index is None:
            index = len(self.constants)
            self.constants.append(value)
            self._constant_index[key] = index
        return index

    def _set_line(self, node: Node) -> None:
        line = getattr(node, "line", 0)
        if line:
            self.line = line

    # ---- Statements ----

    def _compile_block(self, block: Block) -> None:
        for stmt in block.body:
            self._compile_statement(stmt)

    def _compile_statement(self, node: Node) -> None:
        """Compile a statement."""
        self._set_line(node)

        if isinstance(node, LocalStatement):
            self._compile_adjusted(node.values, len(node.variables))
            for var in reversed(node.variables):
                self._store_new_local(var)

        elif isinstance(node, LocalFunction):
            var = node.variable
            if var.captured:
                # The cell must exist before the closure captures it
                self._emit(OpCode.LOAD_NIL)
                self._emit(OpCode.NEW_CELL, var.slot)
                self._compile_function(node.function)
                self._emit(OpCode.STORE_CELL, var.slot)
            else:
                self._compile_function(node.function)
                self._emit(OpCode.STORE_LOCAL, var.slot)

        elif isinstance(node, AssignStatement):
            self._compile_assign(node)

        elif isinstance(node, CallStatement):
            self._compile_call(node.call, 0)

        elif isinstance(node, DoStatement):
            self._compile_block(node.body)

        elif isinstance(node, WhileStatement):
            loop_start = len(self.code)
            self._compile_expression(node.test)
            exit_jump = self._emit_jump(OpCode.JUMP_IF_FALSE)
            self.loop_stack.append(LoopContext())
            self._compile_block(node.body)
            self._emit(OpCode.JUMP, loop_start)
            self._patch_jump(exit_jump)
            self._end_loop()

        elif isinstance(node, RepeatStatement):
            loop_start = len(self.code)
            self.loop_stack.append(LoopContext())
            self._compile_block(node.body)
            self._compile_expression(node.test)
            self._emit(OpCode.JUMP_IF_FALSE, loop_start)
            self._end_loop()

        elif isinstance(node, IfStatement):
            end_jumps = []
            for test, block in zip(node.tests, node.blocks):
                self._compile_expression(test)
                next_jump = self._emit_jump(OpCode.JUMP_IF_FALSE)
                self._compile_block(block)
                end_jumps.append(self._emit_jump(OpCode.JUMP))
                self._patch_jump(next_jump)
            if node.orelse is not None:
                self._compile_block(node.orelse)
            for pos in end_jumps:
                self._patch_jump(pos)

        elif isinstance(node, NumericFor):
            self._compile_numeric_for(node)

        elif isinstance(node, GenericFor):
            self._compile_generic_for(node)

        elif isinstance(node, ReturnStatement):
            nfixed, multi = self._compile_explist(node.values)
            if multi:
                self._emit(OpCode.RETURN_MULTI, nfixed)
            else:
                self._emit(OpCode.RETURN, nfixed)

        elif isinstance(node, BreakStatement):
            pos = self._emit_jump(OpCode.JUMP)
            self.loop_stack[-1].break_jumps.append(pos)

        else:
            raise NotImplementedError(f"Cannot compile statement: {type(node).__name__}")

    def _end_loop(self) -> None:
        loop = self.loop_stack.pop()
        for pos in loop.break_jumps:
            self._patch_jump(pos)

    def _compile_numeric_for(self, node: NumericFor) -> None:
        self._compile_expression(node.start)
        self._compile_expression(node.limit)
        if node.step is not None:
            self._compile_expression(node.step)
        else:
            self._emit(OpCode.LOAD_CONST, self._add_constant(1))
        self.line = node.line
        prep = self._emit_jump(OpCode.FORPREP, node.base)
        body_start = len(self.code)
        self._emit(OpCode.LOAD_LOCAL, node.base)
        self._store_new_local(node.variable)
        self.loop_stack.append(LoopContext())
        self._compile_block(node.body)
        self.line = node.line
        self._emit(OpCode.FORLOOP, node.base, body_start)
        self._patch_jump(prep)
        self._end_loop()

    def _compile_generic_for(self, node: GenericFor) -> None:
        base = node.base
        self._compile_adjusted(node.iterators, 3)
        self._emit(OpCode.STORE_LOCAL, base + 2)
        self._emit(OpCode.STORE_LOCAL, base + 1)
        self._emit(OpCode.STORE_LOCAL, base)
        loop_start = len(self.code)
        self.line = node.line
        nvars = len(node.variables)
        self._emit(OpCode.TFORCALL, base, nvars)
        exit_jump = self._emit_jump(OpCode.TFORLOOP, base, nvars)
        for var in reversed(node.variables):
            self._store_new_local(var)
        self.loop_stack.append(LoopContext())
        self._compile_block(node.body)
        self._emit(OpCode.JUMP, loop_start)
        self._patch_jump(exit_jump)
        self._end_loop()

    def _compile_assign(self, node: AssignStatement) -> None:
        targets = node.targets
        if len(targets) == 1:
            target = targets[0]
            if isinstance(target, Index):
                self._compile_expression(target.obj)
                self._compile_expression(target.key)
                self._compile_adjusted(node.values, 1)
                self._set_line(node)
                pos = self._emit(OpCode.SET_TABLE)
                self._add_varinfo(pos, target.obj)
            else:
                self._compile_adjusted(node.values, 1)
                self._store(target)
            return

        # Tables and keys are evaluated before any value is assigned
        temps: List[Optional[Tuple[int, int]]] = []
        next_temp = self.function.num_slots
        for target in targets:
            if isinstance(target, Index):
                self._compile_expression(target.obj)
                self._emit(OpCode.STORE_LOCAL, next_temp)
                self._compile_expression(target.key)
                self._emit(OpCode.STORE_LOCAL, next_temp + 1)
                temps.append((next_temp, next_temp + 1))
                next_temp += 2
            else:
                temps.append(None)
        self.num_slots = max(self.num_slots, next_temp)

        self._compile_adjusted(node.values, len(targets))
        self._set_line(node)
        for target, slots in reversed(list(zip(targets, temps))):
            if slots is None:
                self._store(target)
            else:
                pos = self._emit(OpCode.STORE_INDEX, slots[0], slots[1])
                self._add_varinfo(pos, target.obj)

    def _store(self, target: Node) -> None:
        """Pop the top of stack into a local or upvalue."""
        if isinstance(target, LocalName):
            if target.var.captured:
                self._emit(OpCode.STORE_CELL, target.var.slot)
            else:
                self._emit(OpCode.STORE_LOCAL, target.var.slot)
        elif isinstance(target, UpvalueName):
            self._emit(OpCode.SET_UPVAL, target.index)
        else:
            raise NotImplementedError(f"Cannot assign to: {type(target).__name__}")

    def _store_new_local(self, var: VarInfo) -> None:
        """Pop the top of stack into a freshly declared local."""
        if var.captured:
            self._emit(OpCode.NEW_CELL, var.slot)
        else:
            self._emit(OpCode.STORE_LOCAL, var.slot)

    # ---- Expression lists ----

    def _compile_explist(self, exprs: List[Node]) -> Tuple[int, bool]:
        """Push every value of an expression list.

        Returns the number of fixed values and whether an open-ended
        call or ``...`` followed them with its values and their count.
        """
        if exprs and is_multi(exprs[-1]):
            for expr in exprs[:-1]:
                self._compile_expression(expr)
            self._compile_multi(exprs[-1], -1)
            return len(exprs) - 1, True
        for expr in exprs:
            self._compile_expression(expr)
        return len(exprs), False

    def _compile_adjusted(self, exprs: List[Node], want: int) -> None:
        """Push exactly ``want`` values, evaluating every expression."""
        last = len(exprs) - 1
        for i, expr in enumerate(exprs):
            if i >= want:
                if is_multi(expr):
                    self._compile_multi(expr, 0)
                else:
                    self._compile_expression(expr)
                    self._emit(OpCode.POP)
            elif i == last and is_multi(expr):
                self._compile_multi(expr, want - i)
                return
            else:
                self._compile_expression(expr)
        for _ in range(len(exprs), want):
            self._emit(OpCode.LOAD_NIL)

    def _compile_multi(self, node: Node, nresults: int) -> None:
        """Compile a call or ``...`` producing ``nresults`` values (-1: all + count)."""
        if isinstance(node, Vararg):
            self._emit(OpCode.VARARG, nresults)
        else:
            self._compile_call(node, nresults)

    def _compile_call(self, node: Node, nresults: int) -> None:
        if isinstance(node, MethodCall):
            self._compile_expression(node.obj)
            self._set_line(node)
            pos = self._emit(OpCode.SELF, self._add_constant(node.name))
            self._add_varinfo(pos, node.obj)
            extra = 1
            description = describe(node)
        else:
            self._compile_expression(node.func)
            extra = 0
            description = describe(node.func)
        nfixed, multi = self._compile_explist(node.args)
        self._set_line(node)
        if multi:
            pos = self._emit(OpCode.CALL_MULTI, nfixed + extra, nresults)
        else:
            pos = self._emit(OpCode.CALL, nfixed + extra, nresults)
        if description is not None:
            self.varinfo[pos] = (description,)

    def _add_varinfo(self, pos: int, *operands: Node) -> None:
        descriptions = tuple(describe(node) for node in operands)
        if any(descriptions):
            self.varinfo[pos] = descriptions

    # ---- Expressions ----

    def _compile_expression(self, node: Node) -> None:
        """Compile an expression that leaves exactly one value on the stack."""
        if isinstance(node, NilLiteral):
            self._emit(OpCode.LOAD_NIL)

        elif isinstance(node, BooleanLiteral):
            self._emit(OpCode.LOAD_TRUE if node.value else OpCode.LOAD_FALSE)

        elif isinstance(node, (NumericLiteral, StringLiteral)):
            self._emit(OpCode.LOAD_CONST, self._add_constant(node.value))

        elif isinstance(node, Vararg):
            self._emit(OpCode.VARARG, 1)

        elif isinstance(node, LocalName):
            if node.var.captured:
                self._emit(OpCode.LOAD_CELL, node.var.slot)
            else:
                self._emit(OpCode.LOAD_LOCAL, node.var.slot)

        elif isinstance(node, UpvalueName):
            self._emit(OpCode.GET_UPVAL, node.index)

        elif isinstance(node, Index):
            self._compile_expression(node.obj)
            self._compile_expression(node.key)
            self._set_line(node)
            pos = self._emit(OpCode.GET_TABLE)
            self._add_varinfo(pos, node.obj)

        elif isinstance(node, (Call, MethodCall)):
            self._compile_call(node, 1)

        elif isinstance(node, BinaryExpression):
            self._compile_expression(node.left)
            self._compile_expression(node.right)
            self._set_line(node)
            pos = self._emit(BINARY_OPCODES[node.operator])
            self._add_varinfo(pos, node.left, node.right)

        elif isinstance(node, LogicalExpression):
            self._compile_expression(node.left)
            if node.operator == "and":
                jump = self._emit_jump(OpCode.JUMP_IF_FALSE_KEEP)
            else:
                jump = self._emit_jump(OpCode.JUMP_IF_TRUE_KEEP)
            self._compile_expression(node.right)
            self._patch_jump(jump)

        elif isinstance(node, UnaryExpression):
            self._compile_expression(node.argument)
            self._set_line(node)
            pos = self._emit(UNARY_OPCODES[node.operator])
            self._add_varinfo(pos, node.argument)

        elif isinstance(node, Paren):
            # Parentheses truncate to a single value
            self._compile_expression(node.expression)

        elif isinstance(node, TableConstructor):
            self._compile_table(node)

        elif isinstance(node, FunctionExpression):
            self._compile_function(node)

        else:
            raise NotImplementedError(f"Cannot compile expression: {type(node).__name__}")

    def _compile_table(self, node: TableConstructor) -> None:
        positional = sum(1 for f in node.fields if f.key is None)
        self._set_line(node)
        self._emit(OpCode.NEW_TABLE, positional, len(node.fields) - positional)
        next_index = 1
        pending = 0
        last = len(node.fields) - 1
        for i, item in enumerate(node.fields):
            if item.key is None:
                if i == last and is_multi(item.value):
                    if pending:
                        self._emit(OpCode.SET_LIST, next_index, pending)
                        next_index += pending
                        pending = 0
                    self._compile_multi(item.value, -1)
                    self._emit(OpCode.SET_LIST_MULTI, next_index)
                    continue
                self._compile_expression(item.value)
                pending += 1
                if pending == FIELDS_PER_FLUSH:
                    self._emit(OpCode.SET_LIST, next_index, pending)
                    next_index += pending
                    pending = 0
            else:
                if pending:
                    self._emit(OpCode.SET_LIST, next_index, pending)
                    next_index += pending
                    pending = 0
                self._compile_expression(item.key)
                self._compile_expression(item.value)
                self._emit(OpCode.SET_FIELD)
        if pending:
            self._emit(OpCode.SET_LIST, next_index, pending)

    def _compile_function(self, node: FunctionExpression) -> None:
        proto = Compiler(node, self.source).compile()
        self.protos.append(proto)
        self._set_line(node)
        self._emit(OpCode.CLOSURE, len(self.protos) - 1)


def compile_chunk(chunk: Chunk, chunkname: str) -> FunctionProto:
    """Compile a parsed chunk into its main function prototype."""
    return Compiler(chunk.function, chunkname).compile()
