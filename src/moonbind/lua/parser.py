"""Lua parser - produces a scope-resolved AST from tokens."""

from typing import Dict, List, Optional
from .lexer import Lexer
from .tokens import Token, TokenType
from .errors import LuaSyntaxError
from .ast_nodes import (
    Node, VarInfo, UpvalueDesc, NilLiteral, BooleanLiteral, NumericLiteral,
    StringLiteral, Vararg, LocalName, UpvalueName, Index, Call, MethodCall,
    BinaryExpression, LogicalExpression, UnaryExpression, Paren, TableField,
    TableConstructor, FunctionExpression, Block, LocalStatement, LocalFunction,
    AssignStatement, CallStatement, DoStatement, WhileStatement, RepeatStatement,
    IfStatement, NumericFor, GenericFor, ReturnStatement, BreakStatement, Chunk,
)


# Binary operator priorities as (left, right); right < left means right associative
BINARY_PRIORITY = {
    TokenType.OR: (1, 1),
    TokenType.AND: (2, 2),
    TokenType.LT: (3, 3), TokenType.GT: (3, 3), TokenType.LE: (3, 3),
    TokenType.GE: (3, 3), TokenType.NE: (3, 3), TokenType.EQ: (3, 3),
    TokenType.PIPE: (4, 4),
    TokenType.TILDE: (5, 5),
    TokenType.AMPERSAND: (6, 6),
    TokenType.LSHIFT: (7, 7), TokenType.RSHIFT: (7, 7),
    TokenType.CONCAT: (9, 8),
    TokenType.PLUS: (10, 10), TokenType.MINUS: (10, 10),
    TokenType.STAR: (11, 11), TokenType.SLASH: (11, 11),
    TokenType.DSLASH: (11, 11), TokenType.PERCENT: (11, 11),
    TokenType.CARET: (14, 13),
}

UNARY_PRIORITY = 12

UNARY_OPERATORS = {
    TokenType.NOT: "not",
    TokenType.MINUS: "-",
    TokenType.HASH: "#",
    TokenType.TILDE: "~",
}

BLOCK_FOLLOW = (TokenType.EOF, TokenType.END, TokenType.ELSE,
                TokenType.ELSEIF, TokenType.UNTIL)


class FuncState:
    """Per-function parsing state: scopes, slots and upvalues."""

    def __init__(self, parent: Optional["FuncState"], name: str):
        self.parent = parent
        self.name = name
        self.scopes: List[Dict[str, VarInfo]] = [{}]
        self.upvalues: List[UpvalueDesc] = []
        self.num_slots = 0
        self.is_vararg = False
        self.loop_depth = 0

    def new_var(self, name: str) -> VarInfo:
        """Allocate a slot for a variable; it is not visible until activated."""
        var = VarInfo(name, self.num_slots)
        self.num_slots += 1
        return var

    def activate(self, var: VarInfo) -> None:
        self.scopes[-1][var.name] = var

    def hidden_slots(self, count: int) -> int:
        """Reserve ``count`` anonymous slots and return the first."""
        base = self.num_slots
        self.num_slots += count
        return base

    def find_local(self, name: str) -> Optional[VarInfo]:
        for scope in reversed(self.scopes):
            if name in scope:
                return scope[name]
        return None

    def open_scope(self) -> None:
        self.scopes.append({})

    def close_scope(self) -> None:
        self.scopes.pop()


class Parser:
    """Recursive descent parser for Lua."""

    def __init__(self, source: str):
        self.lexer = Lexer(source)
        self.current: Token = self.lexer.next_token()
        self.previous: Optional[Token] = None
        self.fs: Optional[FuncState] = None

    def _error(self, message: str, token: Optional[Token] = None) -> LuaSyntaxError:
        """Create a syntax error at the current token."""
        token = token or self.current
        return LuaSyntaxError(message, token.line, token.describe())

    def _advance(self) -> Token:
        """Advance to next token and return previous."""
        self.previous = self.current
        self.current = self.lexer.next_token()
        return self.previous

    def _check(self, *types: TokenType) -> bool:
        """Check if current token is one of the given types."""
        return self.current.type in types

    def _match(self, *types: TokenType) -> bool:
        """If current token matches, advance and return True."""
        if self._check(*types):
            self._advance()
            return True
        return False

    def _expect(self, token_type: TokenType, what: str) -> Token:
        """Expect a specific token type or raise error."""
        if self.current.type != token_type:
            raise self._error(f"'{what}' expected")
        return self._advance()

    def _expect_match(self, token_type: TokenType, what: str, opener: str, line: int) -> Token:
        """Expect a closing token, naming the opener when it is on another line."""
        if self.current.type != token_type:
            if line == self.current.line:
                raise self._error(f"'{what}' expected")
            raise self._error(f"'{what}' expected (to close '{opener}' at line {line})")
        return self._advance()

    def _expect_name(self) -> str:
        if self.current.type != TokenType.NAME:
            raise self._error("<name> expected")
        return self._advance().value

    def parse(self) -> Chunk:
        """Parse the entire chunk."""
        fs = FuncState(None, "main chunk")
        fs.is_vararg = True
        fs.upvalues.append(UpvalueDesc("_ENV", False, 0))
        self.fs = fs
        body = self._parse_statements()
        if not self._check(TokenType.EOF):
            raise self._error("'<eof>' expected")
        function = FunctionExpression(
            name="main chunk",
            params=[],
            is_vararg=True,
            body=body,
            upvalues=fs.upvalues,
            num_slots=fs.num_slots,
            line=0,
            last_line=self.current.line,
        )
        self.fs = None
        return Chunk(function)

    # ---- Names ----

    def _resolve_name(self, name: str, line: int) -> Node:
        """Resolve a name to a local, an upvalue or a field of _ENV."""
        node = self._find_var(self.fs, name)
        if node is not None:
            return node
        env = self._find_var(self.fs, "_ENV")
        return Index(env, StringLiteral(name), line, name=name)

    def _find_var(self, fs: FuncState, name: str) -> Optional[Node]:
        var = fs.find_local(name)
        if var is not None:
            return LocalName(var)
        index = self._find_upvalue(fs, name)
        if index is None:
            return None
        return UpvalueName(index, name)

    def _find_upvalue(self, fs: FuncState, name: str) -> Optional[int]:
        for i, up in enumerate(fs.upvalues):
            if up.name == name:
                return i
        parent = fs.parent
        if parent is None:
            return None
        var = parent.find_local(name)
        if var is not None:
            var.captured = True
            fs.upvalues.append(UpvalueDesc(name, True, var.slot))
            return len(fs.upvalues) - 1
        index = self._find_upvalue(parent, name)
        if index is None:
            return None
        fs.upvalues.append(UpvalueDesc(name, False, index))
        return len(fs.upvalues) - 1

    # ---- Blocks ----

    def _parse_statements(self) -> Block:
        """Parse statements up to the end of a block, in the current scope."""
        body: List[Node] = []
        while not self._check(*BLOCK_FOLLOW):
            if self._check(TokenType.RETURN):
                body.append(self._parse_return_statement())
                break
            stmt = self._parse_statement()
            if stmt is not None:
                body.append(stmt)
        return Block(body)

    def _parse_block(self) -> Block:
        """Parse a block in a new scope."""
        self.fs.open_scope()
        block = self._parse_statements()
        self.fs.close_scope()
        return block

    # ---- Statements ----

    def _parse_statement(self) -> Optional[Node]:
        """Parse a statement."""
        line = self.current.line

        if self._match(TokenType.SEMICOLON):
            return None

        if self._match(TokenType.IF):
            return self._parse_if_statement(line)

        if self._match(TokenType.WHILE):
            return self._parse_while_statement(line)

        if self._match(TokenType.DO):
            body = self._parse_block()
            self._expect_match(TokenType.END, "end", "do", line)
            return DoStatement(body)

        if self._match(TokenType.FOR):
            return self._parse_for_statement(line)

        if self._match(TokenType.REPEAT):
            return self._parse_repeat_statement(line)

        if self._match(TokenType.FUNCTION):
            return self._parse_function_statement(line)

        if self._match(TokenType.LOCAL):
            if self._match(TokenType.FUNCTION):
                return self._parse_local_function()
            return self._parse_local_statement()

        if self._check(TokenType.DBCOLON):
            raise self._error("labels are not supported")

        if self._match(TokenType.BREAK):
            if self.fs.loop_depth == 0:
                raise LuaSyntaxError(f"break outside a loop at line {line}",
                                     line, self.current.describe())
            return BreakStatement(line)

        return self._parse_expression_statement(line)

    def _parse_if_statement(self, line: int) -> IfStatement:
        """Parse if test then block {elseif test then block} [else block] end"""
        tests = [self._parse_expression()]
        self._expect(TokenType.THEN, "then")
        blocks = [self._parse_block()]
        orelse = None
        while True:
            if self._match(TokenType.ELSEIF):
                tests.append(self._parse_expression())
                self._expect(TokenType.THEN, "then")
                blocks.append(self._parse_block())
            elif self._match(TokenType.ELSE):
                orelse = self._parse_block()
                self._expect_match(TokenType.END, "end", "if", line)
                break
            else:
                self._expect_match(TokenType.END, "end", "if", line)
                break
        return IfStatement(tests, blocks, orelse)

    def _parse_while_statement(self, line: int) -> WhileStatement:
        """Parse while test do block end"""
        test = self._parse_expression()
        self._expect(TokenType.DO, "do")
        self.fs.loop_depth += 1
        body = self._parse_block()
        self.fs.loop_depth -= 1
        self._expect_match(TokenType.END, "end", "while", line)
        return WhileStatement(test, body)

    def _parse_repeat_statement(self, line: int) -> RepeatStatement:
        """Parse repeat block until test; the test sees the block's locals."""
        self.fs.loop_depth += 1
        self.fs.open_scope()
        body = self._parse_statements()
        self._expect_match(TokenType.UNTIL, "until", "repeat", line)
        test = self._parse_expression()
        self.fs.close_scope()
        self.fs.loop_depth -= 1
        return RepeatStatement(body, test)

    def _parse_for_statement(self, line: int) -> Node:
        """Parse numeric or generic for."""
        first = self._expect_name()
        if self._match(TokenType.ASSIGN):
            start = self._parse_expression()
            self._expect(TokenType.COMMA, ",")
            limit = self._parse_expression()
            step = None
            if self._match(TokenType.COMMA):
                step = self._parse_expression()
            self._expect(TokenType.DO, "do")
            fs = self.fs
            fs.open_scope()
            base = fs.hidden_slots(3)
            var = fs.new_var(first)
            fs.activate(var)
            fs.loop_depth += 1
            body = self._parse_block()
            fs.loop_depth -= 1
            fs.close_scope()
            self._expect_match(TokenType.END, "end", "for", line)
            return NumericFor(var, start, limit, step, body, base, line)

        if self._check(TokenType.COMMA, TokenType.IN):
            names = [first]
            while self._match(TokenType.COMMA):
                names.append(self._expect_name())
            self._expect(TokenType.IN, "in")
            iterators = self._parse_expression_list()
            self._expect(TokenType.DO, "do")
            fs = self.fs
            fs.open_scope()
            base = fs.hidden_slots(3)
            variables = [fs.new_var(name) for name in names]
            for var in variables:
                fs.activate(var)
            fs.loop_depth += 1
            body = self._parse_block()
            fs.loop_depth -= 1
            fs.close_scope()
            self._expect_match(TokenType.END, "end", "for", line)
            return GenericFor(variables, iterators, body, base, line)

        raise self._error("'=' or 'in' expected")

    def _parse_function_statement(self, line: int) -> AssignStatement:
        """Parse function a.b.c:m(params) body end"""
        name = self._expect_name()
        full_name = name
        target = self._resolve_name(name, line)
        is_method = False
        while self._check(TokenType.DOT, TokenType.COLON):
            is_method = self._advance().type == TokenType.COLON
            key = self._expect_name()
            full_name += (":" if is_method else ".") + key
            target = Index(target, StringLiteral(key), line)
            if is_method:
                break
        function = self._parse_function_body(line, full_name, is_method)
        return AssignStatement([target], [function], line)

    def _parse_local_function(self) -> LocalFunction:
        """Parse local function f() ... end; f is visible inside its body."""
        line = self.previous.line
        name = self._expect_name()
        var = self.fs.new_var(name)
        self.fs.activate(var)
        function = self._parse_function_body(line, name, False)
        return LocalFunction(var, function)

    def _parse_local_statement(self) -> LocalStatement:
        """Parse local a, b = x, y"""
        names = [self._expect_local_name()]
        while self._match(TokenType.COMMA):
            names.append(self._expect_local_name())
        values: List[Node] = []
        if self._match(TokenType.ASSIGN):
            values = self._parse_expression_list()
        # New locals become visible after their initializers
        variables = [self.fs.new_var(name) for name in names]
        for var in variables:
            self.fs.activate(var)
        return LocalStatement(variables, values)

    def _expect_local_name(self) -> str:
        name = self._expect_name()
        if self._match(TokenType.LT):
            attrib = self._expect_name()
            if attrib != "const":
                raise LuaSyntaxError(f"unknown attribute '{attrib}'",
                                     self.previous.line, self.current.describe())
            self._expect(TokenType.GT, ">")
        return name

    def _parse_return_statement(self) -> ReturnStatement:
        """Parse return [explist] [';'], which must end its block."""
        self._advance()  # return
        values: List[Node] = []
        if not self._check(*BLOCK_FOLLOW) and not self._check(TokenType.SEMICOLON):
            values = self._parse_expression_list()
        self._match(TokenType.SEMICOLON)
        if not self._check(*BLOCK_FOLLOW):
            raise self._error("'<eof>' expected" if self.fs.parent is None
                              else "'end' expected")
        return ReturnStatement(values)

    def _parse_expression_statement(self, line: int) -> Node:
        """Parse an assignment or a call statement."""
        first = self._parse_suffixed_expression()
        if self._check(TokenType.ASSIGN, TokenType.COMMA):
            targets = [first]
            while self._match(TokenType.COMMA):
                targets.append(self._parse_suffixed_expression())
            for target in targets:
                if not isinstance(target, (LocalName, UpvalueName, Index)):
                    raise self._error("syntax error")
            self._expect(TokenType.ASSIGN, "=")
            values = self._parse_expression_list()
            return AssignStatement(targets, values, line)
        if not isinstance(first, (Call, MethodCall)):
            raise self._error("syntax error")
        return CallStatement(first)

    # ---- Functions ----

    def _parse_function_body(self, line: int, name: str, is_method: bool) -> FunctionExpression:
        """Parse (params) block end into a new function."""
        fs = FuncState(self.fs, name)
        self.fs = fs
        params: List[VarInfo] = []
        if is_method:
            params.append(fs.new_var("self"))
        self._expect(TokenType.LPAREN, "(")
        if not self._check(TokenType.RPAREN):
            while True:
                if self._match(TokenType.DOTS):
                    fs.is_vararg = True
                    break
                params.append(fs.new_var(self._expect_name()))
                if not self._match(TokenType.COMMA):
                    break
        self._expect(TokenType.RPAREN, ")")
        for var in params:
            fs.activate(var)
        body = self._parse_statements()
        last_line = self.current.line
        self._expect_match(TokenType.END, "end", "function", line)
        self.fs = fs.parent
        return FunctionExpression(
            name=name,
            params=params,
            is_vararg=fs.is_vararg,
            body=body,
            upvalues=fs.upvalues,
            num_slots=fs.num_slots,
            line=line,
            last_line=last_line,
        )

    # ---- Expressions ----

    def _parse_expression_list(self) -> List[Node]:
        expressions = [self._parse_expression()]
        while self._match(TokenType.COMMA):
            expressions.append(self._parse_expression())
        return expressions

    def _parse_expression(self, limit: int = 0) -> Node:
        """Parse a subexpression whose binary operators bind tighter than ``limit``."""
        line = self.current.line
        if self.current.type in UNARY_OPERATORS:
            operator = UNARY_OPERATORS[self._advance().type]
            argument = self._parse_expression(UNARY_PRIORITY)
            left = self._fold_unary(operator, argument, line)
        else:
            left = self._parse_simple_expression()

        while self.current.type in BINARY_PRIORITY:
            left_priority, right_priority = BINARY_PRIORITY[self.current.type]
            if left_priority <= limit:
                break
            token = self._advance()
            right = self._parse_expression(right_priority)
            if token.type in (TokenType.AND, TokenType.OR):
                left = LogicalExpression(token.value, left, right)
            else:
                left = BinaryExpression(token.value, left, right, token.line)
        return left

    def _fold_unary(self, operator: str, argument: Node, line: int) -> Node:
        if operator == "-" and isinstance(argument, NumericLiteral):
            value = argument.value
            if isinstance(value, int):
                # Wrap like every other integer operation
                value = ((-value + 2**63) % 2**64) - 2**63
                return NumericLiteral(value)
            return NumericLiteral(-value)
        return UnaryExpression(operator, argument, line)

    def _parse_simple_expression(self) -> Node:
        """Parse literals, constructors, function bodies and suffixed expressions."""
        token = self.current
        if self._match(TokenType.NUMBER):
            return NumericLiteral(token.value)
        if self._match(TokenType.STRING):
            return StringLiteral(token.value)
        if self._match(TokenType.NIL):
            return NilLiteral()
        if self._match(TokenType.TRUE):
            return BooleanLiteral(True)
        if self._match(TokenType.FALSE):
            return BooleanLiteral(False)
        if self._check(TokenType.DOTS):
            if not self.fs.is_vararg:
                raise self._error("cannot use '...' outside a vararg function")
            self._advance()
            return Vararg()
        if self._check(TokenType.LBRACE):
            return self._parse_table_constructor()
        if self._match(TokenType.FUNCTION):
            return self._parse_function_body(token.line, "anonymous", False)
        return self._parse_suffixed_expression()

    def _parse_primary_expression(self) -> Node:
        token = self.current
        if self._match(TokenType.NAME):
            return self._resolve_name(token.value, token.line)
        if self._match(TokenType.LPAREN):
            expression = self._parse_expression()
            self._expect_match(TokenType.RPAREN, ")", "(", token.line)
            return Paren(expression)
        raise self._error("unexpected symbol")

    def _parse_suffixed_expression(self) -> Node:
        """Parse primary { .name | [exp] | :name args | args }"""
        expression = self._parse_primary_expression()
        while True:
            line = self.current.line
            if self._match(TokenType.DOT):
                key = self._expect_name()
                expression = Index(expression, StringLiteral(key), line)
            elif self._match(TokenType.LBRACKET):
                key_node = self._parse_expression()
                self._expect(TokenType.RBRACKET, "]")
                expression = Index(expression, key_node, line)
            elif self._match(TokenType.COLON):
                name = self._expect_name()
                args = self._parse_call_arguments(line)
                expression = MethodCall(expression, name, args, line)
            elif self._check(TokenType.LPAREN, TokenType.STRING, TokenType.LBRACE):
                args = self._parse_call_arguments(line)
                expression = Call(expression, args, line)
            else:
                return expression

    def _parse_call_arguments(self, line: int) -> List[Node]:
        token = self.current
        if self._match(TokenType.STRING):
            return [StringLiteral(token.value)]
        if self._check(TokenType.LBRACE):
            return [self._parse_table_constructor()]
        if token.type != TokenType.LPAREN:
            raise self._error("function arguments expected")
        self._advance()
        args: List[Node] = []
        if not self._check(TokenType.RPAREN):
            args = self._parse_expression_list()
        self._expect_match(TokenType.RPAREN, ")", "(", line)
        return args

    def _parse_table_constructor(self) -> TableConstructor:
        """Parse { field {sep field} [sep] }"""
        line = self.current.line
        self._expect(TokenType.LBRACE, "{")
        fields: List[TableField] = []
        while not self._check(TokenType.RBRACE):
            if self._check(TokenType.NAME) and self._peek_is_assign():
                key = StringLiteral(self._advance().value)
                self._expect(TokenType.ASSIGN, "=")
                fields.append(TableField(key, self._parse_expression()))
            elif self._match(TokenType.LBRACKET):
                key_node = self._parse_expression()
                self._expect(TokenType.RBRACKET, "]")
                self._expect(TokenType.ASSIGN, "=")
                fields.append(TableField(key_node, self._parse_expression()))
            else:
                fields.append(TableField(None, self._parse_expression()))
            if not self._match(TokenType.COMMA, TokenType.SEMICOLON):
                break
        self._expect_match(TokenType.RBRACE, "}", "{", line)
        return TableConstructor(fields, line)

    def _peek_is_assign(self) -> bool:
        """Check whether the token after the current one is a single '='."""
        lexer = self.lexer
        saved = (lexer.pos, lexer.line, lexer.column)
        next_token = lexer.next_token()
        lexer.pos, lexer.line, lexer.column = saved
        return next_token.type == TokenType.ASSIGN


def parse(source: str) -> Chunk:
    """Parse ``source`` into a chunk."""
    return Parser(source).parse()
