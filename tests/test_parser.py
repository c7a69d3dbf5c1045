"""Tests for the Lua parser."""

import pytest
from moonbind.lua.parser import parse
from moonbind.lua.ast_nodes import (
    NumericLiteral, StringLiteral, LocalName, UpvalueName, Index, Call,
    BinaryExpression, LogicalExpression, UnaryExpression, LocalStatement,
    AssignStatement, CallStatement, IfStatement, NumericFor, GenericFor,
    ReturnStatement, FunctionExpression, LocalFunction,
)
from moonbind.lua.errors import LuaSyntaxError


def body(source):
    return parse(source).function.body.body


class TestParserStatements:
    """Statement parsing tests."""

    def test_empty_chunk(self):
        """An empty chunk has no statements."""
        assert body("") == []

    def test_local_statement(self):
        """local x = 1"""
        stmt = body("local x = 1")[0]
        assert isinstance(stmt, LocalStatement)
        assert stmt.variables[0].name == "x"
        assert isinstance(stmt.values[0], NumericLiteral)

    def test_global_assignment(self):
        """Globals are fields of _ENV."""
        stmt = body("x = 1")[0]
        assert isinstance(stmt, AssignStatement)
        target = stmt.targets[0]
        assert isinstance(target, Index)
        assert isinstance(target.obj, UpvalueName)
        assert target.obj.name == "_ENV"
        assert target.key.value == "x"

    def test_local_reference(self):
        """A declared local resolves to its slot."""
        stmt = body("local a; return a")[1]
        assert isinstance(stmt, ReturnStatement)
        assert isinstance(stmt.values[0], LocalName)

    def test_call_statement(self):
        """print("hi")"""
        stmt = body('print("hi")')[0]
        assert isinstance(stmt, CallStatement)
        assert isinstance(stmt.call, Call)

    def test_if_chain(self):
        """if/elseif/else collects every branch."""
        stmt = body("if a then elseif b then else end")[0]
        assert isinstance(stmt, IfStatement)
        assert len(stmt.tests) == 2
        assert stmt.orelse is not None

    def test_numeric_for(self):
        """for i = 1, 10 do end"""
        stmt = body("for i = 1, 10 do end")[0]
        assert isinstance(stmt, NumericFor)
        assert stmt.variable.name == "i"
        assert stmt.step is None

    def test_generic_for(self):
        """for k, v in pairs(t) do end"""
        stmt = body("for k, v in pairs(t) do end")[0]
        assert isinstance(stmt, GenericFor)
        assert [v.name for v in stmt.variables] == ["k", "v"]

    def test_local_function(self):
        """local function f() end"""
        stmt = body("local function f() end")[0]
        assert isinstance(stmt, LocalFunction)
        assert isinstance(stmt.function, FunctionExpression)

    def test_upvalue_capture(self):
        """Inner functions see outer locals as upvalues."""
        stmt = body("local x = 1; return function() return x end")[1]
        inner = stmt.values[0]
        assert isinstance(inner.body.body[0].values[0], UpvalueName)
        assert inner.upvalues[0].in_stack


class TestParserExpressions:
    """Expression precedence tests."""

    def test_multiplication_binds_tighter(self):
        """1 + 2 * 3 is 1 + (2 * 3)."""
        expr = body("return 1 + 2 * 3")[0].values[0]
        assert isinstance(expr, BinaryExpression)
        assert expr.operator == "+"
        assert expr.right.operator == "*"

    def test_concat_is_right_associative(self):
        """a .. b .. c is a .. (b .. c)."""
        expr = body("return a .. b .. c")[0].values[0]
        assert expr.operator == ".."
        assert isinstance(expr.right, BinaryExpression)

    def test_power_is_right_associative(self):
        """2 ^ 3 ^ 2 is 2 ^ (3 ^ 2)."""
        expr = body("return 2 ^ 3 ^ 2")[0].values[0]
        assert expr.operator == "^"
        assert isinstance(expr.right, BinaryExpression)

    def test_unary_binds_tighter_than_power_base(self):
        """-x ^ 2 is -(x ^ 2)."""
        expr = body("return -x ^ 2")[0].values[0]
        assert isinstance(expr, UnaryExpression)
        assert expr.argument.operator == "^"

    def test_logical(self):
        """and binds tighter than or."""
        expr = body("return a or b and c")[0].values[0]
        assert isinstance(expr, LogicalExpression)
        assert expr.operator == "or"
        assert expr.right.operator == "and"

    def test_string_call_sugar(self):
        """f "x" is a call with one string argument."""
        expr = body('return f "x"')[0].values[0]
        assert isinstance(expr, Call)
        assert isinstance(expr.args[0], StringLiteral)


class TestParserErrors:
    """Syntax error tests."""

    def test_missing_end(self):
        """Unclosed blocks name the opener."""
        with pytest.raises(LuaSyntaxError) as excinfo:
            parse("if x then\n")
        assert "'end' expected" in excinfo.value.message

    def test_break_outside_loop(self):
        """break needs an enclosing loop."""
        with pytest.raises(LuaSyntaxError) as excinfo:
            parse("break")
        assert "break outside a loop" in excinfo.value.message

    def test_unexpected_token(self):
        """Stray tokens are rejected with their position."""
        with pytest.raises(LuaSyntaxError) as excinfo:
            parse("x = = 1")
        assert excinfo.value.line == 1

    def test_error_format(self):
        """Syntax errors render with the chunk name and the offending token."""
        with pytest.raises(LuaSyntaxError) as excinfo:
            parse("this is not valid")
        text = excinfo.value.format('[string "x"]')
        assert text.startswith('[string "x"]:1:')
        assert "near" in text
