"""Tests for the Lua lexer."""

import pytest
from moonbind.lua.lexer import Lexer, str_to_number
from moonbind.lua.tokens import TokenType
from moonbind.lua.errors import LuaSyntaxError


def token_types(source):
    return [t.type for t in Lexer(source).tokenize()]


class TestLexerBasics:
    """Basic lexer functionality tests."""

    def test_empty_input(self):
        """Empty input should produce EOF token."""
        lexer = Lexer("")
        token = lexer.next_token()
        assert token.type == TokenType.EOF

    def test_whitespace_only(self):
        """Whitespace-only input should produce EOF token."""
        lexer = Lexer("   \t\n\r  ")
        token = lexer.next_token()
        assert token.type == TokenType.EOF

    def test_line_comment(self):
        """Line comments should be skipped."""
        assert token_types("-- a comment") == [TokenType.EOF]

    def test_long_comment(self):
        """Long bracket comments should be skipped."""
        assert token_types("--[==[ spans\nlines ]==] 1") == [TokenType.NUMBER, TokenType.EOF]

    def test_shebang_line(self):
        """A leading '#' line is ignored."""
        assert token_types("#!/usr/bin/lua\nreturn") == [TokenType.RETURN, TokenType.EOF]

    def test_line_numbers(self):
        """Tokens remember their line."""
        tokens = list(Lexer("a\n\nb").tokenize())
        assert tokens[0].line == 1
        assert tokens[1].line == 3


class TestLexerNumbers:
    """Numeral tests."""

    def test_integer(self):
        """Decimal integers stay integers."""
        token = Lexer("42").next_token()
        assert token.value == 42
        assert type(token.value) is int

    def test_float(self):
        """Numerals with a dot or exponent are floats."""
        assert Lexer("3.5").next_token().value == 3.5
        assert Lexer("1e2").next_token().value == 100.0
        assert type(Lexer("1e2").next_token().value) is float

    def test_hex(self):
        """Hexadecimal integers and floats."""
        assert Lexer("0xff").next_token().value == 255
        assert Lexer("0x1p4").next_token().value == 16.0

    def test_hex_wraps(self):
        """Hex integers wrap around modulo 2^64."""
        assert str_to_number("0xffffffffffffffff") == -1

    def test_malformed_number(self):
        """Garbage after a numeral is an error."""
        with pytest.raises(LuaSyntaxError) as excinfo:
            Lexer("3x").next_token()
        assert "malformed number" in excinfo.value.message

    def test_coercion_accepts_spaces(self):
        """String coercion accepts surrounding spaces and a sign."""
        assert str_to_number("  -7 ") == -7
        assert str_to_number("abc") is None
        assert str_to_number("") is None


class TestLexerStrings:
    """String literal tests."""

    def test_quoted(self):
        """Single and double quotes."""
        assert Lexer('"hi"').next_token().value == "hi"
        assert Lexer("'hi'").next_token().value == "hi"

    def test_escapes(self):
        """Escape sequences are decoded."""
        assert Lexer(r'"a\tb\n"').next_token().value == "a\tb\n"
        assert Lexer(r'"\65\x42"').next_token().value == "AB"

    def test_long_string(self):
        """A newline right after the opening bracket is dropped."""
        assert Lexer("[[\nline]]").next_token().value == "line"
        assert Lexer("[=[a]]b]=]").next_token().value == "a]]b"

    def test_unfinished_string(self):
        """Unfinished strings are syntax errors."""
        with pytest.raises(LuaSyntaxError):
            Lexer('"abc').next_token()

    def test_unfinished_long_string(self):
        """Unfinished long strings report their starting line."""
        with pytest.raises(LuaSyntaxError) as excinfo:
            Lexer("[[abc").next_token()
        assert "starting at line 1" in excinfo.value.message


class TestLexerOperators:
    """Operator and keyword tests."""

    def test_keywords(self):
        """Keywords are not names."""
        assert token_types("local function end") == [
            TokenType.LOCAL, TokenType.FUNCTION, TokenType.END, TokenType.EOF,
        ]

    def test_names(self):
        """Identifiers are names."""
        token = Lexer("_foo1").next_token()
        assert token.type == TokenType.NAME
        assert token.value == "_foo1"

    def test_multi_char_operators(self):
        """Longest match wins."""
        assert token_types(".. ... == ~= <= >= << >> // ::") == [
            TokenType.CONCAT, TokenType.DOTS, TokenType.EQ, TokenType.NE,
            TokenType.LE, TokenType.GE, TokenType.LSHIFT, TokenType.RSHIFT,
            TokenType.DSLASH, TokenType.DBCOLON, TokenType.EOF,
        ]

    def test_unexpected_symbol(self):
        """Unknown characters are rejected."""
        with pytest.raises(LuaSyntaxError) as excinfo:
            Lexer("@").next_token()
        assert excinfo.value.message == "unexpected symbol"
