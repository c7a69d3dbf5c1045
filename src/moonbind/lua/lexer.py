"""Lua lexer (tokenizer)."""

from typing import Iterator, Union
from .tokens import Token, TokenType, KEYWORDS
from .errors import LuaSyntaxError


_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "\\": "\\",
    '"': '"',
    "'": "'",
    "\n": "\n",
}

_HEX_DIGITS = "0123456789abcdefABCDEF"


class Lexer:
    """Tokenizes Lua source code."""

    def __init__(self, source: str):
        self.source = source
        self.pos = 0
        self.line = 1
        self.column = 1
        self.length = len(source)
        # Skip a leading "#!" line
        if source.startswith("#"):
            while self._current() and self._current() != "\n":
                self._advance()

    def _current(self) -> str:
        """Get current character or empty string if at end."""
        if self.pos >= self.length:
            return ""
        return self.source[self.pos]

    def _peek(self, offset: int = 1) -> str:
        """Peek ahead at character."""
        pos = self.pos + offset
        if pos >= self.length:
            return ""
        return self.source[pos]

    def _advance(self) -> str:
        """Advance and return current character."""
        if self.pos >= self.length:
            return ""
        ch = self.source[self.pos]
        self.pos += 1
        if ch == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        return ch

    def _error(self, message: str, near: str = "") -> LuaSyntaxError:
        return LuaSyntaxError(message, self.line, f"'{near}'" if near else "")

    def _long_bracket_level(self) -> int:
        """Return the level of a long bracket starting here, or -1."""
        if self._current() != "[":
            return -1
        offset = 1
        while self._peek(offset) == "=":
            offset += 1
        if self._peek(offset) == "[":
            return offset - 1
        return -1

    def _read_long_string(self, level: int, what: str) -> str:
        """Read ``[==[ ... ]==]`` and return its contents."""
        start_line = self.line
        for _ in range(level + 2):
            self._advance()
        # A newline right after the opening bracket is skipped
        if self._current() == "\r":
            self._advance()
            if self._current() == "\n":
                self._advance()
        elif self._current() == "\n":
            self._advance()
        close = "]" + "=" * level + "]"
        end = self.source.find(close, self.pos)
        if end < 0:
            self.pos = self.length
            raise LuaSyntaxError(f"unfinished long {what} (starting at line {start_line})",
                                 self.line, "'<eof>'")
        text = self.source[self.pos:end]
        while self.pos < end + len(close):
            self._advance()
        return text

    def _skip_whitespace(self) -> None:
        """Skip whitespace and comments."""
        while self.pos < self.length:
            ch = self._current()

            # Whitespace
            if ch in " \t\r\n\f\v":
                self._advance()
                continue

            # Comments
            if ch == "-" and self._peek() == "-":
                self._advance()  # -
                self._advance()  # -
                level = self._long_bracket_level()
                if level >= 0:
                    self._read_long_string(level, "comment")
                    continue
                while self._current() and self._current() != "\n":
                    self._advance()
                continue

            break

    def _read_string(self, quote: str) -> str:
        """Read a quoted string literal."""
        result = []
        start = self.pos
        self._advance()  # Skip opening quote

        while self._current() != quote:
            ch = self._current()
            if not ch or ch == "\n":
                raise self._error("unfinished string", self.source[start:self.pos])
            self._advance()

            if ch != "\\":
                result.append(ch)
                continue

            escape = self._current()
            if escape in _ESCAPES:
                self._advance()
                result.append(_ESCAPES[escape])
            elif escape == "x":
                self._advance()
                hex_chars = self._advance() + self._advance()
                if len(hex_chars) != 2 or any(c not in _HEX_DIGITS for c in hex_chars):
                    raise self._error("hexadecimal digit expected", self.source[start:self.pos])
                result.append(chr(int(hex_chars, 16)))
            elif escape == "z":
                self._advance()
                while self._current() and self._current() in " \t\r\n\f\v":
                    self._advance()
            elif escape.isdigit():
                digits = ""
                while len(digits) < 3 and self._current().isdigit():
                    digits += self._advance()
                code = int(digits)
                if code > 255:
                    raise self._error("decimal escape too large", self.source[start:self.pos])
                result.append(chr(code))
            elif escape == "u":
                self._advance()
                if self._current() != "{":
                    raise self._error("missing '{'", self.source[start:self.pos])
                self._advance()
                hex_chars = ""
                while self._current() and self._current() in _HEX_DIGITS:
                    hex_chars += self._advance()
                if self._current() != "}" or not hex_chars:
                    raise self._error("missing '}'", self.source[start:self.pos])
                self._advance()
                result.append(chr(int(hex_chars, 16)))
            elif not escape:
                raise self._error("unfinished string", self.source[start:self.pos])
            else:
                raise self._error("invalid escape sequence", self.source[start:self.pos + 1])

        self._advance()  # Skip closing quote
        return "".join(result)

    def _read_number(self) -> Union[int, float]:
        """Read a numeral, hexadecimal or decimal."""
        start = self.pos
        exponent_chars = "Ee"
        if self._current() == "0" and self._peek() in ("x", "X"):
            self._advance()
            self._advance()
            exponent_chars = "Pp"
        while True:
            ch = self._current()
            if ch and ch in exponent_chars:
                self._advance()
                if self._current() in ("+", "-"):
                    self._advance()
            elif ch and (ch.isalnum() or ch == "." or ch == "_"):
                self._advance()
            else:
                break
        text = self.source[start:self.pos]
        value = str_to_number(text)
        if value is None:
            raise self._error("malformed number", text)
        return value

    def _read_name(self) -> str:
        """Read an identifier."""
        start = self.pos
        while self._current() and (self._current().isalnum() or self._current() == "_"):
            self._advance()
        return self.source[start:self.pos]

    def next_token(self) -> Token:
        """Get the next token."""
        self._skip_whitespace()

        line = self.line
        column = self.column
        start = self.pos

        if self.pos >= self.length:
            return Token(TokenType.EOF, None, line, column)

        ch = self._current()

        # String literals
        if ch in "'\"":
            value = self._read_string(ch)
            return Token(TokenType.STRING, value, line, column, self.source[start:self.pos])

        level = self._long_bracket_level()
        if level >= 0:
            value = self._read_long_string(level, "string")
            return Token(TokenType.STRING, value, line, column, self.source[start:self.pos])

        # Numbers
        if ch.isdigit() or (ch == "." and self._peek().isdigit()):
            value = self._read_number()
            return Token(TokenType.NUMBER, value, line, column, self.source[start:self.pos])

        # Names and keywords
        if ch.isalpha() or ch == "_":
            value = self._read_name()
            token_type = KEYWORDS.get(value, TokenType.NAME)
            return Token(token_type, value, line, column, value)

        self._advance()
        nxt = self._current()

        # Multi-character operators
        if ch == "." and nxt == ".":
            self._advance()
            if self._current() == ".":
                self._advance()
                return Token(TokenType.DOTS, "...", line, column)
            return Token(TokenType.CONCAT, "..", line, column)
        if ch == "=" and nxt == "=":
            self._advance()
            return Token(TokenType.EQ, "==", line, column)
        if ch == "~" and nxt == "=":
            self._advance()
            return Token(TokenType.NE, "~=", line, column)
        if ch == "<":
            if nxt == "=":
                self._advance()
                return Token(TokenType.LE, "<=", line, column)
            if nxt == "<":
                self._advance()
                return Token(TokenType.LSHIFT, "<<", line, column)
            return Token(TokenType.LT, "<", line, column)
        if ch == ">":
            if nxt == "=":
                self._advance()
                return Token(TokenType.GE, ">=", line, column)
            if nxt == ">":
                self._advance()
                return Token(TokenType.RSHIFT, ">>", line, column)
            return Token(TokenType.GT, ">", line, column)
        if ch == "/" and nxt == "/":
            self._advance()
            return Token(TokenType.DSLASH, "//", line, column)
        if ch == ":" and nxt == ":":
            self._advance()
            return Token(TokenType.DBCOLON, "::", line, column)

        # Single character tokens
        single_char_tokens = {
            "(": TokenType.LPAREN,
            ")": TokenType.RPAREN,
            "{": TokenType.LBRACE,
            "}": TokenType.RBRACE,
            "[": TokenType.LBRACKET,
            "]": TokenType.RBRACKET,
            ";": TokenType.SEMICOLON,
            ":": TokenType.COLON,
            ",": TokenType.COMMA,
            ".": TokenType.DOT,
            "+": TokenType.PLUS,
            "-": TokenType.MINUS,
            "*": TokenType.STAR,
            "/": TokenType.SLASH,
            "%": TokenType.PERCENT,
            "^": TokenType.CARET,
            "#": TokenType.HASH,
            "&": TokenType.AMPERSAND,
            "~": TokenType.TILDE,
            "|": TokenType.PIPE,
            "=": TokenType.ASSIGN,
        }

        if ch in single_char_tokens:
            return Token(single_char_tokens[ch], ch, line, column)

        raise LuaSyntaxError("unexpected symbol", line, f"'{ch}'")

    def tokenize(self) -> Iterator[Token]:
        """Tokenize the entire source."""
        while True:
            token = self.next_token()
            yield token
            if token.type == TokenType.EOF:
                break


def str_to_number(text: str) -> Union[int, float, None]:
    """Convert a Lua numeral to a number, or None if it is not one.

    Used by the lexer and by string-to-number coercion, so surrounding
    whitespace and a sign are accepted.
    """
    s = text.strip()
    if not s:
        return None
    negative = False
    body = s
    if body[0] in "+-":
        negative = body[0] == "-"
        body = body[1:]
    if body[:2] in ("0x", "0X"):
        digits = body[2:]
        if not digits:
            return None
        if "." in digits or "p" in digits or "P" in digits:
            try:
                value = float.fromhex("0x" + digits)
            except ValueError:
                return None
            return -value if negative else value
        if any(c not in _HEX_DIGITS for c in digits):
            return None
        # Hex integers wrap around modulo 2^64
        value = int(digits, 16) & 0xFFFFFFFFFFFFFFFF
        if value >= 0x8000000000000000:
            value -= 0x10000000000000000
        return -value if negative else value
    if not body or body[0] not in "0123456789.":
        return None
    if body.isdigit():
        value = int(body)
        if value > 0x7FFFFFFFFFFFFFFF:
            value = float(value)
        return -value if negative else value
    if any(c not in "0123456789.eE+-" for c in body):
        return None
    try:
        value = float(body)
    except ValueError:
        return None
    return -value if negative else value
