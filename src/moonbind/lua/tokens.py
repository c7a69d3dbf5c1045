"""Token types for the Lua lexer."""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Optional


class TokenType(Enum):
    """Lua token types."""

    # End of file
    EOF = auto()

    # Literals
    NUMBER = auto()
    STRING = auto()

    # Identifiers and keywords
    NAME = auto()

    # Keywords
    AND = auto()
    BREAK = auto()
    DO = auto()
    ELSE = auto()
    ELSEIF = auto()
    END = auto()
    FALSE = auto()
    FOR = auto()
    FUNCTION = auto()
    IF = auto()
    IN = auto()
    LOCAL = auto()
    NIL = auto()
    NOT = auto()
    OR = auto()
    REPEAT = auto()
    RETURN = auto()
    THEN = auto()
    TRUE = auto()
    UNTIL = auto()
    WHILE = auto()

    # Punctuation
    LPAREN = auto()  # (
    RPAREN = auto()  # )
    LBRACE = auto()  # {
    RBRACE = auto()  # }
    LBRACKET = auto()  # [
    RBRACKET = auto()  # ]
    SEMICOLON = auto()  # ;
    COLON = auto()  # :
    DBCOLON = auto()  # ::
    COMMA = auto()  # ,
    DOT = auto()  # .
    CONCAT = auto()  # ..
    DOTS = auto()  # ...

    # Operators
    PLUS = auto()  # +
    MINUS = auto()  # -
    STAR = auto()  # *
    SLASH = auto()  # /
    DSLASH = auto()  # //
    PERCENT = auto()  # %
    CARET = auto()  # ^
    HASH = auto()  # #
    AMPERSAND = auto()  # &
    TILDE = auto()  # ~
    PIPE = auto()  # |
    LSHIFT = auto()  # <<
    RSHIFT = auto()  # >>

    # Comparison
    LT = auto()  # <
    GT = auto()  # >
    LE = auto()  # <=
    GE = auto()  # >=
    EQ = auto()  # ==
    NE = auto()  # ~=

    # Assignment
    ASSIGN = auto()  # =


# Map keywords to token types
KEYWORDS = {
    "and": TokenType.AND,
    "break": TokenType.BREAK,
    "do": TokenType.DO,
    "else": TokenType.ELSE,
    "elseif": TokenType.ELSEIF,
    "end": TokenType.END,
    "false": TokenType.FALSE,
    "for": TokenType.FOR,
    "function": TokenType.FUNCTION,
    "if": TokenType.IF,
    "in": TokenType.IN,
    "local": TokenType.LOCAL,
    "nil": TokenType.NIL,
    "not": TokenType.NOT,
    "or": TokenType.OR,
    "repeat": TokenType.REPEAT,
    "return": TokenType.RETURN,
    "then": TokenType.THEN,
    "true": TokenType.TRUE,
    "until": TokenType.UNTIL,
    "while": TokenType.WHILE,
}


@dataclass
class Token:
    """A token from the Lua source."""

    type: TokenType
    value: Any
    line: int
    column: int
    raw: Optional[str] = None  # Source text, used in error messages

    def __repr__(self) -> str:
        if self.value is not None:
            return f"Token({self.type.name}, {self.value!r}, {self.line}:{self.column})"
        return f"Token({self.type.name}, {self.line}:{self.column})"

    def describe(self) -> str:
        """Render the token the way syntax errors quote it."""
        if self.type == TokenType.EOF:
            return "<eof>"
        text = self.raw if self.raw is not None else str(self.value)
        return f"'{text}'"
