"""Lua error types and status codes."""

from typing import Any

# Thread status / call result codes
LUA_OK = 0
LUA_YIELD = 1
LUA_ERRRUN = 2
LUA_ERRSYNTAX = 3
LUA_ERRMEM = 4
LUA_ERRGCMM = 5
LUA_ERRERR = 6
LUA_ERRFILE = 7

STATUS_NAMES = {
    LUA_OK: "ok",
    LUA_YIELD: "yield",
    LUA_ERRRUN: "runtime error",
    LUA_ERRSYNTAX: "syntax error",
    LUA_ERRMEM: "memory error",
    LUA_ERRGCMM: "gc metamethod error",
    LUA_ERRERR: "error handler error",
    LUA_ERRFILE: "file error",
}


class LuaError(Exception):
    """Base class for errors raised inside the VM.

    ``value`` is the Lua error object; it is usually a string but ``error()``
    accepts any value.
    """

    status = LUA_ERRRUN

    def __init__(self, value: Any = None, positioned: bool = True):
        self.value = value
        # Interpreter errors get "chunk:line:" prepended by the frame that raised them
        self.positioned = positioned
        super().__init__(value if isinstance(value, str) else repr(value))


class LuaSyntaxError(LuaError):
    """Lua syntax error during lexing or parsing."""

    status = LUA_ERRSYNTAX

    def __init__(self, message: str = "", line: int = 0, near: str = ""):
        self.message = message
        self.line = line
        self.near = near
        super().__init__(message)

    def format(self, chunkid: str) -> str:
        """Render the message the way ``load`` reports it."""
        text = f"{chunkid}:{self.line}: {self.message}"
        if self.near:
            text += f" near {self.near}"
        return text


class LuaMemoryError(LuaError):
    """Raised when the allocation hook refuses a request."""

    status = LUA_ERRMEM

    def __init__(self, message: str = "not enough memory"):
        super().__init__(message)


class TimeLimitError(LuaError):
    """Raised when execution time limit is exceeded."""

    def __init__(self, message: str = "execution timeout"):
        super().__init__(message)


class LuaPanic(LuaError):
    """An error escaped every protected call and reached the host."""

    def __init__(self, value: Any = None, status: int = LUA_ERRRUN):
        self.status = status
        super().__init__(value)


def runtime_error(message: str) -> LuaError:
    """Create an error that the interpreter will prefix with its position."""
    return LuaError(message, positioned=False)


class LuaYield(Exception):
    """Internal signal used to unwind a coroutine back to ``resume``."""

    def __init__(self, nresults: int):
        self.nresults = nresults
        super().__init__(nresults)
