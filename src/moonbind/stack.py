"""Scoped restoration of the operand stack height."""

from typing import Optional

from .lua import LuaState


class ScopedSavedStack:
    """Record the stack height on entry and restore it on every exit path.

    Nested guards compose: each one only ever returns to its own height.
    ``keep(n)`` commits the top ``n`` values, which are moved down to sit
    right above the saved height when the guard exits.

    Usage::

        with ScopedSavedStack(L) as guard:
            L.getglobal("print")
            ...
    """

    def __init__(self, L: LuaState, height: Optional[int] = None):
        self.L = L
        self.saved = L.gettop() if height is None else height
        self.kept = 0

    def __enter__(self) -> "ScopedSavedStack":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.restore()
        return False

    def keep(self, n: int = 1) -> None:
        """Leave the top ``n`` values for the caller."""
        self.kept = n

    def restore(self) -> None:
        L = self.L
        top = L.gettop()
        n = min(self.kept, top - self.saved)
        if n > 0:
            first = top - n + 1
            if first > self.saved + 1:
                for i in range(n):
                    L.copy(first + i, self.saved + 1 + i)
            L.settop(self.saved + n)
        else:
            L.settop(self.saved)
