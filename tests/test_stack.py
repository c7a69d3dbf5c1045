"""Tests for ScopedSavedStack."""

import pytest
from moonbind import ScopedSavedStack, LuaError


class TestScopedSavedStack:
    """Stack height restoration."""

    def test_restores_height(self, L):
        """Values pushed inside the guard are dropped on exit."""
        L.pushinteger(1)
        with ScopedSavedStack(L):
            L.pushinteger(2)
            L.pushinteger(3)
        assert L.gettop() == 1
        assert L.tointeger(-1) == 1

    def test_restores_after_pops(self, L):
        """Popping below the saved height pads with nil back to it."""
        L.pushinteger(1)
        L.pushinteger(2)
        with ScopedSavedStack(L):
            L.pop(2)
        assert L.gettop() == 2
        assert L.isnil(-1)

    def test_restores_on_exception(self, L):
        """The height is restored when the block raises."""
        with pytest.raises(RuntimeError):
            with ScopedSavedStack(L):
                L.pushstring("left over")
                raise RuntimeError("boom")
        assert L.gettop() == 0

    def test_restores_on_lua_error(self, L):
        """The height is restored when a Lua error escapes."""
        L.atpanic(lambda L: 0)
        with pytest.raises(LuaError):
            with ScopedSavedStack(L):
                L.pushnil()
                L.pushinteger(1)
                L.gettable(-2)
        assert L.gettop() == 0

    def test_nested_guards(self, L):
        """Each guard returns to its own height."""
        with ScopedSavedStack(L):
            L.pushinteger(1)
            with ScopedSavedStack(L):
                L.pushinteger(2)
                L.pushinteger(3)
            assert L.gettop() == 1
        assert L.gettop() == 0

    def test_keep(self, L):
        """keep(n) leaves the top values right above the saved height."""
        L.pushstring("base")
        with ScopedSavedStack(L) as guard:
            L.pushinteger(1)
            L.pushinteger(2)
            L.pushstring("result")
            guard.keep(1)
        assert L.gettop() == 2
        assert L.tostring(-1) == "result"
        assert L.tostring(-2) == "base"

    def test_keep_more_than_pushed(self, L):
        """keep never reaches below the saved height."""
        L.pushstring("base")
        with ScopedSavedStack(L) as guard:
            L.pushinteger(1)
            guard.keep(5)
        assert L.gettop() == 2
        assert L.tointeger(-1) == 1

    def test_explicit_height(self, L):
        """A height can be given explicitly."""
        L.pushinteger(1)
        L.pushinteger(2)
        with ScopedSavedStack(L, height=0):
            pass
        assert L.gettop() == 0

    def test_early_return(self, L):
        """Returning from inside the guard restores the height."""
        def read_global(name):
            with ScopedSavedStack(L):
                L.getglobal(name)
                return L.typename(L.type(-1))

        assert read_global("print") == "function"
        assert L.gettop() == 0
