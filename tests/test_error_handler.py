"""Tests for the error handler registry."""

import gc
import pytest
from moonbind import ErrorHandler, stderror_out, LUA_ERRRUN
from moonbind.error_handler import error_message
from moonbind.lua import auxlib


class TestErrorHandlerRegistry:
    """Registration and lookup."""

    def test_singleton(self):
        """instance() always returns the same registry."""
        assert ErrorHandler.instance() is ErrorHandler.instance()

    def test_register_and_handle(self, L):
        """handle passes the status and the message on top of the stack."""
        calls = []
        registry = ErrorHandler.instance()
        registry.register_handler(L, lambda status, message: calls.append((status, message)))
        L.pushstring("went wrong")
        registry.handle(LUA_ERRRUN, L)
        assert calls == [(LUA_ERRRUN, "went wrong")]
        registry.unregister_handler(L)

    def test_handle_does_not_pop(self, L):
        """The error value stays on the stack."""
        registry = ErrorHandler.instance()
        registry.register_handler(L, lambda status, message: None)
        L.pushstring("msg")
        registry.handle(LUA_ERRRUN, L)
        assert L.gettop() == 1
        registry.unregister_handler(L)

    def test_coroutines_share_handler(self, L):
        """Threads of one VM find the main thread's handler."""
        calls = []
        registry = ErrorHandler.instance()
        registry.register_handler(L, lambda status, message: calls.append(message))
        co = L.newthread()
        co.pushstring("from coroutine")
        registry.handle(LUA_ERRRUN, co)
        assert calls == ["from coroutine"]
        registry.unregister_handler(L)

    def test_unregister(self, L):
        """Unregistering falls back to stderr."""
        registry = ErrorHandler.instance()
        registry.register_handler(L, lambda status, message: None)
        registry.unregister_handler(L)
        assert registry.get_handler(L) is None
        registry.unregister_handler(L)

    def test_fallback_to_stderr(self, L, capsys):
        """Without a handler the message goes to stderr."""
        ErrorHandler.instance().unregister_handler(L)
        L.pushstring("unhandled")
        ErrorHandler.instance().handle(LUA_ERRRUN, L)
        assert capsys.readouterr().err == "unhandled\n"

    def test_entries_die_with_their_vm(self):
        """Dropping every reference to a VM removes its entry."""
        registry = ErrorHandler.instance()
        gc.collect()
        before = len(registry)
        L = auxlib.new_state()
        registry.register_handler(L, lambda status, message: None)
        assert len(registry) == before + 1
        L.close()
        del L
        gc.collect()
        assert len(registry) == before

    def test_handler_exception_is_logged(self, L, caplog):
        """A raising handler is logged, not propagated."""
        def bad(status, message):
            raise ValueError("oops")

        registry = ErrorHandler.instance()
        registry.register_handler(L, bad)
        L.pushstring("x")
        registry.handle(LUA_ERRRUN, L)
        assert "Error handler failed" in caplog.text
        registry.unregister_handler(L)


class TestErrorMessage:
    """Rendering error objects."""

    def test_string(self, L):
        """Strings are used as they are."""
        L.pushstring("text")
        assert error_message(L) == "text"

    def test_number(self, L):
        """Numbers are converted."""
        L.pushinteger(12)
        assert error_message(L) == "12"

    def test_other(self, L):
        """Other values are described by type."""
        L.newtable()
        assert error_message(L) == "(error object is a table value)"

    def test_empty_stack(self, L):
        """An empty stack gives an empty message."""
        assert error_message(L) == ""


class TestStderrorOut:
    """The default handler."""

    def test_writes_line(self, capsys):
        """The message is written as one line."""
        stderror_out(LUA_ERRRUN, "message")
        assert capsys.readouterr().err == "message\n"
