"""Tests for the stack API and the auxiliary library."""

import pytest
from moonbind.lua import (
    auxlib, new_state, upvalueindex, chunkid,
    LuaError, LuaPanic,
    LUA_OK, LUA_ERRRUN, LUA_ERRSYNTAX, LUA_ERRERR, LUA_MULTRET, LUA_REGISTRYINDEX,
    LUA_RIDX_GLOBALS, LUA_OPEQ, LUA_OPLT, LUA_OPLE,
    LUA_TNIL, LUA_TNONE, LUA_TNUMBER, LUA_TSTRING, LUA_TTABLE, LUA_GCCOUNT,
)
from moonbind.lua.api import LUA_OPADD, LUA_OPUNM


class TestStackManipulation:
    """Indices, top and moving values."""

    def test_push_and_top(self, L):
        """gettop counts pushed values."""
        L.pushnil()
        L.pushinteger(1)
        L.pushstring("s")
        assert L.gettop() == 3
        assert L.type(1) == LUA_TNIL
        assert L.type(-1) == LUA_TSTRING
        assert L.type(4) == LUA_TNONE

    def test_settop(self, L):
        """settop grows with nil and shrinks."""
        L.settop(3)
        assert L.gettop() == 3
        assert L.isnil(3)
        L.settop(1)
        assert L.gettop() == 1

    def test_absindex(self, L):
        """Negative indices become absolute."""
        L.pushinteger(1)
        L.pushinteger(2)
        assert L.absindex(-1) == 2
        assert L.absindex(LUA_REGISTRYINDEX) == LUA_REGISTRYINDEX

    def test_insert_remove_replace(self, L):
        """insert, remove and replace move values around."""
        for n in (1, 2, 3):
            L.pushinteger(n)
        L.insert(1)
        assert [L.tointeger(i) for i in (1, 2, 3)] == [3, 1, 2]
        L.remove(1)
        assert [L.tointeger(i) for i in (1, 2)] == [1, 2]
        L.pushinteger(9)
        L.replace(1)
        assert [L.tointeger(i) for i in (1, 2)] == [9, 2]

    def test_rotate(self, L):
        """rotate shifts values towards the top."""
        for n in (1, 2, 3, 4):
            L.pushinteger(n)
        L.rotate(2, 1)
        assert [L.tointeger(i) for i in (1, 2, 3, 4)] == [1, 4, 2, 3]
        L.rotate(2, -1)
        assert [L.tointeger(i) for i in (1, 2, 3, 4)] == [1, 2, 3, 4]

    def test_xmove(self, L):
        """xmove transfers values between threads."""
        co = L.newthread()
        L.pop()
        L.pushinteger(1)
        L.pushinteger(2)
        L.xmove(co, 2)
        assert L.gettop() == 0
        assert co.gettop() == 2
        assert co.tointeger(-1) == 2


class TestConversions:
    """Type checks and conversions."""

    def test_number_string_coercion(self, L):
        """Numbers and numeric strings convert both ways."""
        L.pushstring("10")
        L.pushinteger(5)
        assert L.isnumber(1)
        assert L.tonumber(1) == 10
        assert L.isstring(2)
        assert L.tostring(2) == "5"

    def test_tointeger(self, L):
        """Only exact integers convert."""
        L.pushnumber(3.0)
        L.pushnumber(3.5)
        assert L.tointeger(1) == 3
        assert L.tointeger(2) is None
        assert L.isinteger(1) is False

    def test_toboolean(self, L):
        """Only nil and false are false."""
        L.pushnil()
        L.pushboolean(False)
        L.pushinteger(0)
        L.pushstring("")
        assert [L.toboolean(i) for i in (1, 2, 3, 4)] == [False, False, True, True]

    def test_pushstring_is_charged(self, L):
        """Pushed strings are charged to the heap."""
        before = L.gc(LUA_GCCOUNT)
        L.pushstring("x" * 10000)
        assert L.gc(LUA_GCCOUNT) >= before + 9

    def test_rawlen(self, L):
        """rawlen of strings and tables."""
        L.pushstring("abcd")
        auxlib.dostring(L, "return {1, 2, 3}")
        assert L.rawlen(1) == 4
        assert L.rawlen(2) == 3


class TestTables:
    """Table access through the stack."""

    def test_fields(self, L):
        """setfield and getfield."""
        L.newtable()
        L.pushinteger(42)
        L.setfield(-2, "answer")
        assert L.getfield(-1, "answer") == LUA_TNUMBER
        assert L.tointeger(-1) == 42

    def test_integer_keys(self, L):
        """seti, geti and rawseti, rawgeti."""
        L.newtable()
        L.pushstring("a")
        L.seti(-2, 1)
        L.pushstring("b")
        L.rawseti(-2, 2)
        assert L.geti(-1, 1) == LUA_TSTRING
        L.pop()
        assert L.rawgeti(-1, 2) == LUA_TSTRING
        assert L.tostring(-1) == "b"

    def test_globals(self, L):
        """setglobal and getglobal use the globals table."""
        L.pushinteger(5)
        L.setglobal("five")
        assert L.getglobal("five") == LUA_TNUMBER
        L.rawgeti(LUA_REGISTRYINDEX, LUA_RIDX_GLOBALS)
        assert L.getfield(-1, "five") == LUA_TNUMBER

    def test_metatable(self, L):
        """setmetatable and getmetatable."""
        L.newtable()
        assert not L.getmetatable(-1)
        L.newtable()
        L.setmetatable(-2)
        assert L.getmetatable(-1)
        assert L.istable(-1)

    def test_next(self, L):
        """next walks every pair."""
        auxlib.dostring(L, "return {x = 1, y = 2}")
        L.pushnil()
        keys = []
        while L.next(1):
            keys.append(L.tostring(-2))
            L.pop()
        assert sorted(keys) == ["x", "y"]

    def test_userdata(self, L):
        """Userdata carries a Python value and a user value."""
        payload = {"any": "object"}
        L.newuserdata(16, payload)
        assert L.isuserdata(-1)
        assert L.touserdata(-1) is payload
        assert L.rawlen(-1) == 16
        L.pushstring("extra")
        L.setuservalue(-2)
        assert L.getuservalue(-1) == LUA_TSTRING


class TestOperators:
    """compare, arith, concat and len."""

    def test_compare(self, L):
        """Comparison options."""
        L.pushinteger(1)
        L.pushinteger(2)
        assert L.compare(1, 2, LUA_OPLT)
        assert L.compare(1, 2, LUA_OPLE)
        assert not L.compare(1, 2, LUA_OPEQ)

    def test_arith(self, L):
        """arith replaces the operands with the result."""
        L.pushinteger(2)
        L.pushinteger(3)
        L.arith(LUA_OPADD)
        assert L.gettop() == 1
        assert L.tointeger(-1) == 5
        L.arith(LUA_OPUNM)
        assert L.tointeger(-1) == -5

    def test_concat(self, L):
        """concat joins n values; zero gives the empty string."""
        L.pushstring("a")
        L.pushinteger(1)
        L.pushstring("b")
        L.concat(3)
        assert L.tostring(-1) == "a1b"
        L.concat(0)
        assert L.tostring(-1) == ""

    def test_len_metamethod(self, L):
        """len honours __len."""
        auxlib.dostring(L, "return setmetatable({}, {__len = function() return 7 end})")
        L.len(-1)
        assert L.tointeger(-1) == 7


class TestCalls:
    """call, pcall and load."""

    def test_call(self, L):
        """call leaves nresults values."""
        auxlib.loadstring(L, "return ...")
        L.pushinteger(1)
        L.pushinteger(2)
        L.call(2, 1)
        assert L.gettop() == 1
        assert L.tointeger(-1) == 1

    def test_call_multret(self, L):
        """LUA_MULTRET keeps every result."""
        auxlib.loadstring(L, "return 1, 2, 3")
        L.call(0, LUA_MULTRET)
        assert L.gettop() == 3

    def test_pcall_error(self, L):
        """pcall leaves the error object."""
        auxlib.loadstring(L, "error('bad', 0)")
        assert L.pcall(0, 0) == LUA_ERRRUN
        assert L.tostring(-1) == "bad"
        assert L.gettop() == 1

    def test_pcall_message_handler(self, L):
        """The message handler transforms the error."""
        auxlib.loadstring(L, "return function(m) return 'handled: ' .. m end")
        L.call(0, 1)
        auxlib.loadstring(L, "error('bad', 0)")
        assert L.pcall(0, 0, 1) == LUA_ERRRUN
        assert L.tostring(-1) == "handled: bad"

    def test_pcall_failing_handler(self, L):
        """An error in the handler is LUA_ERRERR."""
        auxlib.loadstring(L, "return function(m) error('again') end")
        L.call(0, 1)
        auxlib.loadstring(L, "error('bad', 0)")
        assert L.pcall(0, 0, 1) == LUA_ERRERR
        assert L.tostring(-1) == "error in error handling"

    def test_load_syntax_error(self, L):
        """load pushes the message on failure."""
        assert L.load("x = ", "=chunk") == LUA_ERRSYNTAX
        assert L.tostring(-1).startswith("chunk:1:")

    def test_load_binary_refused(self, L):
        """Precompiled chunks are not accepted."""
        assert L.load("\x1bLua", "=bin") == LUA_ERRSYNTAX

    def test_pyfunction_with_upvalues(self, L):
        """Host functions read their upvalues."""
        def get_upvalue(L):
            L.pushvalue(upvalueindex(1))
            return 1

        L.pushstring("captured")
        L.pushpyfunction(get_upvalue, 1, "get_upvalue")
        L.call(0, 1)
        assert L.tostring(-1) == "captured"

    def test_unprotected_error_panics(self, L):
        """Errors outside any protected call reach the panic function."""
        seen = []
        L.atpanic(lambda L: seen.append(L.tostring(-1)) or 0)
        auxlib.loadstring(L, "error('unprotected', 0)")
        with pytest.raises(LuaPanic):
            L.call(0, 0)
        assert seen == ["unprotected"]

    def test_upvalues(self, L):
        """getupvalue and setupvalue on a chunk's _ENV."""
        auxlib.loadstring(L, "return x")
        assert L.getupvalue(-1, 1) == "_ENV"
        L.pop()
        auxlib.dostring(L, "return {x = 'custom'}")
        assert L.setupvalue(-2, 1) == "_ENV"
        L.call(0, 1)
        assert L.tostring(-1) == "custom"


class TestAuxlib:
    """Auxiliary library helpers."""

    def test_chunkid(self):
        """Chunk names are shortened for messages."""
        assert chunkid("=stdin") == "stdin"
        assert chunkid("@file.lua") == "file.lua"
        assert chunkid("return 1") == '[string "return 1"]'
        assert chunkid("line one\nline two") == '[string "line one..."]'

    def test_ref_and_unref(self, L):
        """References reuse freed slots."""
        L.pushstring("a")
        first = auxlib.ref(L, LUA_REGISTRYINDEX)
        L.pushstring("b")
        second = auxlib.ref(L, LUA_REGISTRYINDEX)
        assert first != second
        auxlib.unref(L, LUA_REGISTRYINDEX, first)
        L.pushstring("c")
        assert auxlib.ref(L, LUA_REGISTRYINDEX) == first
        assert L.gettop() == 0

    def test_ref_nil(self, L):
        """nil is never stored."""
        L.pushnil()
        assert auxlib.ref(L, LUA_REGISTRYINDEX) == auxlib.LUA_REFNIL

    def test_newmetatable(self, L):
        """newmetatable registers the table once under its name."""
        assert auxlib.newmetatable(L, "Point") is True
        L.pop()
        assert auxlib.newmetatable(L, "Point") is False
        assert L.getfield(-1, "__name") == LUA_TSTRING

    def test_checkudata(self, L):
        """checkudata accepts matching userdata only."""
        auxlib.newmetatable(L, "Point")
        L.pop()
        L.newuserdata(0, (1, 2))
        L.getfield(LUA_REGISTRYINDEX, "Point")
        L.setmetatable(-2)
        assert auxlib.checkudata(L, 1, "Point").value == (1, 2)

    def test_tolstring(self, L):
        """tolstring formats any value."""
        L.pushboolean(True)
        assert auxlib.tolstring(L, 1) == "true"
        L.newtable()
        assert auxlib.tolstring(L, 3).startswith("table: ")

    def test_dostring(self, L):
        """dostring runs code and leaves its results."""
        assert auxlib.dostring(L, "return 40 + 2") == LUA_OK
        assert L.tointeger(-1) == 42

    def test_requiref(self, L):
        """requiref caches modules in _LOADED and sets the global."""
        def open_demo(L):
            L.newtable()
            L.pushinteger(1)
            L.setfield(-2, "version")
            return 1

        auxlib.requiref(L, "demo", open_demo, True)
        assert L.istable(-1)
        L.pop()
        assert auxlib.dostring(L, "return demo.version") == LUA_OK
        assert L.tointeger(-1) == 1

    def test_loadfile_missing(self, L, tmp_path):
        """Missing files give LUA_ERRFILE."""
        from moonbind.lua import LUA_ERRFILE
        assert auxlib.loadfile(L, str(tmp_path / "none.lua")) == LUA_ERRFILE
        assert L.tostring(-1).startswith("cannot open ")

    def test_new_state_with_refusing_allocator(self):
        """new_state returns None when no memory is available."""
        assert new_state(lambda ud, ptr, osize, nsize: None) is None
