"""Tests for the Lua VM, run through a State."""

import math
import pytest
from moonbind import LUA_ERRRUN


def run(state, source):
    """Run ``source`` and return its results converted to Python."""
    return state.loadstring(source)().values()


class TestValues:
    """Literals and basic values."""

    def test_integer(self, state):
        """Integers stay integers."""
        assert run(state, "return 42") == [42]
        assert type(run(state, "return 42")[0]) is int

    def test_float(self, state):
        """Floats stay floats."""
        assert run(state, "return 3.5") == [3.5]

    def test_string(self, state):
        """Strings are Python str."""
        assert run(state, 'return "hello"') == ["hello"]

    def test_booleans_and_nil(self, state):
        """true, false and nil."""
        assert run(state, "return true, false, nil") == [True, False, None]

    def test_no_results(self, state):
        """A chunk without return yields nothing."""
        assert run(state, "local x = 1") == []


class TestArithmetic:
    """Arithmetic operators."""

    def test_integer_ops(self, state):
        """+, -, * on integers stay integers."""
        assert run(state, "return 1 + 2, 5 - 3, 4 * 5") == [3, 2, 20]

    def test_division_is_float(self, state):
        """/ always produces a float."""
        assert run(state, "return 7 / 2, 4 / 2") == [3.5, 2.0]

    def test_floor_division(self, state):
        """// floors towards negative infinity."""
        assert run(state, "return 7 // 2, -7 // 2, 7.0 // 2") == [3, -4, 3.0]

    def test_modulo(self, state):
        """% takes the sign of the divisor."""
        assert run(state, "return 5 % 3, -5 % 3, 5 % -3") == [2, 1, -1]

    def test_power(self, state):
        """^ produces a float."""
        assert run(state, "return 2 ^ 10") == [1024.0]

    def test_integer_overflow_wraps(self, state):
        """Integer arithmetic wraps around."""
        assert run(state, "return math.maxinteger + 1 == math.mininteger") == [True]

    def test_division_by_zero(self, state, errors):
        """Float division by zero gives inf; integer modulo by zero is an error."""
        assert run(state, "return 1 / 0") == [math.inf]
        assert run(state, "return 1 % 0") == []
        assert "attempt to perform 'n%0'" in errors[-1][1]

    def test_string_coercion(self, state):
        """Numeric strings take part in arithmetic."""
        assert run(state, 'return "10" + 1') == [11]

    def test_bitwise(self, state):
        """Bitwise operators on integers."""
        assert run(state, "return 6 & 3, 6 | 3, 6 ~ 3, 1 << 4, 256 >> 4, ~0") == [2, 7, 5, 16, 16, -1]

    def test_arithmetic_on_nil(self, state, errors):
        """Arithmetic on nil names the variable."""
        assert run(state, "local x; return x + 1") == []
        assert errors[-1][0] == LUA_ERRRUN
        assert "attempt to perform arithmetic on a nil value (local 'x')" in errors[-1][1]

class TestStrings:
    """String operators."""

    def test_concat(self, state):
        """.. joins strings and numbers."""
        assert run(state, 'return "a" .. "b" .. 1') == ["ab1"]

    def test_concat_float(self, state):
        """Floats keep their decimal point."""
        assert run(state, 'return "" .. 1.0') == ["1.0"]

    def test_length(self, state):
        """# on strings and sequences."""
        assert run(state, 'return #"abc", #{1, 2, 3}') == [3, 3]

    def test_comparison(self, state):
        """Strings compare lexicographically."""
        assert run(state, 'return "a" < "b", "b" <= "a"') == [True, False]

    def test_compare_mixed_types(self, state, errors):
        """Comparing a number with a string is an error."""
        run(state, 'return 1 < "x"')
        assert "attempt to compare number with string" in errors[-1][1]


class TestControlFlow:
    """Statements and loops."""

    def test_if(self, state):
        """if/elseif/else picks one branch."""
        source = """
            local function sign(n)
                if n > 0 then return 1 elseif n < 0 then return -1 else return 0 end
            end
            return sign(5), sign(-5), sign(0)
        """
        assert run(state, source) == [1, -1, 0]

    def test_while(self, state):
        """while loops until the test fails."""
        assert run(state, "local i = 0; while i < 10 do i = i + 1 end; return i") == [10]

    def test_repeat_sees_body_locals(self, state):
        """The until test can see locals of the body."""
        source = "local n = 0; repeat local done = n >= 3; n = n + 1 until done; return n"
        assert run(state, source) == [4]

    def test_numeric_for(self, state):
        """Numeric for with a step."""
        assert run(state, "local s = 0; for i = 10, 1, -2 do s = s + i end; return s") == [30]

    def test_float_for(self, state):
        """Float loops accumulate floats."""
        assert run(state, "local n = 0; for i = 0, 1, 0.25 do n = n + 1 end; return n") == [5]

    def test_for_step_zero(self, state, errors):
        """A zero step is an error."""
        run(state, "for i = 1, 10, 0 do end")
        assert "'for' step is zero" in errors[-1][1]

    def test_generic_for(self, state):
        """ipairs walks the sequence in order."""
        source = """
            local out = {}
            for i, v in ipairs({"a", "b", "c"}) do out[#out + 1] = i .. v end
            return table.concat(out, ",")
        """
        assert run(state, source) == ["1a,2b,3c"]

    def test_break(self, state):
        """break leaves the innermost loop."""
        assert run(state, "local i = 0; while true do i = i + 1; if i == 5 then break end end; return i") == [5]

    def test_logical_short_circuit(self, state):
        """and/or return operands."""
        assert run(state, "return nil or 5, false and 1, 1 and 2") == [5, False, 2]


class TestFunctions:
    """Functions, closures and varargs."""

    def test_recursion(self, state):
        """Recursive local functions."""
        source = "local function fib(n) if n < 2 then return n end return fib(n-1) + fib(n-2) end return fib(15)"
        assert run(state, source) == [610]

    def test_closures_share_upvalues(self, state):
        """Closures over one local see each other's writes."""
        source = """
            local function counter()
                local n = 0
                return function() n = n + 1; return n end, function() return n end
            end
            local inc, get = counter()
            inc(); inc()
            return get()
        """
        assert run(state, source) == [2]

    def test_loop_variable_per_iteration(self, state):
        """Each iteration gets a fresh loop variable."""
        source = """
            local fs = {}
            for i = 1, 3 do fs[i] = function() return i end end
            return fs[1](), fs[3]()
        """
        assert run(state, source) == [1, 3]

    def test_varargs(self, state):
        """select and ... forward extra arguments."""
        source = "local function f(...) return select('#', ...), ... end return f(1, nil, 3)"
        assert run(state, source) == [3, 1, None, 3]

    def test_multiple_results_truncated(self, state):
        """Parentheses truncate to one result."""
        source = "local function f() return 1, 2 end return (f())"
        assert run(state, source) == [1]

    def test_method_call(self, state):
        """obj:method() passes obj as self."""
        source = """
            local obj = {value = 7}
            function obj:get() return self.value end
            return obj:get()
        """
        assert run(state, source) == [7]

    def test_deep_recursion_is_an_error(self, state, errors):
        """Unbounded recursion reports a stack overflow."""
        run(state, "local function f() return 1 + f() end return f()")
        assert "stack overflow" in errors[-1][1]

    def test_call_nil(self, state, errors):
        """Calling nil names the global."""
        run(state, "undefined_function()")
        assert "attempt to call a nil value (global 'undefined_function')" in errors[-1][1]


class TestTables:
    """Tables and metatables."""

    def test_constructor(self, state):
        """Positional and keyed fields."""
        assert run(state, "local t = {1, 2, x = 3, [10] = 4}; return t[1], t[2], t.x, t[10]") == [1, 2, 3, 4]

    def test_float_keys_normalize(self, state):
        """t[1.0] and t[1] are the same slot."""
        assert run(state, "local t = {}; t[1.0] = 'a'; return t[1]") == ["a"]

    def test_index_metamethod(self, state):
        """__index supplies missing keys."""
        source = """
            local base = {greet = "hi"}
            local t = setmetatable({}, {__index = base})
            return t.greet
        """
        assert run(state, source) == ["hi"]

    def test_newindex_metamethod(self, state):
        """__newindex intercepts new keys."""
        source = """
            local log = {}
            local t = setmetatable({}, {__newindex = function(t, k, v) rawset(log, k, v) end})
            t.a = 1
            return rawget(t, "a"), log.a
        """
        assert run(state, source) == [None, 1]

    def test_arith_metamethod(self, state):
        """__add on tables."""
        source = """
            local mt = {__add = function(a, b) return a.v + b.v end}
            local x = setmetatable({v = 1}, mt)
            local y = setmetatable({v = 2}, mt)
            return x + y
        """
        assert run(state, source) == [3]

    def test_call_metamethod(self, state):
        """__call makes tables callable."""
        source = "local t = setmetatable({}, {__call = function(self, a) return a * 2 end}) return t(21)"
        assert run(state, source) == [42]

    def test_eq_metamethod(self, state):
        """__eq decides equality of distinct tables."""
        source = """
            local mt = {__eq = function() return true end}
            return setmetatable({}, mt) == setmetatable({}, mt)
        """
        assert run(state, source) == [True]

    def test_tostring_metamethod(self, state):
        """tostring uses __tostring."""
        source = "return tostring(setmetatable({}, {__tostring = function() return 'obj' end}))"
        assert run(state, source) == ["obj"]

    def test_index_nil(self, state, errors):
        """Indexing nil is an error naming the field."""
        run(state, "local t = {}; return t.a.b")
        assert "attempt to index a nil value (field 'a')" in errors[-1][1]


class TestErrors:
    """error, pcall and error positions."""

    def test_error_position(self, state, errors):
        """error() prefixes the chunk position."""
        run(state, "\n\nerror('boom')")
        assert errors[-1][1] == '[string "..."]:3: boom'

    def test_error_level_zero(self, state, errors):
        """Level 0 leaves the message untouched."""
        run(state, "error('plain', 0)")
        assert errors[-1][1] == "plain"

    def test_pcall(self, state):
        """pcall returns false and the message."""
        ok, message = run(state, "return pcall(error, 'bad', 0)")
        assert ok is False
        assert message == "bad"

    def test_pcall_error_value(self, state):
        """Error values need not be strings."""
        source = "local ok, e = pcall(error, {code = 7}); return e.code"
        assert run(state, source) == [7]

    def test_xpcall_handler(self, state):
        """xpcall passes the error through the handler."""
        source = "return xpcall(function() error('x', 0) end, function(m) return 'handled ' .. m end)"
        assert run(state, source) == [False, "handled x"]

    def test_runtime_error_status(self, state, errors):
        """Runtime errors report LUA_ERRRUN."""
        run(state, "error('e')")
        assert errors[-1][0] == LUA_ERRRUN
