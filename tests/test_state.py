"""Tests for State: construction, libraries and the load/execute protocol."""

import pytest
from moonbind import (
    State, ErrorHandler, LuaFunction, LuaTable, LuaMemoryError, LuaPanic,
    standard_libs, no_load_lib, DefaultAllocator, LimitedAllocator,
    LUA_ERRSYNTAX, LUA_ERRRUN, LUA_ERRFILE, LUA_ERRMEM,
)
from moonbind.lua import auxlib


class TestConstruction:
    """Creating, wrapping and closing VMs."""

    def test_created_state_is_closed(self):
        """A State that created its VM closes it."""
        state = State()
        L = state.state
        assert state.created
        state.close()
        assert L.G.closed
        assert state.closed

    def test_close_twice(self):
        """close() is idempotent."""
        state = State()
        state.close()
        state.close()
        assert state.closed

    def test_wrapped_state_is_not_closed(self):
        """Wrapping a VM never closes it."""
        L = auxlib.new_state()
        try:
            wrapper = State.wrap(L)
            assert not wrapper.created
            wrapper.close()
            del wrapper
            assert not L.G.closed
            L.pushinteger(1)
            assert L.tointeger(-1) == 1
        finally:
            L.close()

    def test_context_manager(self):
        """Leaving the with block closes the VM."""
        with State() as state:
            L = state.state
            assert state.dostring("x = 1")
        assert L.G.closed

    def test_no_libs(self):
        """no_load_lib opens nothing."""
        with State(no_load_lib()) as state:
            assert state["print"].is_nil()
            assert state["string"].is_nil()

    def test_selected_libs(self):
        """Only the requested libraries are opened."""
        libs = [lib for lib in standard_libs() if lib[0] in ("_G", "math")]
        with State(libs) as state:
            assert not state["math"].is_nil()
            assert state["table"].is_nil()

    def test_openlib_later(self):
        """Libraries can be opened after construction."""
        with State(no_load_lib()) as state:
            state.openlib(next(lib for lib in standard_libs() if lib[0] == "string"))
            assert state["string"]["upper"]("abc").values() == ["ABC"]

    def test_custom_allocator(self):
        """A State takes an allocator object."""
        allocator = LimitedAllocator(10**8, DefaultAllocator())
        with State(allocator=allocator) as state:
            assert allocator.used > 0
            assert state.dostring("t = {1, 2, 3}")
        assert allocator.used == 0

    def test_allocator_refusing_start(self):
        """Construction fails cleanly if the allocator refuses everything."""
        with pytest.raises(LuaMemoryError):
            State(memory_limit=16)

    def test_default_handler_installed(self):
        """A new State reports to stderr until told otherwise."""
        with State() as state:
            assert ErrorHandler.instance().get_handler(state.state) is not None

    def test_handler_removed_on_close(self):
        """Closing a State drops its error handler."""
        state = State()
        L = state.state
        state.close()
        assert ErrorHandler.instance().get_handler(L) is None


class TestLoadExecute:
    """loadstring, dostring, dofile and errors."""

    def test_dostring_result(self, state):
        """return 1+1 evaluates to 2."""
        results = state.loadstring("return 1+1")()
        assert results.ok
        assert results[0] == 2

    def test_dostring_success(self, state, errors):
        """dostring returns True and reports nothing."""
        assert state.dostring("x = 1 + 1") is True
        assert state["x"] == 2
        assert errors == []

    def test_invalid_source(self, state, errors):
        """A syntax error returns False and reports exactly once."""
        assert state.dostring("this is not valid") is False
        assert len(errors) == 1
        status, message = errors[0]
        assert status == LUA_ERRSYNTAX
        assert message.startswith('[string "this is not valid"]:1:')

    def test_loadstring_error_gives_nil_ref(self, state, errors):
        """A failed load returns a nil function reference."""
        function = state.loadstring("return +")
        assert isinstance(function, LuaFunction)
        assert function.is_nilref()
        assert len(errors) == 1

    def test_runtime_error_location(self, state, errors):
        """Runtime errors carry the line."""
        assert state.dostring("local a = 1\nlocal b = nil + a") is False
        assert errors[0][0] == LUA_ERRRUN
        assert ":2:" in errors[0][1]

    def test_call_operator(self, state):
        """state(source) is dostring."""
        assert state("y = 5")
        assert state["y"] == 5

    def test_dofile(self, state, tmp_path):
        """dofile runs a file and names it in errors."""
        path = tmp_path / "script.lua"
        path.write_text("answer = 6 * 7\n")
        assert state.dofile(path)
        assert state["answer"] == 42

    def test_dofile_error_names_file(self, state, errors, tmp_path):
        """Errors in files are located by file name."""
        path = tmp_path / "bad.lua"
        path.write_text("\nerror('nope')\n")
        assert state.dofile(path) is False
        assert errors[0][1].endswith("bad.lua:2: nope")

    def test_dofile_missing(self, state, errors, tmp_path):
        """A missing file is a file error."""
        assert state.dofile(tmp_path / "missing.lua") is False
        assert errors[0][0] == LUA_ERRFILE
        assert "cannot open" in errors[0][1]

    def test_loadfile(self, state, tmp_path):
        """loadfile compiles without running."""
        path = tmp_path / "f.lua"
        path.write_text("return ...")
        function = state.loadfile(path)
        assert function("a", "b").values() == ["a", "b"]


class TestErrorHandlers:
    """Error handler behaviour seen from a State."""

    def test_custom_handler_gets_location(self):
        """A custom handler is called once with the error location."""
        with State() as state:
            calls = []
            state.set_error_handler(lambda status, message: calls.append((status, message)))
            state.dostring("x = = 1")
            assert len(calls) == 1
            assert calls[0][0] == LUA_ERRSYNTAX
            assert ":1:" in calls[0][1]

    def test_default_handler_writes_stderr(self, capsys):
        """Without a custom handler errors go to stderr."""
        with State() as state:
            state.dostring("error('to stderr', 0)")
        assert "to stderr" in capsys.readouterr().err

    def test_handler_replaced(self):
        """Registering again replaces the previous handler."""
        with State() as state:
            first, second = [], []
            state.set_error_handler(lambda s, m: first.append(m))
            state.set_error_handler(lambda s, m: second.append(m))
            state.dostring("error('x')")
            assert first == []
            assert len(second) == 1

    def test_failing_handler_is_contained(self):
        """A handler that raises does not break the State."""
        def bad_handler(status, message):
            raise RuntimeError("handler bug")

        with State() as state:
            state.set_error_handler(bad_handler)
            assert state.dostring("error('x')") is False
            assert state.dostring("return 1") is True

    def test_non_string_error_object(self, state, errors):
        """Tables raised as errors are described by type."""
        state.dostring("error({})")
        assert errors[0][1] == "(error object is a table value)"


class TestEnvironment:
    """Running chunks with their own global table."""

    def test_env_isolates_globals(self, state, errors):
        """A chunk run with a fresh env cannot see the real globals."""
        state["secret"] = 42
        env = state.new_table()
        assert state.dostring("seen = secret", env) is True
        assert env["seen"] is None
        assert state["seen"].is_nil()

    def test_env_missing_function(self, state, errors):
        """Library functions are absent from a fresh env."""
        env = state.new_table()
        assert state.dostring("print('x')", env) is False
        assert "attempt to call a nil value (global 'print')" in errors[0][1]

    def test_env_receives_assignments(self, state):
        """Globals assigned by the chunk land in the env table."""
        env = state.new_table()
        state.dostring("a = 1; b = 'two'", env)
        assert env.to_dict() == {"a": 1, "b": "two"}
        assert state["a"].is_nil()

    def test_env_from_dict(self, state):
        """A dict is accepted as the environment."""
        assert state.dostring("assert(x == 3)", {"x": 3, "assert": state["assert"]})

    def test_set_function_env(self, state):
        """set_function_env rebinds a loaded chunk."""
        function = state.loadstring("return value")
        env = state.new_table()
        env["value"] = "from env"
        assert function.set_function_env(env)
        assert function().values() == ["from env"]


class TestGlobals:
    """Global access and value factories."""

    def test_set_and_get(self, state):
        """Globals round through the indexing operator."""
        state["n"] = 10
        state["s"] = "str"
        assert state["n"] == 10
        assert state["s"].value == "str"

    def test_wide_integers_become_floats(self, state):
        """Integers outside the 64-bit range are not wrapped."""
        state["big"] = 2**70
        assert state["big"].value == float(2**70)
        assert state.loadstring("return math.type(big)")().values() == ["float"]
        state["huge"] = 10**400
        assert state["huge"].value == float("inf")

    def test_wide_integer_results(self, state):
        """Host function results keep their magnitude."""
        state["echo"] = lambda x: x
        state["wide"] = lambda: 2**64
        assert state.loadstring("return wide() > 0")().values() == [True]
        assert state["wide"]().values() == [float(2**64)]
        assert state["echo"](2**63 - 1).values() == [2**63 - 1]

    def test_nested_access(self, state):
        """Nested tables are reachable by chained indexing."""
        state.dostring("config = {db = {port = 5432}}")
        assert state["config"]["db"]["port"] == 5432

    def test_nested_assignment(self, state):
        """Chained indexing can assign."""
        state.dostring("config = {db = {}}")
        state["config"]["db"]["host"] = "localhost"
        assert state.loadstring("return config.db.host")().values() == ["localhost"]

    def test_python_function_global(self, state):
        """Python callables become Lua functions."""
        state["add"] = lambda a, b: a + b
        assert state.loadstring("return add(2, 3)")().values() == [5]

    def test_python_function_multiple_results(self, state):
        """A tuple result is several Lua values."""
        state["pair"] = lambda: (1, "two")
        assert state.loadstring("return pair()")().values() == [1, "two"]

    def test_python_exception_becomes_lua_error(self, state, errors):
        """Exceptions raised by Python functions are Lua errors."""
        def fail():
            raise ValueError("bad input")

        state["fail"] = fail
        assert state.loadstring("return pcall(fail)")().values() == [False, "ValueError: bad input"]

    def test_python_object_as_userdata(self, state):
        """Other objects travel as userdata."""
        marker = object()
        state["obj"] = marker
        assert state.loadstring("return type(obj)")().values() == ["userdata"]
        assert state["obj"].value is marker

    def test_new_ref(self, state):
        """new_ref stores any value."""
        ref = state.new_ref([1, 2, 3])
        assert isinstance(ref, LuaTable)
        assert ref.to_list() == [1, 2, 3]

    def test_global_table(self, state):
        """global_table is _G."""
        assert state.global_table() == state["_G"].ref()

    def test_push_and_pop(self, state):
        """push_to_stack and pop_from_stack are inverse."""
        L = state.state
        top = L.gettop()
        state.push_to_stack("value")
        assert L.gettop() == top + 1
        assert state.pop_from_stack() == "value"
        assert L.gettop() == top


class TestStackBalance:
    """Every State operation leaves the stack as it found it."""

    def test_operations_keep_stack_height(self, state, tmp_path):
        """Success and failure paths restore the height."""
        L = state.state
        top = L.gettop()
        path = tmp_path / "ok.lua"
        path.write_text("return 1")
        operations = [
            lambda: state.dostring("x = {1, 2, 3}"),
            lambda: state.dostring("syntax error here"),
            lambda: state.dostring("error('runtime')"),
            lambda: state.dofile(path),
            lambda: state.dofile(tmp_path / "missing.lua"),
            lambda: state.loadstring("return 1, 2, 3")(),
            lambda: state.loadstring("error('x')")(),
            lambda: state["x"][2],
            lambda: state["x"].typename(),
            lambda: state.new_table().set("k", "v"),
            lambda: state.new_thread(state.loadstring("coroutine.yield(1)")).resume(),
            lambda: state.global_table().items(),
            lambda: state.gc().collect(),
            lambda: state.use_kbytes(),
        ]
        for operation in operations:
            operation()
            assert L.gettop() == top


class TestLimits:
    """Memory and time limits."""

    def test_memory_limit(self):
        """Exceeding the memory limit is a memory error."""
        with State(memory_limit=2 * 1024 * 1024) as state:
            errors = []
            state.set_error_handler(lambda status, message: errors.append((status, message)))
            ok = state.dostring("local t = {} for i = 1, 10000000 do t[i] = {} end")
            assert ok is False
            assert errors[0][1] == "not enough memory"
            # Memory is freed again once the garbage is gone
            state.garbage_collect()
            assert state.dostring("y = 1")

    def test_memory_limit_caught_by_pcall(self):
        """pcall catches memory errors."""
        with State(memory_limit=2 * 1024 * 1024) as state:
            source = "return pcall(function() local t = {} for i = 1, 10000000 do t[i] = {} end end)"
            assert state.loadstring(source)().values() == [False, "not enough memory"]

    def test_memory_limit_counts_strings(self):
        """A string larger than the limit is a memory error."""
        with State(memory_limit=1_000_000) as state:
            errors = []
            state.set_error_handler(lambda status, message: errors.append((status, message)))
            assert state.dostring("big = string.rep('x', 100000000)") is False
            assert errors == [(LUA_ERRMEM, "not enough memory")]
            assert state["big"].is_nil()

    def test_memory_limit_counts_concatenation(self):
        """Strings grown by concatenation are charged as they are built."""
        with State(memory_limit=1_000_000) as state:
            errors = []
            state.set_error_handler(lambda status, message: errors.append((status, message)))
            assert state.dostring("s = 'x' for i = 1, 30 do s = s .. s end") is False
            assert errors == [(LUA_ERRMEM, "not enough memory")]
            assert len(state["s"].get()) < 1_000_000

    @pytest.mark.timeout(30)
    def test_time_limit(self):
        """Long running code is stopped."""
        with State(time_limit=0.2) as state:
            errors = []
            state.set_error_handler(lambda status, message: errors.append(message))
            assert state.dostring("while true do end") is False
            assert "execution timeout" in errors[0]

    @pytest.mark.timeout(30)
    def test_time_limit_not_caught_by_pcall(self):
        """A script cannot catch its own timeout."""
        with State(time_limit=0.2) as state:
            errors = []
            state.set_error_handler(lambda status, message: errors.append(message))
            assert state.dostring("pcall(function() while true do end end) done = true") is False
            assert state["done"].is_nil()

    @pytest.mark.timeout(30)
    def test_time_limit_covers_handle_indexing(self):
        """An endless __index reached by indexing a handle is stopped."""
        with State(time_limit=0.2) as state:
            state.dostring("t = setmetatable({}, {__index = function() while true do end end})")
            table = state["t"].value
            with pytest.raises(LuaPanic) as info:
                table.get("missing")
            assert "execution timeout" in str(info.value)
