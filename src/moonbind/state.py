"""The VM instance: creation, library loading and the load/execute protocol."""

import logging
import sys
from typing import Any, Callable, List, Optional, Tuple

from .allocator import DefaultAllocator, LimitedAllocator, allocator_function
from .convert import push_value
from .error_handler import ErrorHandler, ErrorFunction, stderror_out
from .gc import GCType
from .ref import (
    LuaRef, LuaTable, LuaFunction, LuaThread, TableKeyReference, make_ref,
)
from .stack import ScopedSavedStack
from .lua import LuaState, LuaMemoryError, auxlib, new_state, LUA_OK, LUA_MULTRET
from .lua.stdlib import STANDARD_LIBS

logger = logging.getLogger(__name__)

LoadLib = Tuple[str, Callable[[LuaState], int]]


def standard_libs() -> List[LoadLib]:
    """The standard libraries, in the order they are opened."""
    return list(STANDARD_LIBS)


def no_load_lib() -> List[LoadLib]:
    """An empty library set."""
    return []


def default_panic(L: LuaState) -> int:
    """Last-resort report of an error raised outside any protected call."""
    print(f"PANIC: unprotected error in call to Lua API ({L.tostring(-1)})", file=sys.stderr)
    sys.stderr.flush()
    return 0


class State:
    """A VM instance.

    A ``State`` either creates its VM, and closes it on ``close()``, or wraps
    an existing one (``State.wrap``) and leaves it open.

    Args:
        libs: ``(name, loader)`` pairs to open, in order. Defaults to
            ``standard_libs()``.
        allocator: Object with ``allocate``, ``reallocate`` and
            ``deallocate``. Defaults to ``DefaultAllocator()``.
        memory_limit: Maximum bytes the VM may hold.
        time_limit: Maximum seconds for one protected call, resume or
            unprotected API call. Metamethods reached by indexing a handle
            run under it too; a timeout there surfaces as ``LuaPanic``.
    """

    def __init__(
        self,
        libs: Optional[List[LoadLib]] = None,
        allocator: Any = None,
        memory_limit: Optional[int] = None,
        time_limit: Optional[float] = None,
    ):
        if allocator is None:
            allocator = DefaultAllocator()
        if memory_limit is not None:
            allocator = LimitedAllocator(memory_limit, allocator)
        # Must outlive the VM: blocks are returned to it during close()
        self._allocator = allocator
        L = new_state(allocator_function, allocator)
        if L is None:
            raise LuaMemoryError()
        self._state = L
        self._created = True
        L.atpanic(default_panic)
        L.G.time_limit = time_limit
        self._init()
        self.openlibs(libs)
        logger.debug("Created state with %d KB in use", self.use_kbytes())

    @classmethod
    def wrap(cls, L: LuaState) -> "State":
        """Wrap a VM created elsewhere; ``close()`` will not close it."""
        self = cls.__new__(cls)
        self._allocator = None
        self._state = L
        self._created = False
        self._init()
        return self

    def _init(self) -> None:
        if ErrorHandler.instance().get_handler(self._state) is None:
            self.set_error_handler(stderror_out)

    @property
    def state(self) -> LuaState:
        return self._state

    @property
    def created(self) -> bool:
        return self._created

    @property
    def closed(self) -> bool:
        return self._state.G.closed

    def close(self) -> None:
        """Close the VM if this instance created it."""
        if not self._created or self._state.G.closed:
            return
        ErrorHandler.instance().unregister_handler(self._state)
        self._state.close()
        self._allocator = None
        logger.debug("Closed state")

    def __enter__(self) -> "State":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def __del__(self):
        if getattr(self, "_state", None) is not None:
            self.close()

    def set_error_handler(self, handler: ErrorFunction) -> None:
        """Send this VM's error reports to ``handler(status, message)``."""
        with ScopedSavedStack(self._state):
            ErrorHandler.instance().register_handler(self._state, handler)

    # ---- Libraries ----

    def openlibs(self, libs: Optional[List[LoadLib]] = None) -> None:
        if libs is None:
            libs = standard_libs()
        for lib in libs:
            self.openlib(lib)

    def openlib(self, lib: LoadLib) -> None:
        """Open one ``(name, loader)`` library and make it a global."""
        name, loader = lib
        with ScopedSavedStack(self._state):
            auxlib.requiref(self._state, name, loader, True)
        logger.debug("Opened library %s", name)

    # ---- Load and execute ----

    def loadfile(self, path: str) -> LuaFunction:
        """Compile a file; on error report it and return a nil reference."""
        return LuaFunction.loadfile(self._state, path)

    def loadstring(self, source: str) -> LuaFunction:
        """Compile source text; on error report it and return a nil reference."""
        return LuaFunction.loadstring(self._state, source)

    def _execute(self, status: int, env: Any) -> bool:
        L = self._state
        handler = ErrorHandler.instance()
        if status != LUA_OK:
            handler.handle(status, L)
            return False
        if env is not None and not (isinstance(env, LuaRef) and env.is_nilref()):
            push_value(L, env)
            if L.setupvalue(-2, 1) is None:
                L.pop()
        status = L.pcall(0, LUA_MULTRET, 0)
        if status != LUA_OK:
            handler.handle(status, L)
            return False
        return True

    def dofile(self, path: str, env: Any = None) -> bool:
        """Load and run a file, optionally with ``env`` as its globals."""
        with ScopedSavedStack(self._state):
            return self._execute(auxlib.loadfile(self._state, str(path)), env)

    def dostring(self, source: str, env: Any = None) -> bool:
        """Load and run source text, optionally with ``env`` as its globals."""
        with ScopedSavedStack(self._state):
            return self._execute(auxlib.loadstring(self._state, source), env)

    def __call__(self, source: str) -> bool:
        return self.dostring(source)

    # ---- Globals and values ----

    def __getitem__(self, name: str) -> TableKeyReference:
        return TableKeyReference(self.global_table(), name)

    def __setitem__(self, name: str, value: Any) -> None:
        self.global_table().set(name, value)

    def global_table(self) -> LuaTable:
        with ScopedSavedStack(self._state):
            self._state.pushglobaltable()
            return LuaTable.from_stack_top(self._state)

    def new_ref(self, value: Any) -> LuaRef:
        """Store ``value`` in the VM and return a handle to it."""
        with ScopedSavedStack(self._state):
            push_value(self._state, value)
            return make_ref(self._state)

    def new_table(self, narr: int = 0, nrec: int = 0) -> LuaTable:
        with ScopedSavedStack(self._state):
            return LuaTable.new(self._state, narr, nrec)

    def new_lib(self) -> LuaTable:
        """A fresh table to collect library functions in."""
        return self.new_table()

    def new_thread(self, function: Any = None) -> LuaThread:
        """Create a coroutine, optionally with its body."""
        with ScopedSavedStack(self._state):
            thread = LuaThread.new(self._state)
        if function is not None:
            thread.set_function(function)
        return thread

    def push_to_stack(self, value: Any) -> None:
        push_value(self._state, value)

    def pop_from_stack(self) -> LuaRef:
        return make_ref(self._state)

    # ---- Collector ----

    def gc(self) -> GCType:
        return GCType(self._state)

    def garbage_collect(self) -> None:
        self.gc().collect()

    def use_kbytes(self) -> int:
        """Memory in use by the VM, in kilobytes."""
        return self.gc().count()
