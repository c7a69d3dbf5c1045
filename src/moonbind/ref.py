"""Reference handles for values that live inside the VM.

A handle stores its value in the registry (``auxlib.ref``) and remembers the
VM's main thread. It stays valid while the VM is open; using a handle after
its ``State`` was closed is undefined.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from . import convert
from .error_handler import ErrorHandler
from .stack import ScopedSavedStack
from .lua import (
    LuaState, auxlib,
    LUA_REGISTRYINDEX, LUA_MULTRET, LUA_OK, LUA_YIELD,
    LUA_TNIL, LUA_TTABLE, LUA_TFUNCTION, LUA_TTHREAD,
)
from .lua.auxlib import LUA_REFNIL, LUA_NOREF
from .lua.stdlib import coroutine_status
from .lua.values import raw_equal

logger = logging.getLogger(__name__)

_SCALAR_TYPES = (type(None), bool, int, float, str)


class LuaRef:
    """A value held in the registry of a VM."""

    def __init__(self, L: LuaState, ref: int = LUA_REFNIL):
        self._state = L.G.main
        self._ref = ref

    @classmethod
    def from_stack_top(cls, L: LuaState) -> "LuaRef":
        """Pop the top of ``L``'s stack into a new handle."""
        return cls(L, auxlib.ref(L, LUA_REGISTRYINDEX))

    @classmethod
    def from_value(cls, L: LuaState, value: Any) -> "LuaRef":
        convert.push_value(L, value)
        return cls.from_stack_top(L)

    @property
    def state(self) -> LuaState:
        return self._state

    @property
    def ref(self) -> int:
        return self._ref

    def push(self, L: Optional[LuaState] = None) -> None:
        """Push the value onto ``L`` (any thread of the same VM)."""
        L = L or self._state
        if self._ref < 0:
            L.pushnil()
        else:
            L.rawgeti(LUA_REGISTRYINDEX, self._ref)

    def raw_value(self) -> Any:
        """The VM value itself, without conversion."""
        if self._ref < 0:
            return None
        return self._state.G.registry.get(self._ref)

    def is_nilref(self) -> bool:
        return self._ref < 0

    def is_nil(self) -> bool:
        return self.raw_value() is None

    def type(self) -> int:
        with ScopedSavedStack(self._state):
            self.push()
            return self._state.type(-1)

    def typename(self) -> str:
        return self._state.typename(self.type())

    def get(self) -> Any:
        """The value converted to Python."""
        L = self._state
        with ScopedSavedStack(L):
            self.push()
            return convert.to_python(L, -1)

    value = property(get)

    def release(self) -> None:
        """Free the registry slot; the handle becomes a nil reference."""
        ref, self._ref = self._ref, LUA_NOREF
        if ref >= 0 and self._state.G.closed:
            logger.debug("Dropping reference %d of a closed state", ref)
        elif ref >= 0:
            with ScopedSavedStack(self._state):
                auxlib.unref(self._state, LUA_REGISTRYINDEX, ref)

    def __del__(self):
        if getattr(self, "_ref", LUA_NOREF) >= 0:
            self.release()

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, TableKeyReference):
            other = other.ref()
        if isinstance(other, LuaRef):
            return self._state.G is other._state.G and raw_equal(self.raw_value(), other.raw_value())
        value = self.raw_value()
        if isinstance(value, _SCALAR_TYPES):
            return value == other
        return False

    def __ne__(self, other: Any) -> bool:
        return not self.__eq__(other)

    def __hash__(self) -> int:
        value = self.raw_value()
        if isinstance(value, _SCALAR_TYPES):
            return hash(value)
        return id(value)

    def __repr__(self) -> str:
        value = self.raw_value()
        if isinstance(value, _SCALAR_TYPES):
            return f"{type(self).__name__}({value!r})"
        return f"{type(self).__name__}(<{self.typename()}>)"


def make_ref(L: LuaState) -> LuaRef:
    """Pop the top value into the handle class matching its type."""
    tp = L.type(-1)
    if tp == LUA_TTABLE:
        return LuaTable.from_stack_top(L)
    if tp == LUA_TFUNCTION:
        return LuaFunction.from_stack_top(L)
    if tp == LUA_TTHREAD:
        return LuaThread.from_stack_top(L)
    return LuaRef.from_stack_top(L)


class FunctionResults(list):
    """Values returned by a call or resume, as handles.

    ``status`` is ``LUA_OK`` (or ``LUA_YIELD`` for a suspended coroutine);
    on failure the list is empty and ``status`` is the error code.
    """

    def __init__(self, results: Iterable[LuaRef] = (), status: int = LUA_OK):
        super().__init__(results)
        self.status = status

    @property
    def ok(self) -> bool:
        return self.status in (LUA_OK, LUA_YIELD)

    def result_count(self) -> int:
        return len(self)

    def values(self) -> List[Any]:
        """The results converted to Python."""
        return [r.value for r in self]


def _collect_results(L: LuaState, n: int, status: int = LUA_OK) -> FunctionResults:
    """Pop the top ``n`` values of ``L`` into handles, preserving their order."""
    results = []
    for _ in range(n):
        results.append(make_ref(L))
    results.reverse()
    return FunctionResults(results, status)


class LuaTable(LuaRef):
    """Handle to a table."""

    @classmethod
    def new(cls, L: LuaState, narr: int = 0, nrec: int = 0) -> "LuaTable":
        L.createtable(narr, nrec)
        return cls.from_stack_top(L)

    def get(self, key: Any) -> Any:
        """``table[key]`` with metamethods."""
        L = self._state
        with ScopedSavedStack(L):
            self.push()
            convert.push_value(L, key)
            L.gettable(-2)
            return convert.to_python(L, -1)

    def set(self, key: Any, value: Any) -> None:
        """``table[key] = value`` with metamethods."""
        L = self._state
        with ScopedSavedStack(L):
            self.push()
            convert.push_value(L, key)
            convert.push_value(L, value)
            L.settable(-3)

    def raw_get(self, key: Any) -> Any:
        L = self._state
        with ScopedSavedStack(L):
            self.push()
            convert.push_value(L, key)
            L.rawget(-2)
            return convert.to_python(L, -1)

    def raw_set(self, key: Any, value: Any) -> None:
        L = self._state
        with ScopedSavedStack(L):
            self.push()
            convert.push_value(L, key)
            convert.push_value(L, value)
            L.rawset(-3)

    def __getitem__(self, key: Any) -> Any:
        return self.get(key)

    def __setitem__(self, key: Any, value: Any) -> None:
        self.set(key, value)

    def items(self) -> List[Tuple[Any, Any]]:
        """All key-value pairs, in traversal order."""
        L = self._state
        pairs = []
        with ScopedSavedStack(L):
            self.push()
            L.pushnil()
            while L.next(-2):
                pairs.append((convert.to_python(L, -2), convert.to_python(L, -1)))
                L.pop()
        return pairs

    def keys(self) -> List[Any]:
        return [key for key, _ in self.items()]

    def values(self) -> List[Any]:
        return [value for _, value in self.items()]

    def foreach(self, fn) -> None:
        """Call ``fn(key, value)`` for every pair."""
        for key, value in self.items():
            fn(key, value)

    def size(self) -> int:
        """Raw length of the sequence part."""
        L = self._state
        with ScopedSavedStack(L):
            self.push()
            return L.rawlen(-1)

    def __len__(self) -> int:
        return self.size()

    def get_metatable(self) -> "LuaTable":
        L = self._state
        with ScopedSavedStack(L):
            self.push()
            if not L.getmetatable(-1):
                return LuaTable(L)
            return LuaTable.from_stack_top(L)

    def set_metatable(self, metatable: Any) -> None:
        L = self._state
        with ScopedSavedStack(L):
            self.push()
            convert.push_value(L, metatable)
            L.setmetatable(-2)

    def to_dict(self) -> Dict[Any, Any]:
        return dict(self.items())

    def to_list(self) -> List[Any]:
        return [self.raw_get(i) for i in range(1, self.size() + 1)]


class LuaFunction(LuaRef):
    """Handle to a function (or any value callable through ``__call``)."""

    @classmethod
    def _load(cls, L: LuaState, status: int) -> "LuaFunction":
        if status != LUA_OK:
            ErrorHandler.instance().handle(status, L)
            L.pop()
            return cls(L)
        return cls.from_stack_top(L)

    @classmethod
    def loadstring(cls, L: LuaState, source: str) -> "LuaFunction":
        """Compile ``source``; on error report it and return a nil reference."""
        with ScopedSavedStack(L):
            return cls._load(L, auxlib.loadstring(L, source))

    @classmethod
    def loadfile(cls, L: LuaState, path: str) -> "LuaFunction":
        """Compile the file at ``path``; on error report it and return a nil reference."""
        with ScopedSavedStack(L):
            return cls._load(L, auxlib.loadfile(L, str(path)))

    def set_function_env(self, env: Any) -> bool:
        """Replace the first upvalue (``_ENV`` of a chunk) with ``env``."""
        L = self._state
        with ScopedSavedStack(L):
            self.push()
            convert.push_value(L, env)
            return L.setupvalue(-2, 1) is not None

    def call(self, *args: Any) -> FunctionResults:
        """Call in protected mode; errors go to the error handler."""
        L = self._state
        with ScopedSavedStack(L):
            top = L.gettop()
            self.push()
            for arg in args:
                convert.push_value(L, arg)
            status = L.pcall(len(args), LUA_MULTRET, 0)
            if status != LUA_OK:
                ErrorHandler.instance().handle(status, L)
                return FunctionResults((), status)
            return _collect_results(L, L.gettop() - top)

    def __call__(self, *args: Any) -> FunctionResults:
        return self.call(*args)


class LuaThread(LuaRef):
    """Handle to a coroutine."""

    @classmethod
    def new(cls, L: LuaState) -> "LuaThread":
        L.newthread()
        return cls.from_stack_top(L)

    def thread(self) -> Optional[LuaState]:
        value = self.raw_value()
        return value if isinstance(value, LuaState) else None

    def set_function(self, function: Any) -> None:
        """Make ``function`` the body the next resume starts."""
        co = self.thread()
        co.settop(0)
        convert.push_value(co, function)

    def resume(self, *args: Any) -> FunctionResults:
        """Start or continue the coroutine; errors go to the error handler.

        Returns the yielded or returned values. A finished coroutine
        reports "cannot resume dead coroutine" and returns no values.
        """
        L = self._state
        co = self.thread()
        with ScopedSavedStack(co) as guard:
            for arg in args:
                convert.push_value(co, arg)
            guard.keep(len(args))
        status, nres = co.resume(L, len(args))
        if status == LUA_OK or status == LUA_YIELD:
            return _collect_results(co, nres, status)
        ErrorHandler.instance().handle(status, co)
        co.pop()
        return FunctionResults((), status)

    def __call__(self, *args: Any) -> FunctionResults:
        return self.resume(*args)

    def status(self) -> int:
        """The thread status code (``LUA_OK``, ``LUA_YIELD`` or an error code)."""
        return self.thread().status

    def costatus(self) -> str:
        """``"suspended"``, ``"running"``, ``"normal"`` or ``"dead"``."""
        return coroutine_status(self._state, self.thread())

    def is_dead(self) -> bool:
        return self.costatus() == "dead"


class TableKeyReference:
    """Lazy reference to ``table[key]``, as returned by ``State[name]``."""

    def __init__(self, table: LuaTable, key: Any):
        self._table = table
        self._key = key

    @property
    def table(self) -> LuaTable:
        return self._table

    @property
    def key(self) -> Any:
        return self._key

    def push(self, L: Optional[LuaState] = None) -> None:
        L = L or self._table.state
        self._table.push(L)
        convert.push_value(L, self._key)
        L.gettable(-2)
        L.remove(-2)

    def ref(self) -> LuaRef:
        """Capture the current value as a typed handle."""
        L = self._table.state
        with ScopedSavedStack(L):
            self.push()
            return make_ref(L)

    def get(self) -> Any:
        return self._table.get(self._key)

    value = property(get)

    def set(self, value: Any) -> None:
        self._table.set(self._key, value)

    def type(self) -> int:
        L = self._table.state
        with ScopedSavedStack(L):
            self.push()
            return L.type(-1)

    def typename(self) -> str:
        return self._table.state.typename(self.type())

    def is_nil(self) -> bool:
        return self.type() == LUA_TNIL

    def _as(self, cls):
        L = self._table.state
        with ScopedSavedStack(L):
            self.push()
            return cls.from_stack_top(L)

    def __call__(self, *args: Any) -> FunctionResults:
        return self._as(LuaFunction).call(*args)

    def __getitem__(self, key: Any) -> "TableKeyReference":
        return TableKeyReference(self._as(LuaTable), key)

    def __setitem__(self, key: Any, value: Any) -> None:
        self._as(LuaTable).set(key, value)

    def __eq__(self, other: Any) -> bool:
        return self.ref() == other

    def __ne__(self, other: Any) -> bool:
        return not self.__eq__(other)

    __hash__ = None

    def __repr__(self) -> str:
        return f"TableKeyReference({self._key!r}={self.ref()!r})"
