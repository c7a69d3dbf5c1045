"""Lua value types and the conversions shared by the VM and the API.

Scalars are plain Python values: ``None`` is nil, ``bool`` is boolean,
``int`` (64-bit, wrapping) and ``float`` are numbers and ``str`` is string.
String bytes are charged to the heap when a string is created (see
:func:`string_size`).
Everything else is a collectable object whose storage is accounted by the
heap (see :mod:`moonbind.lua.heap`).
"""

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .errors import runtime_error
from .lexer import str_to_number


# Basic type tags, as in lua.h
LUA_TNONE = -1
LUA_TNIL = 0
LUA_TBOOLEAN = 1
LUA_TLIGHTUSERDATA = 2
LUA_TNUMBER = 3
LUA_TSTRING = 4
LUA_TTABLE = 5
LUA_TFUNCTION = 6
LUA_TUSERDATA = 7
LUA_TTHREAD = 8

TYPE_NAMES = {
    LUA_TNONE: "no value",
    LUA_TNIL: "nil",
    LUA_TBOOLEAN: "boolean",
    LUA_TLIGHTUSERDATA: "userdata",
    LUA_TNUMBER: "number",
    LUA_TSTRING: "string",
    LUA_TTABLE: "table",
    LUA_TFUNCTION: "function",
    LUA_TUSERDATA: "userdata",
    LUA_TTHREAD: "thread",
}

MAXINTEGER = 2**63 - 1
MININTEGER = -2**63

NUMBER_TYPES = (int, float)

# Storage sizes charged to the allocation hook
TABLE_BASE_SIZE = 56
TABLE_NODE_SIZE = 32
CLOSURE_BASE_SIZE = 32
UPVALUE_SIZE = 8
PYFUNCTION_BASE_SIZE = 40
USERDATA_BASE_SIZE = 40
THREAD_SIZE = 848
STRING_BASE_SIZE = 24


def wrap_integer(value: int) -> int:
    """Wrap an integer into the signed 64-bit range."""
    if MININTEGER <= value <= MAXINTEGER:
        return value
    return ((value + 2**63) % 2**64) - 2**63


def string_size(s: str) -> int:
    """Bytes charged for a string: header, text and terminator."""
    return STRING_BASE_SIZE + len(s) + 1


class GCObject:
    """Base for values whose storage comes from the allocation hook."""

    type_tag = LUA_TNIL

    def __init__(self):
        self._block: Any = None
        self._block_size = 0
        self._mark = 0
        self._heap: Any = None

    def _resize(self, size: int) -> None:
        if self._heap is not None:
            self._heap.resize(self, size)


@dataclass
class Cell:
    """A local variable shared between a frame and its closures."""
    value: Any = None


class _BoolKey:
    """Table key standing in for a boolean, so True never collides with 1."""

    def __init__(self, value: bool):
        self.value = value

    def __repr__(self) -> str:
        return f"_BoolKey({self.value})"


_TRUE_KEY = _BoolKey(True)
_FALSE_KEY = _BoolKey(False)


def _normalize_key(key: Any) -> Any:
    """Convert a key for storage; the caller has already rejected nil and NaN."""
    key_type = type(key)
    if key_type is bool:
        return _TRUE_KEY if key else _FALSE_KEY
    if key_type is float and key.is_integer() and MININTEGER <= key <= MAXINTEGER:
        return int(key)
    return key


def _denormalize_key(key: Any) -> Any:
    if type(key) is _BoolKey:
        return key.value
    return key


class LuaTable(GCObject):
    """A Lua table: a hash keyed by normalized Lua values."""

    type_tag = LUA_TTABLE

    def __init__(self, narr: int = 0, nrec: int = 0):
        super().__init__()
        self.hash: Dict[Any, Any] = {}
        self.metatable: Optional["LuaTable"] = None
        self._capacity = _capacity_for(narr + nrec)
        self._border = 0
        # Snapshot of the key order while a traversal is running
        self._order: Optional[List[Any]] = None
        self._positions: Dict[Any, int] = {}

    def storage_size(self) -> int:
        return TABLE_BASE_SIZE + self._capacity * TABLE_NODE_SIZE

    def get(self, key: Any) -> Any:
        """Raw get."""
        if key is None or (type(key) is float and key != key):
            return None
        return self.hash.get(_normalize_key(key))

    def get_str(self, key: str) -> Any:
        return self.hash.get(key)

    def set(self, key: Any, value: Any) -> None:
        """Raw set; assigning nil removes the key."""
        if key is None:
            raise runtime_error("table index is nil")
        if type(key) is float and key != key:
            raise runtime_error("table index is NaN")
        key = _normalize_key(key)
        hash_part = self.hash
        if value is None:
            hash_part.pop(key, None)
            return
        if key not in hash_part and len(hash_part) >= self._capacity:
            self._capacity = _capacity_for(len(hash_part) + 1)
            self._resize(self.storage_size())
        hash_part[key] = value

    def length(self) -> int:
        """Return a border of the table (the ``#`` operator without metamethods)."""
        hash_part = self.hash
        n = self._border
        if n > 0 and n not in hash_part:
            while n > 0 and n not in hash_part:
                n -= 1
        else:
            while (n + 1) in hash_part:
                n += 1
        self._border = n
        return n

    def next(self, key: Any) -> Optional[Tuple[Any, Any]]:
        """Return the entry after ``key`` (None starts), or None at the end.

        Assigning nil to existing fields during a traversal is allowed.
        """
        hash_part = self.hash
        if key is None:
            self._order = list(hash_part)
            self._positions = {k: i for i, k in enumerate(self._order)}
            start = 0
        else:
            if type(key) is float and key != key:
                raise runtime_error("invalid key to 'next'")
            key = _normalize_key(key)
            position = self._positions.get(key) if self._order is not None else None
            if position is None:
                if key not in hash_part:
                    raise runtime_error("invalid key to 'next'")
                self._order = list(hash_part)
                self._positions = {k: i for i, k in enumerate(self._order)}
                position = self._positions[key]
            start = position + 1
        order = self._order
        for i in range(start, len(order)):
            k = order[i]
            value = hash_part.get(k)
            if value is not None:
                return _denormalize_key(k), value
        self._order = None
        self._positions = {}
        return None

    def items(self) -> List[Tuple[Any, Any]]:
        """Snapshot of the entries with keys in their Lua form."""
        return [(_denormalize_key(k), v) for k, v in self.hash.items()]

    def __repr__(self) -> str:
        return f"LuaTable(size={len(self.hash)})"


def _capacity_for(size: int) -> int:
    capacity = 0
    if size > 0:
        capacity = 4
        while capacity < size:
            capacity *= 2
    return capacity


class LuaClosure(GCObject):
    """A Lua function: a prototype plus its captured cells."""

    type_tag = LUA_TFUNCTION

    def __init__(self, proto: Any, upvals: List[Cell]):
        super().__init__()
        self.proto = proto
        self.upvals = upvals

    def storage_size(self) -> int:
        return CLOSURE_BASE_SIZE + UPVALUE_SIZE * len(self.upvals)

    def __repr__(self) -> str:
        return f"LuaClosure({self.proto.name})"


class PyFunction(GCObject):
    """A host function callable from Lua.

    ``fn`` receives the running thread and returns how many values on top
    of its stack are results, as a C function does.
    """

    type_tag = LUA_TFUNCTION

    def __init__(self, fn: Callable[[Any], int], upvalues: Optional[List[Any]] = None,
                 name: str = "?"):
        super().__init__()
        self.fn = fn
        self.upvalues = upvalues or []
        self.name = name

    def storage_size(self) -> int:
        return PYFUNCTION_BASE_SIZE + 16 * len(self.upvalues)

    def __repr__(self) -> str:
        return f"PyFunction({self.name})"


class Userdata(GCObject):
    """A block of host data, optionally with a metatable."""

    type_tag = LUA_TUSERDATA

    def __init__(self, value: Any = None, size: int = 0):
        super().__init__()
        self.value = value
        self.size = size
        self.metatable: Optional[LuaTable] = None
        self.uservalue: Any = None

    def storage_size(self) -> int:
        return USERDATA_BASE_SIZE + self.size


def type_of(value: Any) -> int:
    """Return the type tag of a Lua value."""
    if value is None:
        return LUA_TNIL
    value_type = type(value)
    if value_type is bool:
        return LUA_TBOOLEAN
    if value_type is int or value_type is float:
        return LUA_TNUMBER
    if value_type is str:
        return LUA_TSTRING
    return value.type_tag


def type_name(value: Any) -> str:
    return TYPE_NAMES[type_of(value)]


def is_falsy(value: Any) -> bool:
    """Only nil and false are false."""
    return value is None or value is False


def raw_equal(a: Any, b: Any) -> bool:
    """Primitive equality; booleans never equal numbers."""
    ta, tb = type(a), type(b)
    if ta in NUMBER_TYPES and tb in NUMBER_TYPES:
        return a == b
    if ta is str and tb is str:
        return a == b
    return a is b


def to_number(value: Any) -> Union[int, float, None]:
    """Convert to a number following string coercion rules, or None."""
    value_type = type(value)
    if value_type is int or value_type is float:
        return value
    if value_type is str:
        return str_to_number(value)
    return None


def float_to_integer(value: float) -> Optional[int]:
    """Exact conversion of a float with an integral value, or None."""
    if value.is_integer() and MININTEGER <= value < 2**63:
        return int(value)
    return None


def to_integer(value: Any) -> Optional[int]:
    """Convert to an integer without loss, or None."""
    value_type = type(value)
    if value_type is int:
        return value
    if value_type is float:
        return float_to_integer(value)
    if value_type is str:
        number = str_to_number(value)
        if number is not None:
            return to_integer(number)
    return None


def number_to_string(value: Union[int, float]) -> str:
    """Format a number the way Lua's ``tostring`` does."""
    if type(value) is int:
        return str(value)
    if value != value:
        return "nan" if math.copysign(1.0, value) > 0 else "-nan"
    if value == math.inf:
        return "inf"
    if value == -math.inf:
        return "-inf"
    text = "%.14g" % value
    if all(c in "-0123456789" for c in text):
        text += ".0"
    return text


def tostring_basic(value: Any) -> str:
    """Convert any value to a string, ignoring ``__tostring``."""
    if value is None:
        return "nil"
    if value is True:
        return "true"
    if value is False:
        return "false"
    value_type = type(value)
    if value_type is str:
        return value
    if value_type is int or value_type is float:
        return number_to_string(value)
    if isinstance(value, LuaTable):
        return f"table: 0x{id(value):08x}"
    if isinstance(value, LuaClosure):
        return f"function: 0x{id(value):08x}"
    if isinstance(value, PyFunction):
        return f"function: builtin: 0x{id(value):08x}"
    if isinstance(value, Userdata):
        return f"userdata: 0x{id(value):08x}"
    return f"{type_name(value)}: 0x{id(value):08x}"
