"""Heap accounting and the mark-and-sweep collector.

Every collectable object obtains its storage through the state's allocation
hook ``alloc(ud, ptr, osize, nsize)``, so the hook sees every byte the VM
accounts for. Strings share one block, the string area, which grows by
``string_size(s)`` whenever the VM creates a string and is trimmed back to
the strings still reachable after every cycle.

Collection only runs at points where all live values are reachable from a
thread (interpreter allocation points and explicit requests). An object
swept while a host frame still holds it stays usable; it is re-registered if
it ever grows again.
"""

from typing import Any, Callable, Iterable, Iterator, List, Optional, Set

from .errors import LuaMemoryError
from .values import GCObject, LuaTable, LuaClosure, PyFunction, Userdata, LUA_TSTRING, string_size


# Option codes for LuaState.gc, as in lua.h (5.3)
LUA_GCSTOP = 0
LUA_GCRESTART = 1
LUA_GCCOLLECT = 2
LUA_GCCOUNT = 3
LUA_GCCOUNTB = 4
LUA_GCSTEP = 5
LUA_GCSETPAUSE = 6
LUA_GCSETSTEPMUL = 7
LUA_GCISRUNNING = 9

DEFAULT_PAUSE = 200
DEFAULT_STEPMUL = 200
INITIAL_THRESHOLD = 64 * 1024

AllocFunction = Callable[[Any, Any, int, int], Any]


def default_alloc(ud: Any, ptr: Any, osize: int, nsize: int) -> Any:
    """Allocation hook used when a state is created without one."""
    if nsize == 0:
        return None
    if ptr is None:
        return bytearray(nsize)
    if nsize < len(ptr):
        del ptr[nsize:]
    else:
        ptr.extend(bytes(nsize - len(ptr)))
    return ptr


class Heap:
    """Tracks collectable objects and the bytes charged for them."""

    def __init__(self, alloc: AllocFunction, ud: Any = None):
        self.alloc = alloc
        self.ud = ud
        self.total = 0
        self.objects: List[GCObject] = []
        self.running = True
        self.pause = DEFAULT_PAUSE
        self.stepmul = DEFAULT_STEPMUL
        self.estimate = 0
        self.threshold = INITIAL_THRESHOLD
        self.debt = 0
        self.epoch = 0
        self.cycles = 0
        self.collecting = False
        self.string_block: Any = None
        self.string_bytes = 0
        # Bytes of distinct strings reached by the last mark phase
        self.live_string_bytes = 0
        # Supplies the root set; set by the global state
        self.roots: Optional[Callable[[], Iterable[Any]]] = None

    def allocate(self, ptr: Any, osize: int, nsize: int) -> Any:
        """Call the hook, collecting once and retrying if it refuses."""
        block = self.alloc(self.ud, ptr, osize, nsize)
        if block is None and nsize > 0:
            if not self.collecting and self.roots is not None:
                self.full_collect()
                block = self.alloc(self.ud, ptr, osize, nsize)
            if block is None:
                raise LuaMemoryError()
        old = osize if ptr is not None else 0
        self.total += nsize - old
        return block

    def free(self, block: Any, size: int) -> None:
        self.alloc(self.ud, block, size, 0)
        self.total -= size

    def charge_string(self, size: int) -> None:
        """Grow the string area by ``size`` bytes, collecting once if refused."""
        if self._resize_strings(self.string_bytes + size):
            return
        if not self.collecting and self.roots is not None:
            self.full_collect()
            if self._resize_strings(self.string_bytes + size):
                return
        raise LuaMemoryError()

    def _resize_strings(self, nsize: int) -> bool:
        old = self.string_bytes
        ptr = self.string_block
        if nsize == 0:
            if ptr is not None:
                self.free(ptr, old)
            self.string_block = None
            self.string_bytes = 0
            return True
        block = self.alloc(self.ud, ptr, old if ptr is not None else LUA_TSTRING, nsize)
        if block is None:
            return False
        self.string_block = block
        self.string_bytes = nsize
        self.total += nsize - old
        return True

    def register(self, obj: GCObject) -> GCObject:
        """Allocate storage for a new object and start tracking it."""
        size = obj.storage_size()
        obj._block = self.allocate(None, obj.type_tag, size)
        obj._block_size = size
        obj._heap = self
        obj._mark = self.epoch
        self.objects.append(obj)
        return obj

    def resize(self, obj: GCObject, size: int) -> None:
        if obj._block is None:
            # Swept while a host frame held it; track it again
            self.register(obj)
            return
        obj._block = self.allocate(obj._block, obj._block_size, size)
        obj._block_size = size

    def check(self) -> None:
        """Run a cycle if the allocation threshold was crossed."""
        if self.running and self.total > self.threshold and not self.collecting:
            self.full_collect()

    def full_collect(self) -> None:
        """Mark everything reachable from the roots, then sweep the rest."""
        if self.collecting or self.roots is None:
            return
        self.collecting = True
        try:
            self.epoch += 1
            self._mark(self.roots())
            self._sweep()
            self._resize_strings(self.live_string_bytes)
        finally:
            self.collecting = False
        self.estimate = self.total
        self.threshold = self.estimate * self.pause // 100
        self.debt = 0
        self.cycles += 1

    def step(self, kbytes: int) -> bool:
        """Add ``kbytes`` of work; return True when a cycle completed."""
        if kbytes <= 0:
            self.full_collect()
            return True
        self.debt += kbytes * 1024
        if self.debt * self.stepmul // 100 >= self.total:
            self.full_collect()
            return True
        return False

    def set_pause(self, value: int) -> int:
        previous = self.pause
        self.pause = value
        return previous

    def set_stepmul(self, value: int) -> int:
        previous = self.stepmul
        self.stepmul = value
        return previous

    def _mark(self, roots: Iterable[Any]) -> None:
        epoch = self.epoch
        seen_strings: Set[int] = set()
        seen_protos: Set[int] = set()
        live = 0

        def visit(value: Any) -> None:
            nonlocal live
            if isinstance(value, GCObject):
                if value._mark != epoch:
                    value._mark = epoch
                    gray.append(value)
            elif type(value) is str and id(value) not in seen_strings:
                seen_strings.add(id(value))
                live += string_size(value)

        gray: List[GCObject] = []
        for value in roots:
            visit(value)
        while gray:
            obj = gray.pop()
            for value in references(obj):
                visit(value)
            if isinstance(obj, LuaClosure):
                for value in proto_constants(obj.proto, seen_protos):
                    visit(value)
        self.live_string_bytes = live

    def _sweep(self) -> None:
        epoch = self.epoch
        alive = []
        for obj in self.objects:
            if obj._mark == epoch:
                alive.append(obj)
            elif obj._block is not None:
                self.free(obj._block, obj._block_size)
                obj._block = None
                obj._block_size = 0
        self.objects = alive

    def close(self) -> None:
        """Return every tracked block to the hook."""
        for obj in self.objects:
            if obj._block is not None:
                self.free(obj._block, obj._block_size)
                obj._block = None
                obj._block_size = 0
        self.objects = []
        self._resize_strings(0)


def references(obj: GCObject) -> Iterable[Any]:
    """Values directly referenced by a collectable object."""
    if isinstance(obj, LuaTable):
        if obj.metatable is not None:
            yield obj.metatable
        for key, value in obj.hash.items():
            yield key
            yield value
    elif isinstance(obj, LuaClosure):
        for cell in obj.upvals:
            yield cell.value
    elif isinstance(obj, PyFunction):
        yield from obj.upvalues
    elif isinstance(obj, Userdata):
        yield obj.metatable
        yield obj.uservalue
    else:
        # Threads
        yield from obj.references()


def proto_constants(proto: Any, seen: Set[int]) -> Iterator[Any]:
    """Constants of a prototype and its nested prototypes, each visited once."""
    pending = [proto]
    while pending:
        proto = pending.pop()
        if id(proto) in seen:
            continue
        seen.add(id(proto))
        yield from proto.constants
        pending.extend(proto.protos)
