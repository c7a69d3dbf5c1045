"""Host allocators and the bridge to the VM allocation hook.

An allocator is any object with ``allocate(size)``, ``reallocate(block,
size)`` and ``deallocate(block, size)``. ``allocator_function`` adapts one to
the four-argument hook ``alloc(ud, ptr, osize, nsize)`` that the VM calls for
every block it needs, with the allocator passed as ``ud``.
"""

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class DefaultAllocator:
    """Process default allocator; blocks are bytearrays."""

    def allocate(self, size: int) -> bytearray:
        return bytearray(size)

    def reallocate(self, block: bytearray, size: int) -> bytearray:
        if size < len(block):
            del block[size:]
        else:
            block.extend(bytes(size - len(block)))
        return block

    def deallocate(self, block: bytearray, size: int) -> None:
        return None


class LimitedAllocator:
    """Refuse any request that would take the total above ``limit`` bytes."""

    def __init__(self, limit: int, allocator: Any = None):
        self.limit = limit
        self.allocator = allocator if allocator is not None else DefaultAllocator()
        self.used = 0
        self._sizes: Dict[int, int] = {}

    def allocate(self, size: int) -> Optional[Any]:
        if self.used + size > self.limit:
            logger.debug("Refusing %d bytes (%d of %d in use)", size, self.used, self.limit)
            return None
        block = self.allocator.allocate(size)
        if block is not None:
            self.used += size
            self._sizes[id(block)] = size
        return block

    def reallocate(self, block: Any, size: int) -> Optional[Any]:
        old = self._sizes.pop(id(block), 0)
        if size > old and self.used + size - old > self.limit:
            logger.debug("Refusing to grow a block to %d bytes (%d of %d in use)",
                         size, self.used, self.limit)
            self._sizes[id(block)] = old
            return None
        new_block = self.allocator.reallocate(block, size)
        if new_block is None:
            self._sizes[id(block)] = old
            return None
        self.used += size - old
        self._sizes[id(new_block)] = size
        return new_block

    def deallocate(self, block: Any, size: int) -> None:
        self.used -= self._sizes.pop(id(block), size)
        self.allocator.deallocate(block, size)


def allocator_function(ud: Any, ptr: Any, osize: int, nsize: int) -> Any:
    """VM allocation hook delegating to the allocator object ``ud``.

    ``nsize == 0`` frees ``ptr``; a missing ``ptr`` is a new block (``osize``
    then carries the object's type tag); anything else is a resize. Returning
    None for a non-zero request reports an allocation failure.
    """
    if nsize == 0:
        if ptr is not None:
            ud.deallocate(ptr, osize)
        return None
    try:
        if ptr is None:
            return ud.allocate(nsize)
        return ud.reallocate(ptr, nsize)
    except MemoryError:
        logger.debug("Host allocator raised MemoryError for %d bytes", nsize)
        return None
