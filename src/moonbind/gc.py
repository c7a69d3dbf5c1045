"""Collector controls of a VM."""

import logging

from .lua import (
    LuaState,
    LUA_GCSTOP, LUA_GCRESTART, LUA_GCCOLLECT, LUA_GCCOUNT, LUA_GCSTEP,
    LUA_GCSETPAUSE, LUA_GCSETSTEPMUL, LUA_GCISRUNNING,
)

logger = logging.getLogger(__name__)


class GCType:
    """Thin wrapper over ``LuaState.gc``.

    Units and return values follow the collector: ``count()`` is in
    kilobytes and the parameter setters return the previous value.
    """

    def __init__(self, L: LuaState):
        self._state = L

    def collect(self) -> None:
        """Run a full collection cycle."""
        self._state.gc(LUA_GCCOLLECT, 0)
        logger.debug("Full collection done, %d KB in use", self.count())

    def step(self, size: int = 0) -> bool:
        """Do ``size`` KB of collection work; True if a cycle finished."""
        return self._state.gc(LUA_GCSTEP, size) == 1

    def restart(self) -> None:
        self._state.gc(LUA_GCRESTART, 0)

    def stop(self) -> None:
        self._state.gc(LUA_GCSTOP, 0)

    def enable(self) -> None:
        self.restart()

    def disable(self) -> None:
        self.stop()

    def is_running(self) -> bool:
        return self._state.gc(LUA_GCISRUNNING, 0) == 1

    def is_enabled(self) -> bool:
        return self.is_running()

    def count(self) -> int:
        """Memory in use, in kilobytes."""
        return self._state.gc(LUA_GCCOUNT, 0)

    def steppause(self, value: int) -> int:
        """Set the pause (percent); returns the previous value."""
        return self._state.gc(LUA_GCSETPAUSE, value)

    def setstepmul(self, value: int) -> int:
        """Set the step multiplier (percent); returns the previous value."""
        return self._state.gc(LUA_GCSETSTEPMUL, value)
