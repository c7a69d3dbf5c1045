"""Process-wide registry of error callbacks, keyed by VM."""

import logging
import sys
import threading
import weakref
from typing import Callable, Optional

from .lua import LuaState, LUA_TSTRING, LUA_TNUMBER

logger = logging.getLogger(__name__)

ErrorFunction = Callable[[int, str], None]


def stderror_out(status: int, message: str) -> None:
    """Default handler: write the message to stderr."""
    print(message, file=sys.stderr)


def error_message(L: LuaState, idx: int = -1) -> str:
    """Render the error object at ``idx`` as text."""
    if L.gettop() == 0:
        return ""
    tp = L.type(idx)
    if tp == LUA_TSTRING or tp == LUA_TNUMBER:
        return L.tostring(idx)
    return f"(error object is a {L.typename(tp)} value)"


class ErrorHandler:
    """Maps each VM to the callback that reports its errors.

    Entries are keyed by the VM's main thread, so coroutines share their
    VM's handler, and are held weakly so a discarded VM leaves nothing
    behind.
    """

    _instance: Optional["ErrorHandler"] = None
    _instance_lock = threading.Lock()

    def __init__(self):
        self._lock = threading.Lock()
        self._handlers: "weakref.WeakKeyDictionary[LuaState, ErrorFunction]" = weakref.WeakKeyDictionary()

    @classmethod
    def instance(cls) -> "ErrorHandler":
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def register_handler(self, L: LuaState, handler: ErrorFunction) -> None:
        """Install ``handler`` for the VM of ``L``, replacing any previous one."""
        with self._lock:
            self._handlers[L.G.main] = handler

    def get_handler(self, L: LuaState) -> Optional[ErrorFunction]:
        with self._lock:
            return self._handlers.get(L.G.main)

    def unregister_handler(self, L: LuaState) -> None:
        with self._lock:
            self._handlers.pop(L.G.main, None)

    def handle(self, status: int, L: LuaState) -> None:
        """Report the error on top of ``L``'s stack; never raises."""
        message = error_message(L)
        handler = self.get_handler(L) or stderror_out
        try:
            handler(status, message)
        except Exception:
            logger.exception("Error handler failed while reporting status %d", status)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)
