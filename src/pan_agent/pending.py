"""
Pending request tracker: correlates one outbound control request with one
inbound reply.

Each registered key owns exactly one future and one timer. Whichever of
resolve / reject / timeout happens first completes the future and removes
the entry; anything after that is a no-op.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Callable, Optional

from pan_agent.errors import RequestTimeout

logger = logging.getLogger("pan_agent.pending")


class _Entry:
    __slots__ = ("future", "timer", "alias", "timeout_ms")

    def __init__(self, future: asyncio.Future, timer: asyncio.TimerHandle, alias: Optional[str], timeout_ms: int):
        self.future = future
        self.timer = timer
        self.alias = alias
        self.timeout_ms = timeout_ms


class PendingRequests:
    def __init__(self) -> None:
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        return list(self._entries)

    def register(self, key: str, timeout_ms: int, alias: Optional[str] = None) -> asyncio.Future:
        """Track `key` and return the future its reply will complete.

        `alias` is a secondary lookup tag for replies that do not echo the
        request key (see `oldest`).
        """
        if key in self._entries:
            raise KeyError(f"Request {key!r} is already pending")
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        timer = loop.call_later(timeout_ms / 1000.0, self._expire, key)
        self._entries[key] = _Entry(future, timer, alias, timeout_ms)
        future.add_done_callback(lambda f, k=key: self._forget_cancelled(k, f))
        return future

    def oldest(self, alias: str) -> Optional[str]:
        """Oldest pending key registered with `alias`."""
        for key, entry in self._entries.items():
            if entry.alias == alias:
                return key
        return None

    def resolve(self, key: str, value: Any = None) -> bool:
        entry = self._pop(key)
        if entry is None:
            return False
        entry.future.set_result(value)
        return True

    def reject(self, key: str, error: BaseException) -> bool:
        entry = self._pop(key)
        if entry is None:
            return False
        entry.future.set_exception(error)
        return True

    def reject_all(self, make_error: Callable[[str], BaseException]) -> int:
        keys = list(self._entries)
        for key in keys:
            self.reject(key, make_error(key))
        return len(keys)

    def _pop(self, key: str) -> Optional[_Entry]:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        entry.timer.cancel()
        if entry.future.done():
            return None
        return entry

    def _expire(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        logger.debug(f"request {key} timed out after {entry.timeout_ms}ms")
        self.reject(key, RequestTimeout(f"No reply to {key} within {entry.timeout_ms}ms", key, entry.timeout_ms))

    def _forget_cancelled(self, key: str, future: asyncio.Future) -> None:
        if future.cancelled():
            entry = self._entries.get(key)
            if entry is not None and entry.future is future:
                self._entries.pop(key)
                entry.timer.cancel()
