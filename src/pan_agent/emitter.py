"""
Per-agent subscriber registry.

Handlers run on the event loop after the emitting call returns, in emission
order, so a slow or failing handler never stalls frame processing.
Coroutine handlers are scheduled as tasks.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Iterable, Optional, Union

logger = logging.getLogger("pan_agent.emitter")

Handler = Callable[..., Any]


class _Waiter:
    __slots__ = ("events", "match", "future")

    def __init__(self, events: frozenset[str], match: Optional[Callable[[Any], bool]], future: asyncio.Future):
        self.events = events
        self.match = match
        self.future = future


class EventEmitter:
    def __init__(self) -> None:
        self._handlers: dict[str, list[tuple[Handler, bool]]] = {}
        self._waiters: list[_Waiter] = []

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe `handler` to `event`. Returns a function that unsubscribes it."""
        return self._add(event, handler, once=False)

    def once(self, event: str, handler: Handler) -> Callable[[], None]:
        return self._add(event, handler, once=True)

    def off(self, event: str, handler: Optional[Handler] = None) -> None:
        """Remove one handler, or every handler for `event` when none is given."""
        if handler is None:
            self._handlers.pop(event, None)
            return
        entries = self._handlers.get(event, [])
        for i, (fn, _once) in enumerate(entries):
            if fn is handler:
                del entries[i]
                break

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def emit(self, event: str, *args: Any) -> int:
        """Deliver `args` to every subscriber of `event`. Returns how many were scheduled."""
        self._resolve_waiters(event, args[0] if args else None)
        entries = self._handlers.get(event)
        if not entries:
            return 0
        snapshot = list(entries)
        entries[:] = [entry for entry in entries if not entry[1]]
        for fn, _once in snapshot:
            self.schedule(fn, *args)
        return len(snapshot)

    def schedule(self, fn: Handler, *args: Any) -> None:
        """Queue `fn(*args)` behind everything already emitted."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._invoke(fn, args)
            return
        loop.call_soon(self._invoke, fn, args)

    async def wait_for(
        self,
        events: Union[str, Iterable[str]],
        timeout: Optional[float] = None,
        match: Optional[Callable[[Any], bool]] = None,
    ) -> tuple[str, Any]:
        """Wait for the next emission of any of `events` (optionally filtered by
        `match`) and return `(event, data)`. Raises asyncio.TimeoutError."""
        names = frozenset([events] if isinstance(events, str) else events)
        waiter = _Waiter(names, match, asyncio.get_running_loop().create_future())
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter.future, timeout=timeout)
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def _add(self, event: str, handler: Handler, once: bool) -> Callable[[], None]:
        self._handlers.setdefault(event, []).append((handler, once))

        def remove() -> None:
            self.off(event, handler)
        return remove

    def _resolve_waiters(self, event: str, data: Any) -> None:
        for waiter in list(self._waiters):
            if waiter.future.done() or event not in waiter.events:
                continue
            if waiter.match is not None:
                try:
                    if not waiter.match(data):
                        continue
                except Exception:
                    logger.exception(f"wait_for match predicate failed for {event!r}")
                    continue
            self._waiters.remove(waiter)
            waiter.future.set_result((event, data))

    def _invoke(self, fn: Handler, args: tuple[Any, ...]) -> None:
        try:
            result = fn(*args)
        except Exception:
            logger.exception(f"Event handler {fn!r} failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            task.add_done_callback(self._report_task)

    @staticmethod
    def _report_task(task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async event handler failed: {exc}", exc_info=exc)
