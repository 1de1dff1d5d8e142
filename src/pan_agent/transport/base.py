"""
Duplex channel boundary.

A transport reports four signals (`open`, `message(bytes)`,
`close(code, reason)` and `error(exc)`) and accepts `send(bytes)`.
The agent never looks below this interface.
"""

import logging
from typing import Any, Callable

logger = logging.getLogger("pan_agent.transport")

SIGNALS = ("open", "message", "close", "error")


class Transport:
    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[..., None]]] = {name: [] for name in SIGNALS}

    def on(self, signal: str, handler: Callable[..., None]) -> Callable[[], None]:
        """Add a signal handler. Returns a function that removes it."""
        if signal not in self._handlers:
            raise ValueError(f"Unknown transport signal: {signal!r}")
        self._handlers[signal].append(handler)

        def remove() -> None:
            try:
                self._handlers[signal].remove(handler)
            except ValueError:
                pass
        return remove

    def _fire(self, signal: str, *args: Any) -> None:
        for handler in list(self._handlers[signal]):
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Transport {signal} handler failed")

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    def open(self) -> None:
        """Start opening. Completion is reported through the `open` signal."""
        raise NotImplementedError

    def send(self, data: bytes) -> None:
        raise NotImplementedError

    def close(self, code: int = 1000, reason: str = "") -> None:
        raise NotImplementedError
