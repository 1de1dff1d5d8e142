"""
WebSocket transport for PAN access points.

Opens in the background on the running event loop, reports `open` once the
WebSocket handshake completes, and funnels sends through a single outbox so
frames leave in the order they were sent.
"""

import asyncio
import logging
from typing import Optional

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed as WebSocketClosed

from pan_agent.transport.base import Transport

logger = logging.getLogger("pan_agent.transport.websocket")

ABNORMAL_CLOSURE = 1006
FLUSH_TIMEOUT_S = 5.0


class WebSocketTransport(Transport):
    def __init__(self, url: str, text_frames: bool = True):
        super().__init__()
        self._url = url
        self._text_frames = text_frames
        self._ws: Optional[ClientConnection] = None
        self._outbox: Optional[asyncio.Queue[Optional[bytes]]] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._sender: Optional[asyncio.Task[None]] = None
        self._closing = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closing

    def open(self) -> None:
        if self._task is not None:
            raise RuntimeError("WebSocketTransport.open() called twice")
        self._task = asyncio.get_running_loop().create_task(self._run())

    def send(self, data: bytes) -> None:
        if not self.is_open or self._outbox is None:
            raise RuntimeError("WebSocket not open")
        self._outbox.put_nowait(data)

    def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closing:
            return
        self._closing = True
        ws = self._ws
        if ws is None:
            if self._task is not None:
                self._task.cancel()
            return
        if self._outbox is not None:
            self._outbox.put_nowait(None)

        sender = self._sender

        async def _do_close() -> None:
            if sender is not None:
                try:
                    await asyncio.wait_for(sender, timeout=FLUSH_TIMEOUT_S)
                except (asyncio.TimeoutError, asyncio.CancelledError):
                    logger.debug("outbox not flushed before close")
            try:
                await ws.close(code=code, reason=reason)
            except Exception as e:
                logger.warning(f"WebSocket close failed: {e}")

        asyncio.get_running_loop().create_task(_do_close())

    async def _drain(self, ws: ClientConnection) -> None:
        assert self._outbox is not None
        while True:
            data = await self._outbox.get()
            if data is None:
                return
            try:
                await ws.send(data.decode("utf-8") if self._text_frames else data)
            except WebSocketClosed:
                return
            logger.debug(f"sent {len(data)} bytes")

    async def _run(self) -> None:
        try:
            ws = await websockets.connect(self._url)
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.warning(f"WebSocket connect to {self._url} failed: {e}")
            self._fire("error", e)
            self._fire("close", ABNORMAL_CLOSURE, str(e))
            return

        self._ws = ws
        self._outbox = asyncio.Queue()
        sender = self._sender = asyncio.get_running_loop().create_task(self._drain(ws))
        self._fire("open")
        try:
            async for message in ws:
                if isinstance(message, str):
                    message = message.encode("utf-8")
                self._fire("message", message)
        except WebSocketClosed:
            pass
        except Exception as e:
            logger.warning(f"WebSocket receive failed: {e}")
            self._fire("error", e)
        finally:
            sender.cancel()
            self._ws = None
            self._closing = True
        self._fire("close", ws.close_code or ABNORMAL_CLOSURE, ws.close_reason or "")
