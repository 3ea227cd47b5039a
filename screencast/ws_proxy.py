# screencast/ws_proxy.py
"""
CDP WebSocket relay.

The viewer page cannot talk to a container's DevTools socket directly
(cross-origin), so it connects here with ``/ws-proxy?target=<ws url>`` and
every frame is passed through unchanged.  Client frames that arrive while the
upstream socket is still opening are buffered and flushed in order.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import suppress
from typing import Awaitable, Callable

import websockets
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.responses import PlainTextResponse
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

log = logging.getLogger(__name__)

router = APIRouter()


async def open_upstream(url: str):
    return await websockets.connect(url, ping_interval=None, max_size=None)


class RelaySession:
    """One client connection and the single upstream connection it drives."""

    def __init__(
        self,
        client: WebSocket,
        target: str,
        connect: Callable[[str], Awaitable] | None = None,
    ) -> None:
        self.client = client
        self.target = target
        self.upstream = None
        self.ready = False
        self.buffer: deque[str] = deque()
        self._connect = connect or open_upstream

    async def run(self) -> None:
        log.info("ws: client connected, proxying to %s", self.target)
        tasks = [
            asyncio.create_task(self._client_to_upstream()),
            asyncio.create_task(self._upstream_to_client()),
        ]
        try:
            # whichever side finishes first tears down the other
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.close()

    async def forward(self, message: str) -> None:
        if self.ready:
            await self.upstream.send(message)
        else:
            self.buffer.append(message)

    async def close(self) -> None:
        if self.upstream is not None:
            await self.upstream.close()
        with suppress(RuntimeError, OSError, WebSocketDisconnect):
            await self.client.close()

    # ───── client → upstream ────────────────────────────────────────────
    async def _client_to_upstream(self) -> None:
        try:
            while True:
                message = await self.client.receive()
                if message["type"] == "websocket.disconnect":
                    break
                data = message.get("text")
                if data is None:
                    data = (message.get("bytes") or b"").decode("utf-8", errors="replace")
                await self.forward(data)
        except WebSocketDisconnect:
            pass
        except ConnectionClosed:
            log.info("ws: upstream gone while forwarding")
            return
        log.info("ws: client disconnected")

    # ───── upstream → client ────────────────────────────────────────────
    async def _upstream_to_client(self) -> None:
        try:
            self.upstream = await self._connect(self.target)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            log.info("ws: upstream error: %s", exc)
            return

        log.info("ws: upstream connected (%d buffered)", len(self.buffer))
        try:
            await self._flush()
            async for message in self.upstream:
                await self._send_to_client(message)
        except ConnectionClosedError as exc:
            log.info("ws: upstream error: %s", exc)
            return
        except ConnectionClosed:
            pass
        log.info("ws: upstream closed")

    async def _flush(self) -> None:
        # messages received during the flush join the queue, so order holds
        while self.buffer:
            await self.upstream.send(self.buffer.popleft())
        self.ready = True

    async def _send_to_client(self, message: str | bytes) -> None:
        try:
            if isinstance(message, bytes):
                await self.client.send_bytes(message)
            else:
                await self.client.send_text(message)
        except (RuntimeError, OSError, WebSocketDisconnect):
            pass  # client already closed


@router.websocket("/ws-proxy")
async def ws_proxy(websocket: WebSocket, target: str | None = None):
    if not target:
        log.info("ws-proxy: missing target param")
        await websocket.send_denial_response(
            PlainTextResponse("Missing target param", status_code=400)
        )
        return

    await websocket.accept()                         # handshake first
    log.info("ws-proxy: upgrade -> %s", target)
    await RelaySession(websocket, target).run()
