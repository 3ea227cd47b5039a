# conftest.py – in-memory stand-ins for both ends of a CDP WebSocket
import asyncio
import json

from websockets.exceptions import ConnectionClosedOK

_CLOSE = object()


async def settle(turns: int = 50) -> None:
    """Let every ready callback and task on the loop run."""
    for _ in range(turns):
        await asyncio.sleep(0)


class FakeClient:
    """The browser side of /ws-proxy, shaped like starlette's WebSocket."""

    def __init__(self):
        self.inbox = asyncio.Queue()
        self.sent = []
        self.closed = False
        self.fail_sends = False

    def push(self, data):
        key = "bytes" if isinstance(data, bytes) else "text"
        self.inbox.put_nowait({"type": "websocket.receive", key: data})

    def disconnect(self):
        self.inbox.put_nowait({"type": "websocket.disconnect", "code": 1000})

    async def receive(self):
        return await self.inbox.get()

    async def send_text(self, data):
        if self.closed or self.fail_sends:
            raise RuntimeError('Cannot call "send" once a close message has been sent.')
        self.sent.append(data)

    async def send_bytes(self, data):
        await self.send_text(data)

    async def close(self, code=1000, reason=None):
        if self.closed:
            raise RuntimeError('Cannot call "send" once a close message has been sent.')
        self.closed = True


class FakeChannel:
    """A CDP WebSocket: ``send`` records, ``feed`` delivers, iteration ends on close."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, message):
        await asyncio.sleep(0)          # a real socket write yields too
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(message)

    def feed(self, message):
        if isinstance(message, (dict, list)):
            message = json.dumps(message)
        self._incoming.put_nowait(message)

    def remote_close(self):
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    def fail(self, exc):
        self._incoming.put_nowait(exc)

    async def close(self):
        if not self.closed:
            self.remote_close()

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self.closed = True
            raise item
        return item

    @property
    def messages(self):
        return [json.loads(m) for m in self.sent]

    @property
    def methods(self):
        return [m["method"] for m in self.messages]
