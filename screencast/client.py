"""
Clients the session controller can run on.

``ViewerClient`` goes through a running viewer server (container listing,
discovery relay and WebSocket relay), exactly like the web page does.
``DirectClient`` skips the server and talks to the container runtime and the
containers' CDP endpoints itself.
"""

from __future__ import annotations

from urllib.parse import quote, urlsplit

import websockets
from aiohttp import ClientSession, ClientTimeout

from screencast.cdp_http import fetch_version, parse_descriptor
from screencast.config import get_settings, Settings
from screencast.containers import list_containers
from screencast.schema import ContainerRecord
from screencast.ws_proxy import open_upstream


class ViewerClient:
    def __init__(self, base_url: str, http: ClientSession) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = http

    async def list_containers(self) -> list[ContainerRecord]:
        async with self.http.get(f"{self.base_url}/api/containers") as resp:
            resp.raise_for_status()
            data = await resp.json()
        return [ContainerRecord.model_validate(c) for c in data] if isinstance(data, list) else []

    async def discover(self, host: str, port: int) -> dict:
        async with self.http.get(
            f"{self.base_url}/api/cdp-targets",
            params={"host": host, "port": str(port), "path": "/json/version"},
        ) as resp:
            return parse_descriptor(resp.status, await resp.text())

    async def open_channel(self, url: str):
        parts = urlsplit(self.base_url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        proxy_url = f"{scheme}://{parts.netloc}/ws-proxy?target={quote(url, safe='')}"
        return await websockets.connect(proxy_url, ping_interval=None, max_size=None)


class DirectClient:
    def __init__(self, http: ClientSession, settings: Settings | None = None) -> None:
        self.http = http
        self.settings = settings or get_settings()

    async def list_containers(self) -> list[ContainerRecord]:
        return await list_containers(self.settings)

    async def discover(self, host: str, port: int) -> dict:
        return await fetch_version(self.http, host, port, self.settings.cdp_fetch_timeout)

    async def open_channel(self, url: str):
        return await open_upstream(url)


def http_session(timeout: float = 10.0) -> ClientSession:
    return ClientSession(timeout=ClientTimeout(total=timeout))
