"""
HTTP side of CDP: fetches the JSON endpoints (``/json``, ``/json/version``)
a browser exposes next to its DevTools WebSocket.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from aiohttp import ClientSession, ClientTimeout, ClientError

from screencast.errors import DiscoveryError


async def fetch_cdp(
    http: ClientSession,
    host: str,
    port: int | str,
    path: str = "/json",
    timeout: float = 3.0,
) -> tuple[int, str]:
    """GET ``http://host:port/path`` and return (status, body) verbatim."""
    if not path.startswith("/"):
        path = "/" + path
    async with http.get(
        f"http://{host}:{port}{path}", timeout=ClientTimeout(total=timeout)
    ) as resp:
        return resp.status, await resp.text()


async def fetch_version(
    http: ClientSession, host: str, port: int | str, timeout: float = 3.0
) -> dict[str, Any]:
    """
    Fetch the browser's ``/json/version`` descriptor.

    Raises DiscoveryError for transport failures, non-2xx answers and bodies
    that are not a JSON object.
    """
    try:
        status, body = await fetch_cdp(http, host, port, "/json/version", timeout)
    except asyncio.TimeoutError:
        raise DiscoveryError(f"{host}:{port}: timed out after {timeout:g}s")
    except (ClientError, OSError) as exc:
        raise DiscoveryError(f"{host}:{port}: {exc}")
    return parse_descriptor(status, body)


def parse_descriptor(status: int, body: str) -> dict[str, Any]:
    if status >= 400:
        try:
            message = json.loads(body).get("error")
        except (ValueError, AttributeError):
            message = None
        raise DiscoveryError(message or f"CDP endpoint answered {status}")
    try:
        info = json.loads(body)
    except ValueError:
        raise DiscoveryError("Malformed CDP descriptor")
    if not isinstance(info, dict):
        raise DiscoveryError("Malformed CDP descriptor")
    return info
