"""
Container directory
===================

* Lists containers by shelling out to the container CLI
  (``container ls --format json``).
* Keeps only **running** instances of the browser image.
* Resolves where the CDP and RDP ports of each instance are reachable from
  this host: a published CDP port is reached over loopback, otherwise the
  container's own address is used.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Iterable

from screencast.config import get_settings, Settings
from screencast.schema import ContainerRecord

log = logging.getLogger(__name__)

_CIDR_SUFFIX = re.compile(r"/\d+$")
_BYTES_PER_MB = 1048576


def _image_reference(cfg: dict[str, Any]) -> str:
    ref = (cfg.get("image") or {}).get("reference")
    if isinstance(ref, dict):
        return ref.get("description") or ref.get("name") or ""
    return "" if ref is None else str(ref)


def _published(ports: Iterable[dict[str, Any]], container_port: int) -> dict[str, Any] | None:
    for p in ports:
        if p.get("containerPort") == container_port:
            return p
    return None


def record_from_entry(entry: dict[str, Any], settings: Settings | None = None) -> ContainerRecord:
    """Build a ContainerRecord from one raw ``container ls`` entry."""
    settings = settings or get_settings()
    cfg = entry.get("configuration") or {}
    nets = entry.get("networks") or []
    addr = _CIDR_SUFFIX.sub("", (nets[0].get("ipv4Address") or "") if nets else "")

    ports = cfg.get("publishedPorts") or []
    cdp = _published(ports, settings.cdp_port)
    rdp = _published(ports, settings.rdp_port)

    resources = cfg.get("resources") or {}
    memory = resources.get("memoryInBytes")

    return ContainerRecord(
        id=cfg.get("id") or "",
        image=_image_reference(cfg),
        addr=addr,
        cpus=resources.get("cpus") or 0,
        memory_mb=round(memory / _BYTES_PER_MB) if memory else 0,
        cdp_host="127.0.0.1" if cdp else addr,
        cdp_port=cdp.get("hostPort", settings.cdp_port) if cdp else settings.cdp_port,
        rdp_port=rdp.get("hostPort") if rdp else None,
    )


def parse_listing(raw: Any, settings: Settings | None = None) -> list[ContainerRecord]:
    """Filter a decoded listing down to running browser containers."""
    settings = settings or get_settings()
    entries = raw if isinstance(raw, list) else [raw]

    return [
        record_from_entry(c, settings)
        for c in entries
        if isinstance(c, dict)
        and str(c.get("status") or "").lower() == "running"
        and _image_reference(c.get("configuration") or {}) == settings.browser_image
    ]


async def list_containers(settings: Settings | None = None) -> list[ContainerRecord]:
    """Point-in-time listing; any failure yields an empty list."""
    settings = settings or get_settings()
    try:
        proc = await asyncio.create_subprocess_exec(
            settings.container_cli, "ls", "--format", "json",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        out, _ = await proc.communicate()
        text = out.decode("utf-8", errors="replace")
        if proc.returncode != 0 or not text.strip():
            log.info("containers: %s ls exit=%s (no output)", settings.container_cli, proc.returncode)
            return []

        raw = json.loads(text)
        results = parse_listing(raw, settings)
    except (OSError, ValueError) as exc:
        log.warning("containers: error: %s", exc)
        return []

    total = len(raw) if isinstance(raw, list) else 1
    log.info("containers: found %d browser (%d total)", len(results), total)
    return results
