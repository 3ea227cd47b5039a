"""
Screencast session controller
=============================

Drives one CDP connection for the selected container:

* discovers the browser-level DevTools socket via ``/json/version``;
* opens the channel (through the relay or directly) and enumerates page
  targets;
* keeps exactly one target attached and screencasting, following tab
  creation / destruction and explicit tab switches;
* acknowledges every frame and keeps a smoothed fps estimate;
* retries discovery forever on failure and reconnects after a close.

All state lives on the event loop; callbacks from the channel, timers and
user actions never run concurrently.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable
from urllib.parse import urlsplit

from aiohttp import ClientError
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

from screencast.config import get_settings
from screencast.errors import DiscoveryError
from screencast.schema import ContainerRecord, ScreencastFrame, TargetInfo

log = logging.getLogger(__name__)

SCREENCAST_PARAMS = {"format": "jpeg", "quality": 80, "everyNthFrame": 1}
FPS_DECAY = 0.9


class ConnectionState(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    ERROR = "error"
    DISCONNECTED = "disconnected"


@dataclass
class FrameStats:
    fps: float = 0.0
    frames: int = 0
    width: int = 0
    height: int = 0
    last_time: float | None = None   # ms

    def record(self, now_ms: float, width: int = 0, height: int = 0) -> None:
        self.frames += 1
        if self.last_time is not None:
            interval = now_ms - self.last_time
            if interval > 0:
                self.fps = self.fps * FPS_DECAY + (1000 / interval) * (1 - FPS_DECAY)
        self.last_time = now_ms
        self.width, self.height = width, height

    def reset(self) -> None:
        self.fps, self.frames, self.width, self.height = 0.0, 0, 0, 0
        self.last_time = None


@dataclass
class _Pipeline:
    """One discover → connect → stream cycle for a selected container."""
    container: ContainerRecord
    cancelled: bool = False
    channel: Any = None
    task: asyncio.Task | None = None
    timer: asyncio.TimerHandle | None = None


Discover = Callable[[str, int], Awaitable[dict]]
OpenChannel = Callable[[str], Awaitable[Any]]


class ScreencastController:
    def __init__(
        self,
        discover: Discover,
        open_channel: OpenChannel,
        *,
        on_frame: Callable[[ScreencastFrame, FrameStats], None] | None = None,
        on_state: Callable[[ConnectionState, str | None], None] | None = None,
        fetch_timeout: float | None = None,
        retry_delay: float | None = None,
        reconnect_delay: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self._discover = discover
        self._open_channel = open_channel
        self._on_frame = on_frame
        self._on_state = on_state
        self.fetch_timeout = fetch_timeout if fetch_timeout is not None else settings.cdp_fetch_timeout
        self.retry_delay = retry_delay if retry_delay is not None else settings.discovery_retry_delay
        self.reconnect_delay = reconnect_delay if reconnect_delay is not None else settings.reconnect_delay
        self._clock = clock

        self.state = ConnectionState.IDLE
        self.error: str | None = None
        self.stats = FrameStats()
        self.containers: list[ContainerRecord] = []
        self.selected_id: str | None = None

        self.targets: list[TargetInfo] = []
        self.active_target_id: str | None = None
        self.session_id: str | None = None

        self._channel = None
        self._msg_id = 0
        self._pipeline: _Pipeline | None = None
        self._pipeline_key: tuple[str | None, str] | None = None

    # ------------------------------------------------------------------ #
    # Selection
    # ------------------------------------------------------------------ #
    @property
    def selected(self) -> ContainerRecord | None:
        return next((c for c in self.containers if c.id == self.selected_id), None)

    async def update_containers(self, containers: Iterable[ContainerRecord]) -> None:
        """Feed a fresh directory listing."""
        self.containers = list(containers)
        if self.selected_id and self.containers and self.selected is None:
            log.info("container %s disappeared, deselecting", self.selected_id[:12])
            self.selected_id = None
        await self._sync()

    async def select(self, container_id: str | None) -> None:
        self.selected_id = container_id or None
        await self._sync()

    async def close(self) -> None:
        await self._teardown()
        self._pipeline_key = None
        self._set_state(ConnectionState.IDLE)

    async def _sync(self) -> None:
        container = self.selected
        key = (self.selected_id, container.connection_key if container else "")
        if key == self._pipeline_key:
            return
        self._pipeline_key = key

        await self._teardown()
        if not self.selected_id:
            self.stats.reset()
            self._set_state(ConnectionState.IDLE)
            return
        if container is None:
            # selected but not listed (yet); resumes once it shows up
            self._set_state(ConnectionState.DISCONNECTED)
            return

        self._start(_Pipeline(container))

    async def _teardown(self) -> None:
        pipeline, self._pipeline = self._pipeline, None
        self._reset_binding()
        self.targets = []
        if pipeline is None:
            return

        pipeline.cancelled = True
        if pipeline.timer is not None:
            pipeline.timer.cancel()
        if pipeline.channel is not None:
            await pipeline.channel.close()
        task = pipeline.task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------ #
    # Discover → connect → stream
    # ------------------------------------------------------------------ #
    def _start(self, pipeline: _Pipeline) -> None:
        if pipeline.cancelled:
            return
        self._pipeline = pipeline
        pipeline.timer = None
        self.error = None
        self.stats.reset()
        self._set_state(ConnectionState.DISCOVERING)
        pipeline.task = asyncio.ensure_future(self._run(pipeline))

    def _schedule(self, pipeline: _Pipeline, delay: float) -> None:
        loop = asyncio.get_running_loop()
        pipeline.timer = loop.call_later(delay, self._start, pipeline)

    def _fail(self, pipeline: _Pipeline, message: str) -> None:
        log.info("cdp: %s (retrying in %gs)", message, self.retry_delay)
        self.error = message
        self._set_state(ConnectionState.ERROR)
        self._schedule(pipeline, self.retry_delay)

    async def _run(self, pipeline: _Pipeline) -> None:
        container = pipeline.container
        try:
            ws_url = await self._discover_ws_url(container)
        except DiscoveryError as exc:
            if not pipeline.cancelled:
                self._fail(pipeline, str(exc) or "Discovery failed")
            return
        if pipeline.cancelled:
            return

        self._set_state(ConnectionState.CONNECTING)
        try:
            channel = await self._open_channel(ws_url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            if not pipeline.cancelled:
                self._fail(pipeline, f"WebSocket error: {exc}")
            return
        if pipeline.cancelled:
            await channel.close()
            return

        log.info("cdp: connected to %s", ws_url)
        pipeline.channel = channel
        self._channel = channel
        self._msg_id = 0
        errored: Exception | None = None
        try:
            await self.send("Target.setDiscoverTargets", {"discover": True})
            await self.send("Target.getTargets")
            async for raw in channel:
                if pipeline.cancelled:
                    break
                await self._handle_message(raw)
        except (ConnectionClosedError, OSError) as exc:
            errored = exc
        except Exception as exc:
            log.exception("cdp: message handling failed")
            errored = exc
            await channel.close()
        finally:
            if self._channel is channel:
                self._channel = None
            pipeline.channel = None

        if pipeline.cancelled:
            return
        self._reset_binding()
        self.targets = []
        if errored is not None:
            self._fail(pipeline, f"WebSocket error: {errored}")
        else:
            log.info("cdp: disconnected (reconnecting in %gs)", self.reconnect_delay)
            self._set_state(ConnectionState.DISCONNECTED)
            self._schedule(pipeline, self.reconnect_delay)

    async def _discover_ws_url(self, container: ContainerRecord) -> str:
        host, port = container.cdp_host, container.cdp_port
        try:
            info = await asyncio.wait_for(self._discover(host, port), self.fetch_timeout)
        except asyncio.TimeoutError:
            raise DiscoveryError(f"Timed out discovering {host}:{port}")
        except (ClientError, OSError, ValueError) as exc:
            raise DiscoveryError(str(exc) or "Discovery failed")

        url = info.get("webSocketDebuggerUrl") if isinstance(info, dict) else None
        if not url or not isinstance(url, str):
            raise DiscoveryError("No CDP endpoint found")
        try:
            path = urlsplit(url).path
        except ValueError:
            raise DiscoveryError("No CDP endpoint found")
        # the advertised host is the one inside the container
        return f"ws://{host}:{port}{path}"

    # ------------------------------------------------------------------ #
    # Wire
    # ------------------------------------------------------------------ #
    async def send(self, method: str, params: dict | None = None, session_id: str | None = None) -> None:
        channel = self._channel
        if channel is None:
            return
        self._msg_id += 1
        msg: dict[str, Any] = {"id": self._msg_id, "method": method, "params": params or {}}
        if session_id:
            msg["sessionId"] = session_id
        try:
            await channel.send(json.dumps(msg))
        except ConnectionClosed:
            log.debug("cdp: dropped %s, channel closing", method)

    async def _handle_message(self, raw: str | bytes) -> None:
        try:
            msg = json.loads(raw)
        except ValueError:
            return
        if not isinstance(msg, dict):
            return

        result = msg.get("result")
        if isinstance(result, dict):
            if isinstance(result.get("targetInfos"), list):
                await self._on_targets(result["targetInfos"])
            if result.get("sessionId"):
                await self._on_attached(result["sessionId"])

        handler = self._events.get(msg.get("method"))
        params = msg.get("params")
        if handler is not None and isinstance(params, dict):
            await handler(self, params, msg.get("sessionId"))

    # ------------------------------------------------------------------ #
    # Targets
    # ------------------------------------------------------------------ #
    async def _attach(self, target_id: str) -> None:
        self.active_target_id = target_id
        await self.send("Target.attachToTarget", {"targetId": target_id, "flatten": True})

    async def _on_targets(self, infos: list) -> None:
        self.targets = _pages(infos)
        if self.targets and not self.active_target_id:
            await self._attach(self.targets[0].target_id)

    async def _on_attached(self, session_id: str) -> None:
        self.session_id = session_id
        await self.send("Page.startScreencast", SCREENCAST_PARAMS, session_id)

    async def switch_tab(self, target_id: str) -> None:
        """Stream another tab; a no-op for the active tab or without a channel."""
        if target_id == self.active_target_id or self._channel is None:
            return
        if self.session_id:
            await self.send("Page.stopScreencast", {}, self.session_id)
            await self.send("Target.detachFromTarget", {"sessionId": self.session_id})
            self.session_id = None

        self.active_target_id = target_id
        self._set_state(ConnectionState.CONNECTING)
        await self.send("Target.attachToTarget", {"targetId": target_id, "flatten": True})

    async def _on_target_created(self, params: dict, _session_id: str | None) -> None:
        info = _page(params.get("targetInfo"))
        # listing only; attaching follows Target.getTargets order
        if info is not None and not any(t.target_id == info.target_id for t in self.targets):
            self.targets.append(info)

    async def _on_target_destroyed(self, params: dict, _session_id: str | None) -> None:
        destroyed = params.get("targetId")
        self.targets = [t for t in self.targets if t.target_id != destroyed]
        if destroyed != self.active_target_id:
            return

        self._reset_binding()
        self._set_state(ConnectionState.CONNECTING)
        if self.targets:
            await self._attach(self.targets[0].target_id)

    async def _on_target_info_changed(self, params: dict, _session_id: str | None) -> None:
        info = _page(params.get("targetInfo"))
        if info is None:
            return
        self.targets = [info if t.target_id == info.target_id else t for t in self.targets]

    # ------------------------------------------------------------------ #
    # Frames
    # ------------------------------------------------------------------ #
    async def _on_screencast_frame(self, params: dict, session_id: str | None) -> None:
        try:
            frame = ScreencastFrame.model_validate(params)
        except ValidationError:
            return

        self.stats.record(self._clock() * 1000, frame.width, frame.height)
        if self._on_frame is not None:
            try:
                self._on_frame(frame, self.stats)
            except Exception:
                log.exception("frame consumer failed")

        await self.send("Page.screencastFrameAck", {"sessionId": frame.session_id},
                        session_id or self.session_id)
        self._set_state(ConnectionState.STREAMING)

    _events = {
        "Page.screencastFrame": _on_screencast_frame,
        "Target.targetCreated": _on_target_created,
        "Target.targetDestroyed": _on_target_destroyed,
        "Target.targetInfoChanged": _on_target_info_changed,
    }

    # ------------------------------------------------------------------ #
    # helpers
    # ------------------------------------------------------------------ #
    def _reset_binding(self) -> None:
        self.session_id = None
        self.active_target_id = None

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        self.state = state
        if self._on_state is not None:
            try:
                self._on_state(state, self.error)
            except Exception:
                log.exception("state listener failed")


def _page(raw: Any) -> TargetInfo | None:
    if not isinstance(raw, dict) or raw.get("type") != "page":
        return None
    try:
        return TargetInfo.model_validate(raw)
    except ValidationError:
        return None


def _pages(infos: list) -> list[TargetInfo]:
    return [t for t in map(_page, infos) if t is not None]
