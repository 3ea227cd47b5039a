"""
Command line entry point.

    screencast serve [--host 0.0.0.0] [--port 3000]   # the web viewer
    screencast ls                                      # browser containers as JSON
    screencast watch [CONTAINER_ID] [--server URL] [--out DIR]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

import uvicorn
from aiohttp import ClientError

from screencast.client import DirectClient, ViewerClient, http_session
from screencast.config import get_settings, Settings
from screencast.containers import list_containers
from screencast.controller import ConnectionState, FrameStats, ScreencastController
from screencast.schema import ScreencastFrame

log = logging.getLogger("screencast")


class FrameWriter:
    """Writes every frame as a numbered JPEG."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)
        self.count = 0

    def write(self, frame: ScreencastFrame) -> Path:
        self.count += 1
        path = self.directory / f"{self.count:06d}.jpg"
        path.write_bytes(frame.jpeg)
        return path


async def watch(
    container_id: str | None,
    server: str | None,
    out_dir: Path | None,
    settings: Settings,
) -> None:
    writer = FrameWriter(out_dir) if out_dir else None

    def on_frame(frame: ScreencastFrame, stats: FrameStats) -> None:
        if writer is not None:
            writer.write(frame)
        if stats.frames % 30 == 1:
            log.info("%dx%d  %d fps  #%d", stats.width, stats.height, round(stats.fps), stats.frames)

    def on_state(state: ConnectionState, error: str | None) -> None:
        if state is ConnectionState.ERROR:
            log.info("state: %s (%s)", state.value, error)
        else:
            log.info("state: %s", state.value)

    async with http_session() as http:
        client = ViewerClient(server, http) if server else DirectClient(http, settings)
        controller = ScreencastController(
            client.discover, client.open_channel, on_frame=on_frame, on_state=on_state,
        )
        try:
            while True:
                try:
                    containers = await client.list_containers()
                except (ClientError, OSError) as exc:
                    log.warning("containers: %s", exc)
                    containers = []

                await controller.update_containers(containers)
                if controller.selected_id is None and containers:
                    wanted = container_id or containers[0].id
                    if any(c.id == wanted for c in containers):
                        log.info("watching %s", wanted[:12])
                        await controller.select(wanted)

                await asyncio.sleep(settings.container_poll_interval)
        finally:
            await controller.close()


def _parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(prog="screencast", description="CDP screencast viewer")
    parser.add_argument("--log-level", default=settings.log_level)
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the web viewer")
    serve.add_argument("--host", default=settings.host)
    serve.add_argument("--port", type=int, default=settings.port)

    sub.add_parser("ls", help="list running browser containers")

    w = sub.add_parser("watch", help="stream a container's screen from the terminal")
    w.add_argument("container_id", nargs="?", help="defaults to the first browser container")
    w.add_argument("--server", help="viewer server URL, e.g. http://localhost:3000 (default: direct)")
    w.add_argument("--out", type=Path, help="directory to write frames to")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = _parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s.%(msecs)03d  %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.command == "serve":
        log.info("listening on http://localhost:%d", args.port)
        uvicorn.run("screencast.app:app", host=args.host, port=args.port,
                    log_level=args.log_level.lower())
    elif args.command == "ls":
        records = asyncio.run(list_containers(settings))
        print(json.dumps([r.model_dump(by_alias=True) for r in records], indent=2))
    elif args.command == "watch":
        try:
            asyncio.run(watch(args.container_id, args.server, args.out, settings))
        except KeyboardInterrupt:
            pass


if __name__ == "__main__":
    main()
