# screencast/app.py
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from aiohttp import ClientSession, ClientError
from fastapi import FastAPI, Request, Query
from fastapi.responses import HTMLResponse, JSONResponse, Response

from screencast.cdp_http import fetch_cdp
from screencast.config import get_settings
from screencast.containers import list_containers
from screencast.schema import ContainerRecord
from screencast.ws_proxy import router as ws_router

log = logging.getLogger(__name__)
settings = get_settings()

VIEWER_HTML = (Path(__file__).parent / "static" / "viewer.html").read_text(encoding="utf-8")


# --------------------------------------------------------------------------- #
# Lifespan hook: one shared HTTP client for the discovery relay
# --------------------------------------------------------------------------- #
@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.http = ClientSession()
    yield
    await app.state.http.close()


app = FastAPI(title="Screencast", lifespan=lifespan)
app.include_router(ws_router)


# ---------- REST API ---------- #
@app.get("/api/containers", response_model=list[ContainerRecord])
async def containers():
    records = await list_containers()
    log.info("GET /api/containers -> %d containers", len(records))
    return records


@app.get("/api/cdp-targets")
async def cdp_targets(
    request: Request,
    host: str = "127.0.0.1",
    port: int = 9222,
    path: str = "/json",
):
    """Fetch a CDP HTTP endpoint on behalf of the page (avoids CORS)."""
    url = f"http://{host}:{port}{path}"
    try:
        status, body = await fetch_cdp(
            request.app.state.http, host, port, path, timeout=settings.cdp_fetch_timeout
        )
    except asyncio.TimeoutError:
        log.info("GET /api/cdp-targets -> 502 timeout (%s)", url)
        return JSONResponse({"error": "CDP fetch timed out"}, status_code=502)
    except (ClientError, OSError) as exc:
        log.info("GET /api/cdp-targets -> 502 %s (%s)", exc, url)
        return JSONResponse({"error": str(exc) or "CDP fetch failed"}, status_code=502)

    log.info("GET /api/cdp-targets -> %d (%s)", status, url)
    return Response(body, status_code=status, media_type="application/json")


@app.get("/api/rdp-file")
async def rdp_file(port: int = Query(3389, description="Host port published for RDP")):
    """Remote Desktop profile for the container's published RDP port."""
    log.info("GET /api/rdp-file -> port %d", port)
    rdp = "\r\n".join([
        f"full address:s:localhost:{port}",
        "username:s:browser",
        "",
    ])
    return Response(
        rdp,
        media_type="application/x-rdp",
        headers={"Content-Disposition": 'attachment; filename="container.rdp"'},
    )


# ---------- Viewer document (everything else) ---------- #
@app.get("/{path:path}", response_class=HTMLResponse, include_in_schema=False)
async def viewer(path: str):
    return HTMLResponse(VIEWER_HTML)
