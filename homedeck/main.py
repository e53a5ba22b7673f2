"""FastAPI bridge between Home Assistant and the HomeDeck dashboard."""
import asyncio
import logging
import random
import sqlite3
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from homedeck import __version__
from homedeck.bridge.database import ChatDatabase, get_database
from homedeck.bridge.devices import load_devices
from homedeck.bridge.health import HealthChecker
from homedeck.bridge.home_assistant import HomeAssistantClient
from homedeck.bridge.routes import error_response, router as chat_router, shared_router
from homedeck.config import get_settings
from homedeck.devices.models import DeviceSnapshot
from homedeck.middleware import RateLimiterMiddleware

logger = logging.getLogger(__name__)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the shared Home Assistant connection pool for the app's lifetime."""
    http_client = httpx.AsyncClient()
    app.state.http_client = http_client
    app.state.ha_client = HomeAssistantClient(client=http_client)
    if not app.state.ha_client.configured:
        logger.warning("Home Assistant URL or token missing; device streams will be empty")
    else:
        logger.info(f"Bridging Home Assistant at {app.state.ha_client.base_url}")

    yield

    await http_client.aclose()
    logger.info("Home Assistant client closed")


app = FastAPI(
    title=settings.app_name,
    description="Home Assistant bridge and chat history for the HomeDeck dashboard",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RateLimiterMiddleware, requests_per_minute=settings.requests_per_minute)

app.include_router(chat_router)
app.include_router(shared_router)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return error_response(400, message)


@app.exception_handler(sqlite3.Error)
async def database_error_handler(request: Request, exc: sqlite3.Error):
    logger.error(f"Database error on {request.url.path}: {exc}")
    return error_response(500, str(exc))


def get_ha_client(request: Request) -> HomeAssistantClient:
    return request.app.state.ha_client


class ServiceCallRequest(BaseModel):
    domain: str
    service: str
    entity_id: Optional[str] = None
    area_id: Optional[str] = None
    target: Optional[dict[str, Any]] = None
    data: dict[str, Any] = {}


def _missing_ha() -> JSONResponse:
    return error_response(400, "missing_home_assistant_env")


@app.get("/api/devices")
async def list_devices(ha: HomeAssistantClient = Depends(get_ha_client)):
    """One-shot device list."""
    if not ha.configured:
        return _missing_ha()
    try:
        devices = await load_devices(ha, raise_errors=True)
    except httpx.HTTPStatusError as e:
        return error_response(e.response.status_code, f"status_{e.response.status_code}")
    except (httpx.HTTPError, ValueError) as e:
        return error_response(500, str(e))
    return [device.model_dump() for device in devices]


@app.get("/api/devices/stream")
async def device_stream(ha: HomeAssistantClient = Depends(get_ha_client)):
    """Full device snapshot as `event: devices` every `device_poll_seconds`."""

    async def event_generator():
        yield {"retry": settings.sse_retry_ms}
        while True:
            devices = await load_devices(ha)
            snapshot = DeviceSnapshot(ts=int(time.time() * 1000), items=devices)
            yield {"event": "devices", "data": snapshot.model_dump_json()}
            await asyncio.sleep(settings.device_poll_seconds)

    return EventSourceResponse(event_generator())


@app.get("/api/system/stream")
async def system_stream(
    ha: HomeAssistantClient = Depends(get_ha_client),
    db: ChatDatabase = Depends(get_database),
):
    """Smoothed Home Assistant and database health as `event: system`.

    Each connection keeps its own smoothing state. Snapshots follow a
    jittered cadence; a comment heartbeat keeps idle proxies from closing
    the connection.
    """
    checker = HealthChecker(ha, database=db, settings=settings)

    async def event_generator():
        yield {"retry": settings.sse_retry_ms}
        while True:
            status = await checker.snapshot()
            yield {"event": "system", "data": status.model_dump_json()}
            await asyncio.sleep(
                random.uniform(settings.system_poll_min_seconds, settings.system_poll_max_seconds)
            )

    return EventSourceResponse(event_generator(), ping=settings.heartbeat_seconds)


@app.post("/api/ha/service")
async def call_service(request: ServiceCallRequest, ha: HomeAssistantClient = Depends(get_ha_client)):
    """Forward a service call to Home Assistant."""
    if not ha.configured:
        return _missing_ha()

    payload: dict[str, Any] = dict(request.data)
    if request.entity_id:
        payload["entity_id"] = request.entity_id
    if request.area_id:
        payload["area_id"] = request.area_id
    if request.target:
        payload["target"] = request.target

    try:
        result = await ha.call_service(request.domain, request.service, payload)
    except httpx.HTTPStatusError as e:
        status_code = e.response.status_code
        return JSONResponse(
            status_code=status_code,
            content={"ok": False, "error": f"ha_status_{status_code}", "detail": e.response.text},
        )
    except (httpx.HTTPError, ValueError) as e:
        return JSONResponse(status_code=500, content={"ok": False, "error": "exception", "detail": str(e)})

    logger.info(f"Called {request.domain}.{request.service} for {request.entity_id or request.area_id or 'target'}")
    return {"ok": True, "data": result}


@app.get("/health")
async def health(ha: HomeAssistantClient = Depends(get_ha_client)):
    """Health check endpoint."""
    return {
        "status": "ok",
        "app": settings.app_name,
        "version": __version__,
        "home_assistant_configured": ha.configured,
    }


# Run with: uvicorn homedeck.main:app --reload
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
