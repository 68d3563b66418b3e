"""Entry point for the local peer session control API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.dependencies import get_session_holder
from api.routes import router as api_router
from config.settings import get_settings
from db.base import init_db
from transport.errors import MediaAcquisitionError, PeerLinkError


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    holder_factory = app.dependency_overrides.get(get_session_holder, get_session_holder)
    await holder_factory().close()


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="PeerLink",
    description="Manual-signaling peer-to-peer calls and chat.",
    lifespan=lifespan,
)
app.include_router(api_router, prefix="/api")


@app.exception_handler(PeerLinkError)
async def peer_link_error_handler(request: Request, exc: PeerLinkError) -> JSONResponse:
    content = {"detail": exc.detail}
    if isinstance(exc, MediaAcquisitionError):
        content["reason"] = exc.reason.value
    return JSONResponse(status_code=exc.status_code, content=content)
