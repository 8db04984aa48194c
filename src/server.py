"""FastAPI server for the booking concierge.

Run with:
    uv run uvicorn src.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from src.api.routes import router
from src.config import load_settings
from src.controller import build_controller
from src.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = load_settings()


# ── Lifespan: wire the concierge, flush metrics on shutdown ──────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the controller once and keep it in app state."""
    logger.info("Building concierge (store: %s, model: %s)…", settings.store_backend, settings.model_name)
    application.state.controller = build_controller(settings)
    application.state.request_timeout = settings.request_timeout_seconds
    logger.info("Concierge ready.")
    yield
    sent = metrics.flush()
    logger.info("Concierge stopped (%d buffered metric point(s) sent).", sent)


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Booking Concierge",
    description=(
        "Multi-tenant conversational booking concierge: routes customer "
        "messages to a business and books, moves or cancels appointments."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request correlation ──────────────────────────────────────────────
@app.middleware("http")
async def tag_request(request: Request, call_next) -> Response:
    """Tag each request with an ID (client-supplied or fresh) and log its duration."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "[%s] %s %s -> %d in %.0fms",
        request_id, request.method, request.url.path, response.status_code,
        (time.perf_counter() - started) * 1000,
    )
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Booking Concierge",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
        "webhook": "/api/webhook",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting concierge API server on %s:%d", settings.server_host, settings.server_port)
    uvicorn.run(
        "src.server:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=True,
    )
