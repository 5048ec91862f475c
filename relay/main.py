"""FastAPI application entry point.

The API only enqueues and reports. Signing and delivery happen in the
separate worker process (``python -m relay.worker``).
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from relay.config import settings
from relay.routers import endpoints, queue
from relay.services.queue import StorageUnavailable

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    logging.getLogger("relay").setLevel(settings.log_level)
    logger.info("Relay API starting (env=%s)", settings.env)
    yield
    logger.info("Relay API stopped")


app = FastAPI(
    title="Storefront Webhook Relay",
    description="Signed webhook delivery and offline action sync for storefronts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StorageUnavailable)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailable) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": "Queue storage unavailable"})


app.include_router(endpoints.router)
app.include_router(queue.router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
