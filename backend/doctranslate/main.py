from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from doctranslate.api.jobs import router as jobs_router
from doctranslate.core.redis_client import get_async_redis
from doctranslate.core.settings import get_settings
from doctranslate.services.cleanup import cleanup_loop
from doctranslate.services.errors import StructuralInconsistency, UnsupportedDocument
from doctranslate.services.extractors import EXTRACTORS

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    stop_event = asyncio.Event()
    cleanup_task = asyncio.create_task(cleanup_loop(stop_event))
    try:
        yield
    finally:
        stop_event.set()
        await cleanup_task


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(jobs_router, prefix=settings.api_prefix)


@app.exception_handler(UnsupportedDocument)
@app.exception_handler(StructuralInconsistency)
async def document_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    logger.warning("rejected document on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/health")
async def health() -> dict[str, object]:
    try:
        redis_ok = bool(await get_async_redis().ping())
    except Exception as exc:  # noqa: BLE001
        logger.warning("redis ping failed: %s", exc)
        redis_ok = False
    return {
        "status": "ok" if redis_ok else "degraded",
        "redis": redis_ok,
        "formats": sorted(EXTRACTORS),
        "queue": settings.translation_queue,
    }
