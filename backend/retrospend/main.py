from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from retrospend.api import imports
from retrospend.config import settings
from retrospend.exceptions import ImportQueueError
from retrospend.plugins.registry import discover
from retrospend.services.import_queue_service import ImportQueueService


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    discover()
    if getattr(app.state, "import_queue", None) is None:
        app.state.import_queue = ImportQueueService()
    yield
    await app.state.import_queue.wait_idle()


app = FastAPI(title="Retrospend API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ImportQueueError)
async def import_queue_error_handler(_request: Request, exc: ImportQueueError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


api_prefix = "/api/v1"
app.include_router(imports.router, prefix=api_prefix)


@app.get("/api/v1/health")
async def health() -> dict:
    return {"status": "ok"}
