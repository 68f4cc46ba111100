"""FastAPI application entry point."""

import time
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api import router as api_router
from app.core.config import get_settings
from app.core.exceptions import AICoreError
from app.core.logging import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

app = FastAPI(
    title="AI Core",
    description="Planner/executor AI orchestration service",
    version="0.1.0",
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Tag every request with an id and log its status and duration."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)

    elapsed_ms = round((time.perf_counter() - start) * 1000, 1)
    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code} in {elapsed_ms}ms",
        extra={"request_id": request_id, "status": response.status_code, "duration_ms": elapsed_ms},
    )
    return response


@app.exception_handler(AICoreError)
async def core_error_handler(request: Request, exc: AICoreError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    logger.error(f"Unhandled {type(exc).__name__}: {exc}", extra={"request_id": request_id})
    return JSONResponse(
        status_code=500,
        content={"error": type(exc).__name__, "message": str(exc), "request_id": request_id},
    )


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    settings = get_settings()
    return JSONResponse(
        content={"status": "ok", "env": settings.AI_CORE_ENV, "web_search": settings.WEBSEARCH_ENABLED},
        status_code=200,
    )


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])
