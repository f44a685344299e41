"""FastAPI application entry point.

Runs the transcoding pipeline in the background and exposes health and
Prometheus endpoints:

    uvicorn hlspipe.main:app --port 4000
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse

from hlspipe.core.config import settings
from hlspipe.core.logging import setup_logging
from hlspipe.core.metrics import get_content_type, get_metrics, set_app_info
from hlspipe.core.tracing import setup_tracing, shutdown_tracing
from hlspipe.runner import PipelineRunner

setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=settings.VERSION,
    environment="development" if settings.DEBUG else "production",
    otlp_endpoint=settings.OTLP_ENDPOINT,
    enable_console_export=settings.DEBUG,
)

set_app_info(
    version=settings.VERSION,
    environment="development" if settings.DEBUG else "production",
)

runner = PipelineRunner(settings)


@asynccontextmanager
async def lifespan(_: FastAPI):
    # Startup fails hard when the broker or registry is unreachable.
    await asyncio.to_thread(runner.start)
    try:
        yield
    finally:
        await asyncio.to_thread(runner.stop)
        shutdown_tracing()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)


@app.get("/health", tags=["health"])
async def health_check() -> JSONResponse:
    """Report broker connection and background loop liveness."""
    health = runner.health()
    status_code = 200 if health["status"] == "healthy" else 503
    return JSONResponse(health, status_code=status_code)


@app.get("/metrics", tags=["health"], include_in_schema=False)
async def metrics() -> Response:
    return Response(content=get_metrics(), media_type=get_content_type())
