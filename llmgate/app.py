from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI

from llmgate.api.error_handling import register_exception_handlers
from llmgate.api.routes import router
from llmgate.api.schemas import HealthResponse
from llmgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    from llmgate.service.runtime import get_runtime

    # Configuration errors propagate so the process refuses to start
    runtime = get_runtime()
    await runtime.maintenance.start()
    logger.info(
        "gateway_started",
        version=__version__,
        backend=runtime.backend.name,
        enable_aes_auth=runtime.settings.enable_aes_auth,
    )

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="llmgate", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Add a correlation ID to each request for log tracing.

    The ID is taken from the X-Request-ID header when the client sends one,
    otherwise generated, and echoed back in the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Unauthenticated liveness check."""
    from llmgate.service.runtime import get_runtime

    runtime = get_runtime()
    return HealthResponse(
        message="LLM gateway is running",
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        backend=runtime.backend.name,
        sessions=runtime.sessions.stats(),
    )
