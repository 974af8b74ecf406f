from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request

from homehero.api.router import api_router
from homehero.core.config import get_settings, validate_startup_settings
from homehero.core.events import EventBus
from homehero.core.log_context import log_context, new_request_id
from homehero.core.telemetry import TelemetryRuntime, configure_logging, setup_telemetry, shutdown_telemetry
from homehero.services.attestation.gate import get_attestation_verifiers
from homehero.services.cache import close_cache_client
from homehero.services.rate_limit import RateLimitExceeded
from homehero.services.repository import get_repository

settings = get_settings()
configure_logging()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_startup_settings(settings)
    app.state.events = EventBus()
    try:
        yield
    finally:
        app.state.events.close()
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)
        await get_repository().close()
        get_repository.cache_clear()
        await close_cache_client()
        get_attestation_verifiers.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_telemetry(settings, "api")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded_handler(_: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(status_code=429, content={"error": str(exc)}, headers=exc.decision.headers())


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = (request.headers.get(REQUEST_ID_HEADER) or "").strip()[:64] or new_request_id()
    started_at = time.perf_counter()
    with log_context(request_id=request_id):
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started_at) * 1000.0
        logger.info(
            "http request method=%s path=%s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


app.include_router(api_router)
