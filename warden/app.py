from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from warden.api.error_handling import register_exception_handlers
from warden.api.routes import router
from warden.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the job processor on startup; release the runtime on shutdown."""
    from warden.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.job_processor_enabled:
            await runtime.job_processor.start()
            logger.info("job_processor_started_on_startup")
    except Exception as exc:
        logger.error("startup_job_processor_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Warden", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    The id comes from the X-Request-ID header when the client sends one and
    is generated otherwise. It is bound for structured logging and echoed in
    the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Any:
    """Report store and cache reachability."""
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _check(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            checks[label] = {"status": "healthy"}
            return True
        except Exception as exc:
            logger.warning("health_check_failed", component=label, error=str(exc))
            checks[label] = {"status": "unhealthy", "error": type(exc).__name__}
            return False

    store_ok = await _check("database", runtime.store.list_permissions)
    cache_ok = await _check("cache", runtime.cache.verify_connection)
    healthy = store_ok and cache_ok
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
        "job_processor": runtime.job_processor.owner if runtime.settings.job_processor_enabled else None,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def create_app() -> FastAPI:
    return app
