from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from latchkey.api.error_handling import SECURITY_HEADERS, register_exception_handlers
from latchkey.api.routes import protected_router, router
from latchkey.logging import get_logger, set_correlation_id
from latchkey.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its pool and HTTP client on shutdown."""
    try:
        get_runtime()
    except Exception as exc:
        logger.error("startup_failed", error_type=type(exc).__name__, error=str(exc))
        raise
    logger.info("startup_complete", version=__version__)

    yield

    try:
        await get_runtime().aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Latchkey", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id taken from X-Request-ID or generated."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)
app.include_router(protected_router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report store connectivity; 503 when the probe fails or times out."""
    runtime = get_runtime()
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
        db_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database")
        db_ok = False
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        db_ok = False

    checks: Dict[str, Any] = {
        "database": {
            "status": "healthy" if db_ok else "unhealthy",
            "type": "memory" if runtime.settings.use_memory_store else "postgres",
        },
        "email": {"status": "configured" if runtime.email.is_configured else "dev_mode"},
    }
    body = {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if db_ok else 503, content=body)
