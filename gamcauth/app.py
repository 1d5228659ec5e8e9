from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gamcauth.api.error_handling import register_exception_handlers
from gamcauth.api.routes import router
from gamcauth.config import get_settings
from gamcauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the key-value client on shutdown."""
    from gamcauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__, env=runtime.settings.app_env)

    yield

    try:
        await get_runtime().kv.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def add_correlation_id(request, call_next):
    """Tag each request with an id for tracing.

    Taken from the client's X-Request-ID header when present, otherwise a new
    UUID; it is bound for structured logging and echoed in the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


async def health() -> JSONResponse:
    from gamcauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {}
    try:
        kv_ok = await runtime.kv.ping()
    except Exception as exc:
        logger.error("health_check_kv_failed", error=str(exc))
        kv_ok = False
    checks["kv"] = {"status": "ok" if kv_ok else "error", "backend": type(runtime.kv).__name__}
    checks["email"] = {"configured": runtime.email.is_configured}
    healthy = kv_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        },
    )


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="GAMC Auth", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )
    app.middleware("http")(add_security_headers)
    app.middleware("http")(add_correlation_id)

    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"])
    return app


app = create_app()
