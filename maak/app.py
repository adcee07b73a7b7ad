from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from maak.api.error_handling import register_exception_handlers
from maak.api.routes import router
from maak.config import Settings
from maak.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = _settings.app_version


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from maak.service.runtime import get_runtime

    try:
        get_runtime()
        logger.info("runtime_ready")
    except Exception as exc:
        logger.error("startup_runtime_failed", error=str(exc))
        raise

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="MÄÄK API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Session-Id",
        "X-User-ID",
        "X-Is-Demo",
        "X-API-Key",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID.

    The ID comes from the client's X-Request-ID header when present and is
    generated otherwise; it is bound into the logging context and echoed back
    in the X-Request-ID response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_response_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("API-Version", __version__)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


def create_app() -> FastAPI:
    return app
