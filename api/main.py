"""
Checkout API application.

The app is built by create_app(); the module-level ``app`` is what uvicorn
serves. Core errors that escape a route are mapped here as a last resort:
a store outage is a 503 the client can retry with the same idempotency key,
anything else is a logged 500.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings, get_settings
from core.exceptions import PersistenceError
from database.connection import close_db, init_db
from monitoring.logging import bind_request_context, clear_request_context, setup_logging

from .dependencies import get_orchestrator
from .routes import admin_router, checkout_router, monitoring_router, order_router

API_VERSION = "1.0.0"
REQUEST_ID_HEADER = "X-Request-ID"

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create tables on startup; let in-flight charges settle before shutdown."""
    settings: Settings = app.state.settings
    logger.info("application_startup", env=settings.app_env, test_mode=settings.is_test_mode)

    await init_db()

    yield

    logger.info("application_shutdown")
    orchestrator = get_orchestrator()
    await orchestrator.wait_for_dispatches()
    await orchestrator.idempotency_manager.close()
    await close_db()


async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """
    Bind request id, method, path and caller into the log context.

    An incoming X-Request-ID is kept so log lines join up across services.
    """
    settings: Settings = request.app.state.settings
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    bind_request_context(
        request_id,
        request.method,
        request.url.path,
        user_id=request.headers.get(settings.user_id_header),
    )
    start_time = time.time()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request_failed", duration_seconds=time.time() - start_time)
        raise
    else:
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response
    finally:
        clear_request_context()


async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("order_store_unavailable", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Order store unavailable, retry with the same idempotency key"},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application with its routers, middleware and handlers."""
    settings = settings or get_settings()
    setup_logging(settings)

    application = FastAPI(
        title="Checkout System",
        description=(
            "Checkout saga: orders, idempotent payment through Stripe, and reconciliation "
            "of payments whose outcome was not known at request time."
        ),
        version=API_VERSION,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
    )
    application.state.settings = settings

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )
    application.middleware("http")(request_context_middleware)
    application.add_exception_handler(PersistenceError, persistence_error_handler)
    application.add_exception_handler(Exception, unhandled_error_handler)

    for router in (checkout_router, order_router, admin_router, monitoring_router):
        application.include_router(router)

    @application.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": API_VERSION,
            "environment": settings.app_env,
            "endpoints": ["/checkout", "/orders/{order_id}", "/health", "/metrics"],
        }

    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
