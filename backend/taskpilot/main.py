"""
TaskPilot Backend - FastAPI Application Factory
================================================

What:  Creates and configures the FastAPI application instance.
How:   create_app() assembles middleware, the service registry, exception
       handlers and the few conventional routes.
Who:   uvicorn (uvicorn taskpilot.main:app) and the test suite, which passes
       its own registry and session factory.

Application Architecture:
    ┌─────────────────────────────────────────────────────────────┐
    │ CORS → Request ID → Logging → GZip → Authentication         │
    │   → Dispatch ──(/api/v1/services/{Service}/{Method})──┐     │
    │   → Response Serializer ◀──── stashed result ─────────┘     │
    │   → Router (GET /api/v1/catalog, /docs, ...)                │
    └─────────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging, configuration check (logged, not fatal)
    Shutdown: dispose the database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from taskpilot import __version__
from taskpilot.config import settings
from taskpilot.database import async_session_factory, dispose_engine
from taskpilot.dispatch import ServiceRegistry
from taskpilot.exceptions import (
    AccessDeniedError,
    CircuitBreakerOpenError,
    DatabaseError,
    LLMServiceError,
    NotFoundError,
    TaskPilotError,
    ValidationError,
)
from taskpilot.middleware.authentication import AuthenticationMiddleware
from taskpilot.middleware.dispatch import DispatchMiddleware
from taskpilot.middleware.logging import RequestLoggingMiddleware
from taskpilot.middleware.request_id import RequestIDMiddleware, request_id_var
from taskpilot.middleware.response import ResponseSerializerMiddleware
from taskpilot.routes import catalog
from taskpilot.services import build_service_registry

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    Request IDs are part of the message text ("[a1b2c3d4] ...").
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    logger.info("=" * 60)
    logger.info("TaskPilot Backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Not fatal: public methods and task CRUD still work without Gemini
        logger.error("Configuration error: %s", str(e))

    registry: ServiceRegistry = app.state.service_registry
    logger.info(
        "Dispatching %s/{Service}/{Method} for: %s",
        settings.dispatch_path_prefix,
        ", ".join(registry.service_names),
    )
    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    logger.info("TaskPilot Backend shutting down...")
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def register_exception_handlers(app: FastAPI) -> None:
    """
    Consistent error bodies for conventional routes. Dispatched calls never
    reach these: DispatchMiddleware writes its own responses.

        ValidationError             → 400
        AccessDeniedError           → 403
        NotFoundError               → 404
        LLMServiceError             → 503
        CircuitBreakerOpenError     → 503
        DatabaseError               → 500
        TaskPilotError / Exception  → 500
    """

    def error_body(code: str, message: str, details=None) -> dict:
        body = {"error": code, "message": message, "request_id": request_id_var.get("")}
        if details:
            body["details"] = details
        return body

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        return JSONResponse(status_code=400, content=error_body("validation_error", exc.message, exc.context))

    @app.exception_handler(AccessDeniedError)
    async def handle_access_denied(request: Request, exc: AccessDeniedError):
        return JSONResponse(status_code=403, content=error_body("access denied", exc.message))

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content=error_body("not_found", exc.message))

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_breaker(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("[%s] Circuit breaker open: %s", request_id_var.get(""), exc.message)
        return JSONResponse(
            status_code=503,
            content=error_body("service_unavailable", exc.message, {"recovery_time": exc.recovery_time}),
            headers={"Retry-After": str(exc.recovery_time)},
        )

    @app.exception_handler(LLMServiceError)
    async def handle_llm_error(request: Request, exc: LLMServiceError):
        logger.error("[%s] LLM service error: %s", request_id_var.get(""), exc.message)
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else {}
        return JSONResponse(
            status_code=503,
            content=error_body("llm_service_error", exc.message),
            headers=headers,
        )

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error("[%s] Database error: %s | Context: %s", request_id_var.get(""), exc.message, exc.context)
        return JSONResponse(
            status_code=500,
            content=error_body("server_error", "An internal error occurred. Please try again later."),
        )

    @app.exception_handler(TaskPilotError)
    async def handle_application_error(request: Request, exc: TaskPilotError):
        logger.error("[%s] Application error: %s", request_id_var.get(""), exc.message)
        return JSONResponse(status_code=500, content=error_body("server_error", exc.message))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content=error_body(
                "internal_server_error",
                "An unexpected error occurred. Please try again or contact support.",
            ),
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    registry: Optional[ServiceRegistry] = None,
    session_factory: Optional[Callable] = None,
) -> FastAPI:
    """
    Args:
        registry:        services to dispatch to (default: build_service_registry())
        session_factory: AsyncSession factory for injected sessions
                         (default: the module-level async_session_factory)
    """
    registry = (registry or build_service_registry()).freeze()
    session_factory = session_factory or async_session_factory

    app = FastAPI(
        title="TaskPilot API",
        description=(
            "Task management backend. Operations are invoked as "
            f"POST {settings.dispatch_path_prefix}/{{Service}}/{{Method}} with a JSON "
            "object body; see GET /api/v1/catalog for the available methods."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.service_registry = registry
    app.state.dispatch_path_prefix = settings.dispatch_path_prefix

    # ── Register Middleware ───────────────────────────────────────────────
    # Last added runs first. Execution order:
    # CORS → RequestID → Logging → GZip → Authentication → Dispatch → ResponseSerializer
    app.add_middleware(ResponseSerializerMiddleware)
    app.add_middleware(
        DispatchMiddleware,
        registry=registry,
        session_factory=session_factory,
        path_prefix=settings.dispatch_path_prefix,
    )
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )

    register_exception_handlers(app)
    app.include_router(catalog.router)

    return app


app = create_app()
