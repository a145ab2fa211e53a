"""Course Marketplace API - Main Application."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.config import Settings, get_settings
from src.core.context import get_request_id
from src.core.database import init_async_cassandra, shutdown_async_cassandra
from src.core.logging import configure_structlog, get_logger
from src.core.middleware import RequestContextMiddleware
from src.courses.router import lessons_router
from src.courses.router import router as courses_router
from src.courses.service import CourseService
from src.enrollments.router import catalog_router, certificates_router
from src.enrollments.router import router as enrollments_router
from src.enrollments.service import EnrollmentService
from src.enrollments.store import CassandraEnrollmentStore
from src.health import router as health_router


logger = get_logger(__name__)


def build_services(session: Any, settings: Settings) -> dict[str, Any]:
    """Wire the course and enrollment services on top of a Cassandra session."""
    course_service = CourseService(
        session=session,
        keyspace=settings.cassandra_keyspace,
        default_currency=settings.default_currency,
    )
    enrollment_store = CassandraEnrollmentStore(
        session=session,
        keyspace=settings.cassandra_keyspace,
    )
    enrollment_service = EnrollmentService(
        store=enrollment_store,
        course_service=course_service,
        max_write_attempts=settings.enrollment_write_max_attempts,
        default_page_size=settings.enrollment_default_page_size,
        max_page_size=settings.enrollment_max_page_size,
        certificate_base_url=settings.certificate_base_url,
    )
    return {
        "course_service": course_service,
        "enrollment_service": enrollment_service,
    }


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()
    logger.info(
        "starting_application",
        app_name=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
    )

    try:
        session = await init_async_cassandra()
        app.state.cassandra_session = session
        logger.info("cassandra_initialized")

        for name, service in build_services(session, settings).items():
            setattr(app.state, name, service)
        logger.info("enrollment_services_initialized")
    except Exception as e:
        # Routes answer 503 until the database is reachable
        logger.warning(
            "database_init_skipped",
            error=str(e),
            message="Running without database connection",
        )

    yield

    logger.info("shutting_down_application")
    await shutdown_async_cassandra()


def _get_request_id_safe(request: Request) -> str | None:
    """Get request_id from request state or context."""
    if hasattr(request.state, "request_id"):
        return request.state.request_id
    return get_request_id()


def _error_body(
    request: Request, status_code: int, message: str, **extra: Any
) -> dict[str, Any]:
    return {
        "error": True,
        "message": message,
        "status_code": status_code,
        "request_id": _get_request_id_safe(request),
        **extra,
    }


def register_exception_handlers(app: FastAPI) -> None:
    """Install the JSON error envelope handlers (never expose stack traces)."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> ORJSONResponse:
        logger.warning(
            "http_exception",
            status_code=exc.status_code,
            detail=str(exc.detail),
            path=request.url.path,
            method=request.method,
        )
        message = (
            str(exc.detail)
            if exc.status_code < status.HTTP_500_INTERNAL_SERVER_ERROR
            else "Internal server error"
        )
        return ORJSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.status_code, message),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> ORJSONResponse:
        logger.warning(
            "validation_error",
            errors=exc.errors(),
            path=request.url.path,
            method=request.method,
        )
        return ORJSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=_error_body(
                request,
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                "Validation error",
                details=[
                    {
                        "field": ".".join(str(loc) for loc in err.get("loc", [])),
                        "message": err.get("msg", "Invalid value"),
                    }
                    for err in exc.errors()
                ],
            ),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception
    ) -> ORJSONResponse:
        """Catch-all handler. Full details go to the log only."""
        logger.exception(
            "unhandled_exception",
            error_type=type(exc).__name__,
            error_message=str(exc),
            path=request.url.path,
            method=request.method,
        )
        return ORJSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(
                request,
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "An unexpected error occurred. Please try again later.",
            ),
        )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    # debug stays False so Starlette never renders tracebacks
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Course Marketplace - Enrollment and Progress API",
        debug=False,
        lifespan=lifespan,
        default_response_class=ORJSONResponse,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
    )

    app.add_middleware(
        RequestContextMiddleware,
        log_requests=settings.log_requests,
        exclude_paths=settings.log_exclude_paths,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
        max_age=settings.cors_max_age,
    )

    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(courses_router)
    app.include_router(lessons_router)
    app.include_router(enrollments_router)
    app.include_router(catalog_router)
    app.include_router(certificates_router)

    @app.get("/", include_in_schema=False)
    async def root(request: Request) -> dict[str, str]:
        return {
            "message": "Course Marketplace API",
            "version": settings.app_version,
            "docs": f"{request.url}docs",
        }

    return app


_settings = get_settings()
configure_structlog(
    _settings,
    log_dir=Path(_settings.log_dir),
    to_files=not _settings.is_testing,
)

app = create_app(_settings)
