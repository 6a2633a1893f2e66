"""FastAPI application entrypoint."""
from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .api import apps, workflow
from .config import get_settings
from .domain.errors import (
    ConflictError,
    DependencyCycleError,
    NotFoundError,
    PlanningError,
    UnknownCategoryError,
)
from .observability.otel import configure_logging, configure_telemetry
from .persistence.db import dispose_engine, init_db


def _error(status_code: int, exc: Exception, remediation: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "message": str(exc), "remediation": remediation, **extra},
    )


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="Deployer",
        version="0.1.0",
        openapi_version="3.1.0",
        docs_url="/docs",
        redoc_url=None,
    )

    configure_logging()
    configure_telemetry()

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - FastAPI lifecycle
        await init_db()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - FastAPI lifecycle
        await dispose_engine()

    @app.exception_handler(PlanningError)
    async def _planning_error_handler(request: Request, exc: PlanningError):
        extra = {}
        if isinstance(exc, DependencyCycleError):
            extra = {"direction": exc.direction, "pending": exc.pending, "cycle": exc.cycle}
        return _error(
            422,
            exc,
            "No step was scheduled; fix the architecture and request a new deployment",
            **extra,
        )

    @app.exception_handler(UnknownCategoryError)
    async def _unknown_category_handler(request: Request, exc: UnknownCategoryError):
        return _error(status.HTTP_400_BAD_REQUEST, exc, "Use a supported category or workflow function")

    @app.exception_handler(NotFoundError)
    async def _not_found_handler(request: Request, exc: NotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, exc, "Check the app, plan or entity identifier")

    @app.exception_handler(ConflictError)
    async def _conflict_handler(request: Request, exc: ConflictError):
        return _error(status.HTTP_409_CONFLICT, exc, "Use a new deployment id or rerun the existing plan")

    @app.exception_handler(ValidationError)
    async def _validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=422,
            content={"error": "ValidationError", "message": str(exc), "detail": jsonable_encoder(exc.errors(include_url=False))},
        )

    @app.exception_handler(Exception)
    async def _generic_exception_handler(request: Request, exc: Exception):  # pragma: no cover - fallback
        return JSONResponse(
            status_code=500,
            content={
                "error": "InternalServerError",
                "message": str(exc),
                "remediation": "Contact the platform team with the deployment id",
            },
        )

    app.include_router(apps.router)
    app.include_router(workflow.router)

    @app.get("/healthz")
    async def healthcheck():
        return {"status": "ok", "environment": settings.environment}

    return app


app = create_app()


__all__ = ["app", "create_app"]
