"""FastAPI application factory."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel

from cgmsync.api.routes import sync as sync_routes
from cgmsync.config import get_settings
from cgmsync.db.engine import get_engine
from cgmsync.errors import SyncError

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    settings = get_settings()
    engine = get_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        SQLModel.metadata.create_all(engine)
        yield

    app = FastAPI(
        title="CGM Sync API",
        description="Incremental Dexcom glucose and sensor sync",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Answers OPTIONS preflights for the browser-triggered sync
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    )

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError):
        return exc.to_response()

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Invalid request", "details": jsonable_errors(exc)},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": "Internal server error"},
        )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app


def jsonable_errors(exc: RequestValidationError):
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]


# Module-level app instance for uvicorn
app = create_app()
