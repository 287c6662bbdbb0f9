"""
Gatekeeper - FastAPI Application Entrypoint

This module initializes the FastAPI application with:
- CORS and security middleware
- Authentication routes and dependencies
- Database lifecycle management
- Periodic session sweep (inactivity expiry and purging)
- AuthError and request validation failures -> JSON error responses

Run locally:
    uvicorn gatekeeper.app:app --reload
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from gatekeeper import __version__
from gatekeeper.auth.database import get_engine, get_session_factory, init_db
from gatekeeper.auth.delivery import MessageDispatcher
from gatekeeper.auth.routes import router as auth_router
from gatekeeper.auth.service import AuthService
from gatekeeper.auth.tokens import TokenIssuer
from gatekeeper.clock import utcnow
from gatekeeper.config import AuthPolicy, Settings, settings as default_settings
from gatekeeper.errors import AccountLockedError, AuthError, ValidationError
from gatekeeper.logging_config import setup_logging
from gatekeeper.middleware import SecurityMiddleware


logger = logging.getLogger(__name__)


async def run_session_sweep(service: AuthService, interval_seconds: float) -> None:
    """Background loop that ends idle sessions and purges dead records."""
    try:
        while True:
            try:
                await service.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Session sweep failed: %s", exc)
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("Session sweep task cancelled")


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    policy: Optional[AuthPolicy] = None,
    dispatcher: Optional[MessageDispatcher] = None,
    clock: Callable[[], datetime] = utcnow,
    sweep_interval: Optional[float] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Defaults to the environment-loaded settings
        engine: Existing engine (tests pass an in-memory one)
        policy: Defaults to AuthPolicy.from_settings(settings)
        dispatcher: Outbound message collaborator (defaults to logging only)
        clock: Time source for the service
        sweep_interval: Seconds between sweeps; <= 0 disables the task
    """
    settings = settings or default_settings
    policy = policy or AuthPolicy.from_settings(settings)
    engine = engine or get_engine(settings.DATABASE_URL)
    if sweep_interval is None:
        sweep_interval = settings.SESSION_SWEEP_INTERVAL_SECONDS

    service = AuthService(
        session_factory=get_session_factory(engine),
        policy=policy,
        issuer=TokenIssuer.from_settings(settings, policy),
        dispatcher=dispatcher,
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
            - Create tables
            - Start the session sweep task

        Shutdown:
            - Cancel the sweep task and dispose the engine
        """
        init_db(engine)
        sweep_task = None
        if sweep_interval > 0:
            sweep_task = asyncio.create_task(run_session_sweep(service, sweep_interval))
            logger.info("Session sweep scheduled every %ss", sweep_interval)

        yield

        if sweep_task is not None:
            sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweep_task
        engine.dispose()

    app = FastAPI(
        title="Gatekeeper",
        description="Account authentication and session management service",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.auth_service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )
    app.add_middleware(SecurityMiddleware)

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        content = {
            "detail": exc.message,
            "error_code": exc.error_code,
            "request_id": getattr(request.state, "request_id", None),
        }
        headers = None
        if isinstance(exc, AccountLockedError):
            content["retry_after_minutes"] = exc.retry_after_minutes
        if exc.status_code == 401:
            headers = {"WWW-Authenticate": "Bearer"}
        return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        # Malformed bodies render like any other ValidationError
        messages = []
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"] if part != "body")
            messages.append(f"{field}: {error['msg']}" if field else error["msg"])
        return await auth_error_handler(request, ValidationError("; ".join(messages) or "Invalid request"))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "error_code": "internal_error",
                "request_id": getattr(request.state, "request_id", None),
            },
        )

    app.include_router(auth_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        """Health check endpoint for local dev tooling."""
        return {"status": "healthy", "version": __version__}

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "Gatekeeper",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    return app


setup_logging(default_settings.LOG_LEVEL)
app = create_app()
