"""
api/main.py -- FastAPI application factory for tokenward.

Run with:  uvicorn asgi:app --reload

create_app(settings=None, services=None) builds a fresh application. asgi.py
calls it once with settings from the environment; tests call it with their
own Settings and, optionally, a pre-built AuthServices.

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the services (or adopts the injected ones), starts the purge
task, and on shutdown cancels the task and closes every store it owns.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, DependencyFailure, TokenReuseDetected, ValidationError
from auth.services import AuthServices
from core.config import Settings, get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tokenward.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Delete expired refresh tokens and ephemeral entries every `interval` seconds.

    Revoked tokens are kept until they expire: reuse detection needs them.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            tokens, entries = await asyncio.to_thread(app.state.services.purge_expired)
            logger.info("Purged %d expired refresh token(s), %d ephemeral entr(ies)", tokens, entries)
        except Exception:
            logger.exception("Purge failed; retrying next interval")


# ---------------------------------------------------------------------------
# Error envelope helpers
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None, **extra) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail), **extra)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None, services: AuthServices | None = None) -> FastAPI:
    """Build the tokenward ASGI application.

    When services is given, the app uses it as-is and does not close it on
    shutdown; the caller owns it.
    """
    settings = settings or (services.settings if services is not None else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Startup before yield, shutdown after. Teardown is symmetric.

        Order: services first (the purge task references them), purge task last.
        """
        logger.info("tokenward API starting up")
        owned = services is None
        app.state.services = AuthServices.from_settings(settings) if owned else services
        if owned:
            app.state.services.connect()
        app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

        yield

        app.state.purge_task.cancel()
        if owned:
            app.state.services.close()
        logger.info("tokenward API shutdown complete")

    app = FastAPI(
        title="tokenward API",
        description="Session tokens with refresh rotation and reuse detection, plus passwordless sign-in.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )

    # -----------------------------------------------------------------------
    # Middleware stack -- registered in the order a request meets them.
    # -----------------------------------------------------------------------

    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )
    app.add_middleware(SlowAPIMiddleware)

    # SlowAPI looks for app.state.limiter by convention.
    limiter.enabled = settings.rate_limit_enabled
    app.state.limiter = limiter

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        ms = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s %d %.1fms %s",
            request.method,
            request.url.path,
            response.status_code,
            ms,
            request.client.host if request.client else "unknown",
        )
        return response

    app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])

    # -----------------------------------------------------------------------
    # Exception handlers -- all return the same ErrorResponse envelope.
    # -----------------------------------------------------------------------

    @app.exception_handler(TokenReuseDetected)
    async def token_reuse_handler(request: Request, exc: TokenReuseDetected) -> JSONResponse:
        """Every session of the user is already revoked; force re-authentication."""
        response = _error(401, exc.code, exc.message, security_alert=True)
        request.app.state.services.issuer.clear_auth_cookies(response)
        response.headers["Cache-Control"] = "no-store"
        return response

    @app.exception_handler(DependencyFailure)
    async def dependency_failure_handler(request: Request, exc: DependencyFailure) -> JSONResponse:
        # The cause was logged where it was raised; the client gets nothing internal.
        return _error(503, exc.code, "Service temporarily unavailable. Try again shortly.")

    @app.exception_handler(ValidationError)
    async def auth_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(400, exc.code, exc.message, detail="; ".join(exc.details) or None)

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        """EmailTakenError (409), RateLimitedError (429), and any other typed failure."""
        return _error(exc.status_code, exc.code, exc.message)

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        """Return 429 with a structured error when a per-IP rate limit is exceeded.

        Retry-After tells clients how many seconds to wait before retrying.
        """
        retry_after = int(getattr(exc, "retry_after", 60))
        response = _error(429, "rate_limited", "Too many requests.", detail=str(exc))
        response.headers["Retry-After"] = str(retry_after)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Return 422 with structured error when request body or query params fail validation."""
        return _error(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """Structured error for HTTPException. Dict details are used as the error field directly."""
        if isinstance(exc.detail, dict):
            return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
        return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unexpected server errors.

        The raw exception goes to the log only, never to the response body.
        """
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return _error(500, "internal_error", "An unexpected error occurred.")

    # -----------------------------------------------------------------------
    # Health -- defined here so it is reachable regardless of router state.
    # No rate limit: load balancers must not be throttled.
    # -----------------------------------------------------------------------

    @app.get("/api/v1/health", tags=["Health"])
    def health(request: Request) -> HealthResponse:
        """Return liveness, version, and the status of each backing store."""
        components = request.app.state.services.health()
        status = "ok" if all(v == "ok" for v in components.values()) else "degraded"
        return HealthResponse(status=status, version=__version__, components=components)

    return app
