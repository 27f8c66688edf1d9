"""
api/main.py -- FastAPI application entry point for Zorem.

Run with:      uvicorn asgi:app --reload
               python main.py serve

create_app() builds a fresh application; the module-level `app` is the one
production serves. Tests call create_app() with their own Settings and swap
the clock, object storage, mailer and code generator through keyword
arguments, so every test client starts from an empty world.

Middleware stack (outermost to innermost):
  1. CORSMiddleware     -- adds CORS headers for the configured frontend origin
  2. SessionMiddleware  -- signed cookie holding OAuth state between redirects
  3. general_rate_limit -- "general" limit on every /api request except health
  4. log_requests       -- method, path, status and latency per request

Lifespan builds the engine, stores and services onto app.state at startup and
disposes the engine on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import get_client_key
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.emojis import router as emojis_router
from api.routes.v1.rooms import router as rooms_router
from api.routes.v1.viewer import router as viewer_router
from auth.oauth import build_oauth
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenService
from core.clock import Clock, utcnow
from core.codes import generate_room_code
from core.config import Settings, get_settings
from core.database import create_db_engine, ping_database
from core.errors import RateLimited, ZoremError
from core.mailer import Mailer
from core.ratelimit import BucketStore, LimitClass, RateLimiter
from media.storage import ObjectStorage, build_object_storage
from media.uploads import UploadBridge
from rooms.service import RoomService
from rooms.store import RoomStore
from rooms.viewers import ViewerService

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("zorem.api")

# Paths exempt from the general limit. Load balancers poll health.
_UNLIMITED_PATHS = ("/api/v1/health",)


def _error_response(exc: ZoremError) -> JSONResponse:
    """Render any domain error as the shared ErrorResponse envelope."""
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=exc.message, detail=exc.detail)
        ).model_dump(),
    )
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


def create_app(
    settings: Settings | None = None,
    *,
    clock: Clock = utcnow,
    storage: ObjectStorage | None = None,
    mailer: Mailer | None = None,
    bucket_store: BucketStore | None = None,
    code_factory: Callable[[], str] = generate_room_code,
) -> FastAPI:
    settings = settings or get_settings()

    # ---------------------------------------------------------------------------
    # Lifespan
    # ---------------------------------------------------------------------------

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Build every service once and hang it on app.state.

        Startup order follows the dependency graph: engine, stores, limiter,
        then the services that take them as constructor arguments.
        """
        logger.info("Zorem API starting up (debug=%s)", settings.debug)
        engine = create_db_engine(settings.database_url)
        user_store = UserStore(engine)
        room_store = RoomStore(engine)
        limiter = RateLimiter.from_settings(settings, store=bucket_store, clock=clock)

        room_service = RoomService(room_store, settings, limiter=limiter, clock=clock, code_factory=code_factory)
        app.state.settings = settings
        app.state.engine = engine
        app.state.limiter = limiter
        app.state.auth_service = AuthService(
            user_store,
            TokenService(settings),
            settings,
            mailer=mailer or Mailer.from_settings(settings),
            limiter=limiter,
            clock=clock,
        )
        app.state.room_service = room_service
        app.state.viewer_service = ViewerService(room_store, room_service, clock=clock)
        app.state.upload_bridge = UploadBridge(
            room_store,
            storage or build_object_storage(settings),
            settings,
            clock=clock,
        )
        app.state.oauth = build_oauth(settings)
        if not settings.storage_configured and storage is None:
            logger.warning("Object storage not configured -- upload and story endpoints will return 503")
        logger.info("Zorem API ready")

        yield

        engine.dispose()
        logger.info("Zorem API shutdown complete")

    app = FastAPI(
        title="Zorem API",
        description="Ephemeral rooms with short join codes, anonymous viewers and owner accounts.",
        version=API_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    # Available before startup so middleware never sees a missing attribute.
    app.state.settings = settings

    # ---------------------------------------------------------------------------
    # Middleware stack
    #
    # add_middleware() wraps the current stack, so the last one registered is
    # the outermost. Registered here innermost-first.
    # ---------------------------------------------------------------------------

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
            get_client_key(request),
        )
        return response

    @app.middleware("http")
    async def general_rate_limit(request: Request, call_next):
        """Count every /api request against the "general" class.

        Exceptions raised here never reach the exception handlers, so a
        RateLimited is rendered directly.
        """
        path = request.url.path
        if path.startswith("/api/") and path not in _UNLIMITED_PATHS and request.method != "OPTIONS":
            try:
                await run_in_threadpool(request.app.state.limiter.hit, LimitClass.general, get_client_key(request))
            except RateLimited as exc:
                return _error_response(exc)
        return await call_next(request)

    # authlib keeps the OAuth state value in this signed session cookie between
    # the authorization redirect and the callback.
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.secret_key,
        same_site="lax",
        https_only=not settings.debug,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-Viewer-Hash"],
        expose_headers=["Retry-After"],
        max_age=3600,
    )

    # ---------------------------------------------------------------------------
    # Router registration
    # ---------------------------------------------------------------------------

    app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
    app.include_router(rooms_router, prefix="/api/v1", tags=["Rooms"])
    app.include_router(viewer_router, prefix="/api/v1", tags=["Viewer"])
    app.include_router(emojis_router, prefix="/api/v1", tags=["Emojis"])

    # ---------------------------------------------------------------------------
    # Exception handlers
    #
    # All handlers return the same ErrorResponse envelope so clients can parse
    # errors uniformly without inspecting status codes to choose a schema.
    # ---------------------------------------------------------------------------

    @app.exception_handler(ZoremError)
    async def zorem_error_handler(request: Request, exc: ZoremError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Return 422 with structured error when request body or query params fail validation."""
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(
                error=ErrorDetail(
                    code="validation_error",
                    message="Request validation failed.",
                    detail=str(exc.errors()),
                )
            ).model_dump(),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unexpected server errors.

        The traceback goes to the log only, never to the response body.
        """
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error=ErrorDetail(code="internal_error", message="An unexpected error occurred.")
            ).model_dump(),
        )

    # ---------------------------------------------------------------------------
    # Health endpoint
    #
    # Defined here rather than in a router so it is reachable regardless of
    # router registration. Exempt from the general limit.
    # ---------------------------------------------------------------------------

    @app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
    def health(request: Request) -> HealthResponse:
        """Return API liveness, version and database reachability."""
        db_ok = ping_database(request.app.state.engine)
        return HealthResponse(
            status="ok" if db_ok else "degraded",
            version=API_VERSION,
            database="ok" if db_ok else "unavailable",
        )

    return app
