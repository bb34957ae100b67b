"""
Tripline FastAPI service -- trips, stops, route segments and the timeline map.

Entrypoint: uvicorn tripline.api.main:app --host 0.0.0.0 --port 8000
"""

import logging
import uuid
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker
from starlette.responses import JSONResponse

from tripline.api.config import settings
from tripline.api.db.engine import create_engine, create_schema
from tripline.api.errors import TriplineError
from tripline.api.middleware.cors import setup_cors
from tripline.api.middleware.rate_limit import RateLimitMiddleware
from tripline.api.middleware.sentry import setup_sentry
from tripline.api.routers import health, map_config, timeline, trips
from tripline.api.routing.gateway import build_gateway
from tripline.api.trips.engine import TripMutationEngine

logger = logging.getLogger(__name__)

# Shared redis reference -- set during lifespan, read by rate limiter
_redis_holder: dict = {"client": None}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    setup_sentry()

    # Redis for rate limiting
    redis_client = None
    if settings.redis_url:
        try:
            redis_client = aioredis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
            )
            await redis_client.ping()
        except Exception as e:
            # Rate limiting degrades to pass-through
            logger.warning("redis_unavailable error=%s", e)
            redis_client = None

    _redis_holder["client"] = redis_client
    app.state.redis = redis_client
    app.state.settings = settings

    db_engine = create_engine()
    if settings.db_auto_create:
        await create_schema(db_engine)
    app.state.db_engine = db_engine
    # expire_on_commit=False: rows are serialized after their transaction closes
    app.state.db_session_factory = async_sessionmaker(db_engine, expire_on_commit=False)

    app.state.trip_engine = TripMutationEngine(
        app.state.db_session_factory,
        build_gateway(settings),
        default_profile=settings.default_route_profile,
    )
    logger.info(
        "startup environment=%s route_provider=%s auto_create=%s",
        settings.environment,
        settings.route_provider,
        settings.db_auto_create,
    )

    yield

    await db_engine.dispose()
    if redis_client:
        await redis_client.aclose()


app = FastAPI(
    title="Tripline API",
    version=settings.app_version,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url=None,
    lifespan=lifespan,
)

# -- Middleware (order matters: last added = outermost in Starlette) --

# Routers first (innermost)
app.include_router(health.router)
app.include_router(map_config.router, prefix="/api")
app.include_router(timeline.router, prefix="/api")
app.include_router(trips.router, prefix="/api")

# Rate limiting -- uses lazy redis reference from lifespan
class _LazyRateLimitMiddleware(RateLimitMiddleware):
    """Rate limiter that picks up Redis client after lifespan init."""

    def __init__(self, app):
        super().__init__(app, redis_client=None)

    async def dispatch(self, request, call_next):
        self.redis = _redis_holder.get("client")
        return await super().dispatch(request, call_next)


app.add_middleware(_LazyRateLimitMiddleware)


# Request ID wraps the limiter so 429s carry it too
@app.middleware("http")
async def request_envelope_middleware(request: Request, call_next) -> Response:
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    request.state.request_id = request_id

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# CORS (needs to be outermost to handle preflight)
setup_cors(app)


# -- Exception Handlers --


def _error_response(request: Request, status_code: int, error: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "requestId": getattr(request.state, "request_id", str(uuid.uuid4())),
        },
    )


@app.exception_handler(TriplineError)
async def tripline_error_handler(request: Request, exc: TriplineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed path=%s code=%s context=%s", request.url.path, exc.code, exc.context)
    return _error_response(request, exc.status_code, exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    return _error_response(
        request,
        400,
        {
            "code": "VALIDATION_ERROR",
            "message": "Request validation failed.",
            "context": {"fields": fields},
        },
    )


@app.exception_handler(404)
async def not_found_handler(request: Request, exc) -> JSONResponse:
    return _error_response(request, 404, {"code": "NOT_FOUND", "message": "Resource not found."})


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc) -> JSONResponse:
    return _error_response(
        request, 500, {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred."}
    )
