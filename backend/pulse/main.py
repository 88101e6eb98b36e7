import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from pulse.api.v1.router import api_router
from pulse.core.config import settings, setup_logging
from pulse.core.exceptions import PulseError, TransientStoreError, ValidationError
from pulse.core.limiter import limiter
from pulse.core.redis import close_redis, create_redis_client
from pulse.db.session import AsyncSessionLocal, engine
from pulse.services.pipeline import build_engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    setup_logging()
    redis_client = create_redis_client() if settings.live_relay_enabled else None
    analytics = build_engine(settings, AsyncSessionLocal, redis=redis_client)
    app.state.engine = analytics
    await analytics.start()
    yield
    # Shutdown
    await analytics.stop()
    if redis_client is not None:
        await redis_client.aclose()
    await close_redis()
    await engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    docs_url=f"{settings.API_V1_PREFIX}/docs",
    redoc_url=f"{settings.API_V1_PREFIX}/redoc",
    lifespan=lifespan,
)

# Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]


@app.exception_handler(PulseError)
async def pulse_error_handler(request: Request, exc: PulseError) -> JSONResponse:
    """Translate core errors into JSON responses."""
    headers: dict[str, str] = {}
    content: dict[str, Any] = {"detail": exc.detail}
    if isinstance(exc, TransientStoreError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    if isinstance(exc, ValidationError) and exc.fields:
        content["fields"] = exc.fields
    if exc.status_code >= 500 and not isinstance(exc, TransientStoreError):
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


# CORS
if settings.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept"],
    )


@app.middleware("http")
async def add_security_headers(request: Request, call_next: Callable[[Request], Any]) -> Response:
    """Add security headers to all responses."""
    response: Response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
    response.headers["Content-Security-Policy"] = "default-src 'self'; connect-src 'self' ws: wss:"
    if not settings.DEBUG:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# Routes
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": f"{settings.PROJECT_NAME} is running"}
