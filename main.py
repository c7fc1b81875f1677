"""
main.py
FastAPI application entry point.
Registers routers, middleware, exception handlers and startup/shutdown events.

Production features:
- Multiple instances behind NGINX load balancer
- Structured JSON logging with request ids
- Unauthenticated rate limiting (Redis, fails open)
- Prometheus metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config.database import AsyncSessionLocal, close_db, init_db
from config import redis_client as redis_module
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings
from shared.errors import ConsoleError
from shared.schemas.schemas import ErrorResponse

# Service routers
from services.admin.router import router as admin_router
from services.entities.router import router as entities_router
from services.payments.router import router as payments_router
from services.users.router import router as users_router


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.APP_ENV})")

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    yield

    await close_redis()
    await close_db()
    logger.info("Shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Marketplace Admin Console API

Review workflow for user-submitted listings and the bank transfers that fund them:
- **Entities**: institutes/hospitals, shops and marketplace products awaiting approval
- **Payments**: bank-transfer receipts awaiting verification
- **Linkage**: verifying a payment approves the entity it funds when the match is unique
- **Users**: admin role and verified flag
- **Audit**: every reviewer action is recorded

### Authentication
All `/admin` endpoints require `Authorization: Bearer <access_token>` for a user
with the admin flag set.
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (last added is outermost) ───────────────────────
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Fixed-window limit for unauthenticated callers, per IP.
        Authenticated traffic and health/metrics are not limited here.
        A Redis outage lets requests through.
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}
        client = redis_module.redis_client
        if (
            request.url.path in skip_paths
            or client is None
            or request.headers.get("Authorization", "").startswith("Bearer ")
        ):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        try:
            allowed = await RedisCache(client).check_rate_limit(
                f"rate:unauth:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE
            )
        except RedisError as e:
            logger.error(f"Rate limit check failed: {e}")
            allowed = True

        if not allowed:
            logger.warning(f"Rate limit exceeded for IP {client_ip}")
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Please slow down."},
                headers={"Retry-After": "60"},
            )
        return await call_next(request)

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for distributed tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(ConsoleError)
    async def console_error_handler(request: Request, exc: ConsoleError):
        """Domain errors carry enough context (kind, id) for the reviewer to retry or resolve."""
        request_id = getattr(request.state, "request_id", None)
        level = logging.ERROR if exc.status_code >= 500 else logging.INFO
        logger.log(level, f"[{request_id}] {exc.code}: {exc.detail} ({exc.kind} {exc.entity_id})")
        body = ErrorResponse(
            detail=exc.detail,
            code=exc.code,
            kind=exc.kind,
            id=exc.entity_id,
            request_id=request_id,
        )
        return JSONResponse(status_code=exc.status_code, content=body.model_dump())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Exception: {exc}", exc_info=True)
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "request_id": request_id},
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except (SQLAlchemyError, OSError):
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_module.redis_client is None:
                raise RedisError("not initialized")
            await redis_module.redis_client.ping()
            checks["redis"] = "ok"
        except (RedisError, OSError):
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    app.include_router(entities_router)
    app.include_router(payments_router)
    app.include_router(users_router)
    app.include_router(admin_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
