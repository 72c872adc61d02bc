"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

Production-ready features:
- Multiple instances behind NGINX load balancer
- Rate limiting for unauthenticated traffic
- Request IDs and timing headers
- Structured JSON logging
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
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from config.database import close_db, init_db
from config.redis_client import close_redis, init_redis
from config.settings import settings
from shared.exceptions import MarketplaceError

# Service routers
from services.auth.router import router as auth_router
from services.user.router import router as user_router
from services.listing.router import router as listing_router
from services.payment.router import router as payment_router
from services.notification.router import router as notification_router
from services.admin.router import router as admin_router


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
        request_id = getattr(record, "request_id", None)
        if request_id:
            log_data["request_id"] = request_id
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
    logger.info(f"Starting {settings.APP_NAME}...")

    # Initialize connections
    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    # Seed default credit packages: only in dev
    if settings.APP_ENV == "development":
        await seed_initial_data()

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    # Cleanup
    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Saman Marketplace API

REST API for the vehicle and spare-parts marketplace:
- **Auth**: Phone + password, JWT access tokens + rotating refresh tokens
- **Listings**: Submit, moderate, renew, mark sold; public feed of live listings
- **Credits**: Separate Spare Parts and Automotive credit pools
- **Payments**: Telr hosted payment page + Apple Pay
- **Notifications**: In-app inbox + FCM push
- **Admin**: Moderation queue, credit grants, packages, analytics + audit log

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>` header.
Get a token via `/auth/login`.
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (order matters: outermost first) ───────────────
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["*"]
    )
    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )

    # GZip compression
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for distributed tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Per-IP limit for unauthenticated traffic.
        Authenticated users are limited at NGINX.
        Gateway callbacks, health and metrics are never limited.
        """
        skip_paths = {
            "/health", "/payments/telr/callback", "/docs", "/redoc", "/openapi.json", "/metrics",
        }
        if request.url.path in skip_paths:
            return await call_next(request)

        from config.redis_client import redis_client
        if redis_client and not request.headers.get("Authorization", "").startswith("Bearer "):
            client_ip = request.client.host if request.client else "unknown"
            key = f"rate:unauth:{client_ip}"
            try:
                count = await redis_client.incr(key)
                if count == 1:
                    await redis_client.expire(key, 60)
            except Exception as e:
                # Fail open if Redis is down
                logger.error(f"Rate limit check failed: {str(e)}")
            else:
                if count > settings.RATE_LIMIT_UNAUTH_PER_MINUTE:
                    logger.warning(f"Rate limit exceeded for IP {client_ip}")
                    return JSONResponse(
                        status_code=429,
                        content={"detail": "Rate limit exceeded. Please slow down."},
                        headers={"Retry-After": "60"},
                    )

        return await call_next(request)

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(MarketplaceError)
    async def marketplace_exception_handler(request: Request, exc: MarketplaceError):
        """Domain errors carry their own status code and machine-readable code."""
        if exc.status_code >= 500:
            request_id = getattr(request.state, "request_id", None)
            logger.error(f"[{request_id}] {exc.code}: {exc.detail}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Malformed requests use the same shape as domain errors, plus the raw error list."""
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(
            str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")
        )
        content = {
            "detail": first.get("msg", "Invalid request"),
            "code": "VALIDATION_ERROR",
            "errors": jsonable_encoder(errors),
        }
        if field:
            content["field"] = field
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"

        logger.error(f"[{request_id}] Exception: {str(exc)}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "detail": detail,
                "request_id": request_id,
            },
        )

    # ── Routes ────────────────────────────────────────────────────

    # Health check (public)
    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from config.redis_client import redis_client
        from sqlalchemy import text
        from config.database import AsyncSessionLocal

        checks = {"status": "ok", "version": settings.APP_VERSION}

        # DB check
        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            checks["database"] = "error"
            checks["status"] = "degraded"

        # Redis check
        try:
            if redis_client:
                await redis_client.ping()
            checks["redis"] = "ok"
        except Exception:
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

    # Register all service routers
    app.include_router(auth_router)
    app.include_router(user_router)
    app.include_router(listing_router)
    app.include_router(payment_router)
    app.include_router(notification_router)
    app.include_router(admin_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    app.mount("/metrics", make_asgi_app())

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

DEFAULT_PACKAGES = [
    # (credits, price in AED)
    (1, "10.00"),
    (5, "45.00"),
    (10, "80.00"),
]


async def seed_initial_data():
    """Seed credit packages for both categories on first run (development only)."""
    from decimal import Decimal

    from sqlalchemy import func, select

    from config.database import AsyncSessionLocal
    from shared.models.models import CreditPackage, ListingCategory

    async with AsyncSessionLocal() as db:
        count = await db.scalar(select(func.count(CreditPackage.id)))
        if count and count > 0:
            return  # Already seeded

        for category in ListingCategory:
            for order, (credits, price) in enumerate(DEFAULT_PACKAGES):
                db.add(CreditPackage(
                    name=f"{credits} {category.value} credit{'s' if credits > 1 else ''}",
                    category=category,
                    credits=credits,
                    price=Decimal(price),
                    sort_order=order,
                ))

        await db.commit()
        logger.info(f"Seeded {len(DEFAULT_PACKAGES) * len(ListingCategory)} credit packages")


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
