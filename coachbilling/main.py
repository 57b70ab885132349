"""Main FastAPI application."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from redis.asyncio import Redis

from coachbilling.config import get_settings
from coachbilling.errors import CallableError
from coachbilling.routers import billing_router, health_router
from coachbilling.services import event_ledger
from coachbilling.utils.logging import configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()
    configure_logging()

    # Initialize Redis for the webhook event ledger
    logger.info("Initializing Redis connection...")
    event_ledger.redis_client = Redis.from_url(
        str(settings.redis_url),
        decode_responses=False,
    )

    if not settings.stripe_configured:
        logger.warning("STRIPE_SECRET_KEY not set; checkout and webhooks will fail")
    if settings.stripe_webhook_secret is None:
        logger.warning("STRIPE_WEBHOOK_SECRET not set; webhooks will be refused")

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        import sentry_sdk

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment.value,
            traces_sample_rate=0.1,
        )
        logger.info("Sentry initialized")

    logger.info("Application startup complete")

    yield

    # Cleanup
    logger.info("Shutting down...")
    if event_ledger.redis_client:
        await event_ledger.redis_client.close()
        event_ledger.redis_client = None
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Coach Billing API",
        description="""
## Coaching marketplace billing

Keeps each user's subscription tier in step with Stripe.

### Endpoints

- **Checkout**: create a Stripe Checkout session for the premium plan
- **Portal**: open the Stripe billing portal
- **Payment success**: confirm the upgrade after returning from Checkout
- **Webhook**: Stripe event receiver (signature verified)

### Authentication

Callable endpoints require a bearer token. The webhook is authenticated by
its `Stripe-Signature` header only.

### Errors

Callable errors use `{"error": {"code": "...", "message": "..."}}` with codes
`invalid-argument`, `unauthenticated`, `permission-denied`, `not-found`,
`failed-precondition` and `internal`.
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Prometheus metrics
    if settings.prometheus_enabled:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")

    # Include routers
    app.include_router(health_router)
    app.include_router(billing_router, prefix="/api/v1")

    @app.exception_handler(CallableError)
    async def callable_error_handler(request: Request, exc: CallableError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Callable failed", code=exc.code, message=exc.message, path=request.url.path)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
        message = "Missing or invalid arguments"
        if fields:
            message = f"{message}: {', '.join(fields)}"
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=CallableError("invalid-argument", message).to_dict(),
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        message = "An unexpected error occurred"
        if settings.debug:
            message = f"{type(exc).__name__}: {exc}"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=CallableError("internal", message).to_dict(),
        )

    return app


# Create app instance
app = create_app()
