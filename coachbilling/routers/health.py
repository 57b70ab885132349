"""Health check and status endpoints."""

from fastapi import APIRouter, Depends

from coachbilling.config import get_settings
from coachbilling.models import HealthCheck
from coachbilling.services import event_ledger
from coachbilling.services.billing_store import BillingStore, get_billing_store
from coachbilling.services.stripe_gateway import StripeGateway, get_stripe_gateway

router = APIRouter(tags=["health"])


@router.get(
    "/health",
    response_model=HealthCheck,
    summary="Health check",
    description="Check the health of the API and its dependencies.",
)
async def health_check(
    store: BillingStore = Depends(get_billing_store),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> HealthCheck:
    """Check health of all services."""
    settings = get_settings()

    # Redis only backs the webhook ledger
    redis = event_ledger.redis_client
    if redis is None:
        redis_status = "disabled"
    else:
        try:
            await redis.ping()
            redis_status = "healthy"
        except Exception:
            redis_status = "unhealthy"

    try:
        await store.ping()
        firestore_status = "healthy"
    except Exception:
        firestore_status = "unhealthy"

    stripe_status = "configured" if gateway.configured else "unconfigured"

    overall_status = "healthy"
    if redis_status == "unhealthy" or firestore_status == "unhealthy" or not gateway.configured:
        overall_status = "degraded"

    return HealthCheck(
        status=overall_status,
        version="0.1.0",
        environment=settings.environment.value,
        firestore=firestore_status,
        redis=redis_status,
        stripe=stripe_status,
    )


@router.get(
    "/",
    summary="API information",
    description="Get basic API information.",
)
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Coach Billing API",
        "version": "0.1.0",
        "description": "Subscription billing for the coaching marketplace",
        "documentation": "/docs",
        "health": "/health",
    }
