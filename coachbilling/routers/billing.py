"""Billing endpoints: checkout, portal, verification and the Stripe webhook.

Endpoints:
- POST /billing/checkout        : create a subscription Checkout session
- POST /billing/portal          : return a Stripe billing portal URL
- POST /billing/payment-success : confirm the webhook upgraded the buyer
- GET  /billing/me              : current user's billing record
- POST /billing/webhook         : Stripe webhook receiver (signature verified)
"""

import stripe
from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from coachbilling.auth.dependencies import CurrentUser
from coachbilling.billing.checkout import CheckoutService, is_premium
from coachbilling.billing.reconciler import WebhookReconciler
from coachbilling.config import get_settings
from coachbilling.errors import WebhookSecretMissingError
from coachbilling.models import (
    BillingStatusResponse,
    CheckoutRequest,
    CheckoutResponse,
    ErrorResponse,
    PaymentVerificationRequest,
    PaymentVerificationResponse,
    PortalRequest,
    PortalResponse,
    WebhookAck,
    WebhookOutcome,
)
from coachbilling.services.billing_store import BillingStore, get_billing_store
from coachbilling.services.event_ledger import EventLedger, get_event_ledger
from coachbilling.services.notifications import MailQueue, get_mail_queue
from coachbilling.services.stripe_gateway import StripeGateway, get_stripe_gateway
from coachbilling.utils.logging import get_logger

router = APIRouter(prefix="/billing", tags=["billing"])
logger = get_logger(__name__)

CALLABLE_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def get_checkout_service(
    store: BillingStore = Depends(get_billing_store),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> CheckoutService:
    settings = get_settings()
    return CheckoutService(store, gateway, settings.default_portal_return_url)


def get_reconciler(
    store: BillingStore = Depends(get_billing_store),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    mail: MailQueue = Depends(get_mail_queue),
) -> WebhookReconciler:
    settings = get_settings()
    return WebhookReconciler(store, gateway, mail, settings.premium_price_ids)


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    responses=CALLABLE_ERRORS,
    summary="Create checkout session",
)
async def create_checkout_session(
    payload: CheckoutRequest,
    current_user: CurrentUser,
    service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutResponse:
    """Create a Stripe Checkout session for the signed-in user."""
    session_id = await service.create_checkout_session(current_user, payload)
    return CheckoutResponse(session_id=session_id)


@router.post(
    "/portal",
    response_model=PortalResponse,
    responses={**CALLABLE_ERRORS, 404: {"model": ErrorResponse}},
    summary="Create billing portal link",
)
async def create_portal_link(
    payload: PortalRequest,
    current_user: CurrentUser,
    service: CheckoutService = Depends(get_checkout_service),
) -> PortalResponse:
    """Return a Stripe billing portal URL for the signed-in user."""
    url = await service.create_portal_link(current_user, payload)
    return PortalResponse(portal_url=url)


@router.post(
    "/payment-success",
    response_model=PaymentVerificationResponse,
    responses={
        **CALLABLE_ERRORS,
        403: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    summary="Verify a completed checkout",
)
async def verify_payment_success(
    payload: PaymentVerificationRequest,
    current_user: CurrentUser,
    service: CheckoutService = Depends(get_checkout_service),
) -> PaymentVerificationResponse:
    """Confirm that the webhook has upgraded the buyer of a Checkout session."""
    await service.verify_payment(current_user, payload)
    return PaymentVerificationResponse(verified=True, message="Subscription verified.")


@router.get("/me", response_model=BillingStatusResponse, summary="Current billing state")
async def get_billing_status(
    current_user: CurrentUser,
    service: CheckoutService = Depends(get_checkout_service),
) -> BillingStatusResponse:
    record = await service.billing_status(current_user)
    return BillingStatusResponse(
        user_id=current_user.sub,
        is_premium=is_premium(record),
        record=record,
    )


@router.post("/webhook", response_model=WebhookAck, summary="Stripe webhook receiver")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    reconciler: WebhookReconciler = Depends(get_reconciler),
    ledger: EventLedger = Depends(get_event_ledger),
):
    """
    Receive Stripe webhook events.

    - 400: missing or invalid signature (nothing is processed)
    - 200: handled, deliberately skipped, duplicate or ignored type
    - 500: processing failed; Stripe retries the event
    """
    # Signature covers the raw bytes; never re-serialize before verifying
    body = await request.body()

    try:
        event = gateway.construct_event(body, stripe_signature)
    except WebhookSecretMissingError:
        logger.error("webhook_secret_not_configured")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"received": False, "error": "webhook_not_configured"},
        )
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning("webhook_signature_rejected", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"received": False, "error": "invalid_signature"},
        )

    event_type = event.get("type")
    event_id = event.get("id")
    logger.info("webhook_received", event_type=event_type, event_id=event_id)

    if not reconciler.handles(event_type):
        return WebhookAck(event_type=event_type, outcome=WebhookOutcome.IGNORED)

    if not await ledger.claim(event_id):
        logger.info("webhook_duplicate", event_type=event_type, event_id=event_id)
        return WebhookAck(event_type=event_type, outcome=WebhookOutcome.DUPLICATE)

    processed = False
    try:
        outcome = await reconciler.handle(event)
        processed = True
    except Exception:
        logger.exception("webhook_processing_failed", event_type=event_type, event_id=event_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"received": False, "error": "processing_failed"},
        )
    finally:
        # Also runs on cancellation, so an interrupted event is retried
        if processed:
            await ledger.complete(event_id)
        else:
            await ledger.release(event_id)

    return WebhookAck(event_type=event_type, outcome=outcome)
