"""Checkout initiation, billing portal links and post-checkout verification."""

from __future__ import annotations

import stripe

from coachbilling.billing.plans import ENTITLED_STATUSES
from coachbilling.billing.reconciler import checkout_user_id
from coachbilling.errors import CallableError, StripeNotConfiguredError
from coachbilling.models import (
    BillingRecord,
    CheckoutRequest,
    PaymentVerificationRequest,
    PortalRequest,
    Tier,
    TokenData,
)
from coachbilling.services.billing_store import BillingStore
from coachbilling.services.stripe_gateway import StripeGateway
from coachbilling.utils.logging import get_logger

logger = get_logger(__name__)


def _stripe_message(error: stripe.StripeError, fallback: str) -> str:
    return error.user_message or fallback


def is_premium(record: BillingRecord) -> bool:
    return record.tier == Tier.PREMIUM and record.status in ENTITLED_STATUSES


class CheckoutService:
    """Callable operations for the signed-in user."""

    def __init__(
        self,
        store: BillingStore,
        gateway: StripeGateway,
        portal_return_url: str | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.portal_return_url = portal_return_url

    async def ensure_customer(self, user: TokenData) -> str:
        """
        Return the user's Stripe customer id, creating and persisting it first
        when missing so later webhooks can be matched by customer id.
        """
        stored = await self.store.get(user.sub)
        customer_id = stored.record.customer_id if stored else None
        if customer_id:
            return customer_id

        email = user.email or (stored.data.get("email") if stored else None)
        customer_id = await self.gateway.create_customer(user.sub, email)
        await self.store.set_customer_id(user.sub, customer_id)
        return customer_id

    async def create_checkout_session(
        self, user: TokenData, request: CheckoutRequest
    ) -> str:
        """Create a subscription Checkout session and return its id."""
        try:
            customer_id = await self.ensure_customer(user)
            session = await self.gateway.create_checkout_session(
                user_id=user.sub,
                customer_id=customer_id,
                price_id=request.price_id,
                success_url=request.success_url,
                cancel_url=request.cancel_url,
            )
        except StripeNotConfiguredError as e:
            logger.error("checkout_stripe_not_configured")
            raise CallableError("internal", "Stripe is not configured.") from e
        except stripe.StripeError as e:
            logger.error("checkout_session_failed", user_id=user.sub, error=str(e))
            raise CallableError(
                "internal", _stripe_message(e, "Unable to create checkout session.")
            ) from e

        session_id = session.get("id")
        if not session_id:
            raise CallableError("internal", "Failed to create Stripe session ID.")

        logger.info("checkout_session_created", user_id=user.sub, price_id=request.price_id)
        return session_id

    async def create_portal_link(self, user: TokenData, request: PortalRequest) -> str:
        """Create a Stripe billing portal session for an existing customer."""
        stored = await self.store.get(user.sub)
        customer_id = stored.record.customer_id if stored else None
        if not customer_id:
            logger.warning("portal_customer_missing", user_id=user.sub)
            raise CallableError("not-found", "Stripe customer ID not found.")

        return_url = request.return_url or self.portal_return_url
        if not return_url:
            raise CallableError("invalid-argument", "Missing or invalid arguments: returnUrl")

        try:
            url = await self.gateway.create_portal_session(customer_id, return_url)
        except StripeNotConfiguredError as e:
            raise CallableError("internal", "Stripe is not configured.") from e
        except stripe.StripeError as e:
            logger.error("portal_session_failed", user_id=user.sub, error=str(e))
            raise CallableError(
                "internal", _stripe_message(e, "Unable to create portal link.")
            ) from e

        if not url:
            raise CallableError("internal", "Failed to create Stripe portal session URL.")
        return url

    async def verify_payment(
        self, user: TokenData, request: PaymentVerificationRequest
    ) -> BillingRecord:
        """
        Check that the webhook has already upgraded the buyer of a session.

        The webhook is the only writer of subscription state; this only reads.
        Raises failed-precondition while the record is not premium yet so the
        client can poll.
        """
        try:
            session = await self.gateway.retrieve_checkout_session(request.session_id)
        except StripeNotConfiguredError as e:
            raise CallableError("internal", "Stripe is not configured.") from e
        except stripe.InvalidRequestError as e:
            raise CallableError("invalid-argument", "Unknown checkout session.") from e
        except stripe.StripeError as e:
            raise CallableError(
                "internal", _stripe_message(e, "Failed to verify payment success.")
            ) from e

        user_id = checkout_user_id(session)
        if not user_id:
            raise CallableError("invalid-argument", "User ID not found in session.")
        if user_id != user.sub:
            raise CallableError("permission-denied", "Checkout session belongs to another user.")

        stored = await self.store.get(user_id)
        record = stored.record if stored else BillingRecord()
        if not is_premium(record):
            raise CallableError(
                "failed-precondition",
                "Subscription not active. Please wait a moment and try again.",
            )
        return record

    async def billing_status(self, user: TokenData) -> BillingRecord:
        stored = await self.store.get(user.sub)
        return stored.record if stored else BillingRecord()
