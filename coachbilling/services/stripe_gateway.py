"""Stripe gateway: the only module that talks to the Stripe SDK.

The SDK is synchronous, so calls run in the threadpool. The API key is passed
per call instead of being assigned to the global ``stripe.api_key``.
"""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Any

import stripe
from fastapi.concurrency import run_in_threadpool

from coachbilling.config import get_settings
from coachbilling.errors import StripeNotConfiguredError, WebhookSecretMissingError
from coachbilling.utils.logging import get_logger

logger = get_logger(__name__)


def to_plain(obj: Any) -> Any:
    """Convert Stripe objects (possibly nested) into plain dicts and lists."""
    if hasattr(obj, "to_dict"):
        obj = obj.to_dict()
    if isinstance(obj, dict):
        return {k: to_plain(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [to_plain(v) for v in obj]
    return obj


class StripeGateway:
    """Thin async wrapper over the Stripe resources the billing flows use."""

    def __init__(
        self,
        api_key: str | None,
        webhook_secret: str | None = None,
    ) -> None:
        self._api_key = api_key
        self._webhook_secret = webhook_secret

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _key(self) -> str:
        if not self._api_key:
            raise StripeNotConfiguredError("Stripe API key is not configured")
        return self._api_key

    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        """
        Verify a webhook payload and return the event as a plain dict.

        Raises:
            WebhookSecretMissingError: no signing secret configured
            stripe.SignatureVerificationError: missing or invalid signature
            ValueError: payload is not valid JSON
        """
        if not self._webhook_secret:
            raise WebhookSecretMissingError("Stripe webhook secret is not configured")
        if not signature:
            raise stripe.SignatureVerificationError(
                "No Stripe-Signature header", signature, payload
            )

        stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        # The verified raw body is the event itself
        return json.loads(payload)

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        subscription = await run_in_threadpool(
            stripe.Subscription.retrieve, subscription_id, api_key=self._key()
        )
        return to_plain(subscription)

    async def retrieve_checkout_session(self, session_id: str) -> dict:
        session = await run_in_threadpool(
            stripe.checkout.Session.retrieve, session_id, api_key=self._key()
        )
        return to_plain(session)

    async def create_customer(self, user_id: str, email: str | None = None) -> str:
        """Create a Stripe customer tagged with the internal user id."""
        params: dict[str, Any] = {"metadata": {"firebaseUID": user_id}}
        if email:
            params["email"] = email

        customer = await run_in_threadpool(
            stripe.Customer.create, api_key=self._key(), **params
        )
        logger.info("stripe_customer_created", user_id=user_id, customer_id=customer["id"])
        return customer["id"]

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> dict:
        """Create a subscription Checkout session linked to ``user_id``."""
        session = await run_in_threadpool(
            stripe.checkout.Session.create,
            api_key=self._key(),
            mode="subscription",
            payment_method_types=["card"],
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=user_id,
            metadata={"firebaseUID": user_id},
        )
        return to_plain(session)

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = await run_in_threadpool(
            stripe.billing_portal.Session.create,
            api_key=self._key(),
            customer=customer_id,
            return_url=return_url,
        )
        return session["url"]


@lru_cache
def get_stripe_gateway() -> StripeGateway:
    """Get the memoized Stripe gateway built from settings."""
    settings = get_settings()
    if not settings.stripe_configured:
        logger.warning("STRIPE_SECRET_KEY not set; Stripe calls will fail")

    return StripeGateway(
        api_key=(
            settings.stripe_secret_key.get_secret_value()
            if settings.stripe_secret_key
            else None
        ),
        webhook_secret=(
            settings.stripe_webhook_secret.get_secret_value()
            if settings.stripe_webhook_secret
            else None
        ),
    )
