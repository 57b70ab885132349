"""Stripe webhook reconciliation.

Each handled event type maps to one transition that overwrites the billing
fields it owns with Stripe's current view of the subscription. Nothing is
incremented and no state is carried between events, so a duplicate or
reordered delivery converges to the same record.

Outcomes:
- APPLIED: the record was written
- SKIPPED: linkage data or the record is missing; retrying cannot help
- IGNORED: event type not handled

Any exception escaping ``handle`` is treated as transient by the caller.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from coachbilling.billing.plans import (
    DEFAULT_PREMIUM_PRICE_IDS,
    TERMINAL_STATUSES,
    resolve_tier,
)
from coachbilling.models import Tier, WebhookOutcome
from coachbilling.services.billing_store import (
    CANCEL_AT_PERIOD_END_FIELD,
    CANCELLATION_DATE_FIELD,
    CUSTOMER_ID_FIELD,
    PERIOD_END_FIELD,
    PRICE_ID_FIELD,
    STATUS_FIELD,
    SUBSCRIPTION_ID_FIELD,
    TIER_FIELD,
    BillingStore,
    StoredUser,
)
from coachbilling.services.notifications import (
    DOWNGRADED_TEMPLATE,
    UPGRADED_TEMPLATE,
    MailQueue,
)
from coachbilling.services.stripe_gateway import StripeGateway
from coachbilling.utils.logging import get_logger

logger = get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def object_id(value: Any) -> str | None:
    """Id of a Stripe reference that may be a plain id or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict) and isinstance(value.get("id"), str):
        return value["id"] or None
    return None


def from_epoch(seconds: Any) -> datetime | None:
    if seconds is None:
        return None
    return datetime.fromtimestamp(int(seconds), tz=UTC)


def _first_item(subscription: dict) -> dict:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_price_id(subscription: dict) -> str | None:
    return object_id(_first_item(subscription).get("price"))


def subscription_period_end(subscription: dict) -> datetime | None:
    # Newer API versions carry the period on the subscription item
    return from_epoch(
        subscription.get("current_period_end")
        or _first_item(subscription).get("current_period_end")
    )


def invoice_subscription_id(invoice: dict) -> str | None:
    subscription_id = object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return object_id(details.get("subscription"))


def checkout_user_id(session: dict) -> str | None:
    metadata = session.get("metadata") or {}
    return metadata.get("firebaseUID") or session.get("client_reference_id") or None


class WebhookReconciler:
    """Applies verified Stripe events to billing records."""

    def __init__(
        self,
        store: BillingStore,
        gateway: StripeGateway,
        mail: MailQueue | None = None,
        premium_price_ids: Iterable[str] = DEFAULT_PREMIUM_PRICE_IDS,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.mail = mail
        self.premium_price_ids = frozenset(premium_price_ids)
        self._handlers: dict[str, Callable[[dict], Awaitable[WebhookOutcome]]] = {
            CHECKOUT_COMPLETED: self.on_checkout_completed,
            INVOICE_PAID: self.on_invoice_paid,
            INVOICE_PAYMENT_FAILED: self.on_invoice_payment_failed,
            SUBSCRIPTION_UPDATED: self.on_subscription_updated,
            SUBSCRIPTION_DELETED: self.on_subscription_deleted,
        }

    def handles(self, event_type: str | None) -> bool:
        return event_type in self._handlers

    async def handle(self, event: dict) -> WebhookOutcome:
        """Dispatch one verified event."""
        event_type = event.get("type")
        data = (event.get("data") or {}).get("object") or {}
        handler = self._handlers.get(event_type)

        if handler is None:
            logger.info("webhook_event_ignored", event_type=event_type, event_id=event.get("id"))
            return WebhookOutcome.IGNORED

        return await handler(data)

    def _tier(self, price_id: str | None, status: str | None) -> str:
        return resolve_tier(price_id, status, self.premium_price_ids).value

    def _skip(self, reason: str, event_type: str, **context: Any) -> WebhookOutcome:
        logger.warning(reason, event_type=event_type, **context)
        return WebhookOutcome.SKIPPED

    async def _write(
        self, user_id: str, before: StoredUser | None, fields: dict[str, Any]
    ) -> WebhookOutcome:
        await self.store.update(user_id, fields)
        await self._notify_tier_change(user_id, before, fields)
        return WebhookOutcome.APPLIED

    async def _notify_tier_change(
        self, user_id: str, before: StoredUser | None, fields: dict[str, Any]
    ) -> None:
        if self.mail is None or TIER_FIELD not in fields:
            return

        old_tier = before.record.tier if before else Tier.FREE
        new_tier = Tier(fields[TIER_FIELD])
        if old_tier == new_tier:
            return

        data = before.data if before else {}
        template = UPGRADED_TEMPLATE if new_tier == Tier.PREMIUM else DOWNGRADED_TEMPLATE
        logger.info("tier_changed", user_id=user_id, old=old_tier.value, new=new_tier.value)
        await self.mail.send(data.get("email"), template, {"name": data.get("name") or "there"})

    # ============ Transitions ============

    async def on_checkout_completed(self, session: dict) -> WebhookOutcome:
        mode = session.get("mode")
        if mode and mode != "subscription":
            logger.info("checkout_not_subscription", session_id=session.get("id"), mode=mode)
            return WebhookOutcome.SKIPPED

        user_id = checkout_user_id(session)
        subscription_id = object_id(session.get("subscription"))
        customer_id = object_id(session.get("customer"))

        if not (user_id and subscription_id and customer_id):
            return self._skip(
                "webhook_missing_linkage",
                CHECKOUT_COMPLETED,
                session_id=session.get("id"),
                user_id=user_id,
                subscription_id=subscription_id,
                customer_id=customer_id,
            )

        subscription = await self.gateway.retrieve_subscription(subscription_id)
        price_id = subscription_price_id(subscription)
        status = subscription.get("status")

        fields = {
            TIER_FIELD: self._tier(price_id, status),
            STATUS_FIELD: status,
            SUBSCRIPTION_ID_FIELD: subscription.get("id") or subscription_id,
            CUSTOMER_ID_FIELD: customer_id,
            PRICE_ID_FIELD: price_id,
            PERIOD_END_FIELD: subscription_period_end(subscription),
        }

        before = await self.store.get(user_id)
        outcome = await self._write(user_id, before, fields)
        logger.info(
            "checkout_reconciled",
            user_id=user_id,
            subscription_id=subscription_id,
            tier=fields[TIER_FIELD],
        )
        return outcome

    async def _invoice_target(
        self, invoice: dict, event_type: str
    ) -> tuple[dict, StoredUser] | WebhookOutcome:
        """Resolve an invoice to (current subscription, user) or a skip outcome."""
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return self._skip(
                "webhook_missing_linkage", event_type, invoice_id=invoice.get("id")
            )

        subscription = await self.gateway.retrieve_subscription(subscription_id)
        customer_id = object_id(invoice.get("customer")) or object_id(
            subscription.get("customer")
        )
        if not customer_id:
            return self._skip(
                "webhook_missing_linkage",
                event_type,
                invoice_id=invoice.get("id"),
                subscription_id=subscription_id,
            )

        user = await self.store.find_by_customer_id(customer_id)
        if user is None:
            return self._skip("webhook_user_not_found", event_type, customer_id=customer_id)

        return subscription, user

    async def on_invoice_paid(self, invoice: dict) -> WebhookOutcome:
        target = await self._invoice_target(invoice, INVOICE_PAID)
        if isinstance(target, WebhookOutcome):
            return target
        subscription, user = target

        status = subscription.get("status")
        fields = {
            STATUS_FIELD: status,
            PERIOD_END_FIELD: subscription_period_end(subscription),
            TIER_FIELD: self._tier(subscription_price_id(subscription), status),
        }
        return await self._write(user.user_id, user, fields)

    async def on_invoice_payment_failed(self, invoice: dict) -> WebhookOutcome:
        target = await self._invoice_target(invoice, INVOICE_PAYMENT_FAILED)
        if isinstance(target, WebhookOutcome):
            return target
        subscription, user = target

        status = subscription.get("status")
        fields: dict[str, Any] = {STATUS_FIELD: status}
        # past_due keeps the current tier while Stripe retries the payment
        if status in TERMINAL_STATUSES:
            fields[TIER_FIELD] = Tier.FREE.value

        logger.warning("invoice_payment_failed", user_id=user.user_id, status=status)
        return await self._write(user.user_id, user, fields)

    async def on_subscription_updated(self, subscription: dict) -> WebhookOutcome:
        customer_id = object_id(subscription.get("customer"))
        if not customer_id:
            return self._skip(
                "webhook_missing_linkage",
                SUBSCRIPTION_UPDATED,
                subscription_id=subscription.get("id"),
            )

        user = await self.store.find_by_customer_id(customer_id)
        if user is None:
            return self._skip(
                "webhook_user_not_found", SUBSCRIPTION_UPDATED, customer_id=customer_id
            )

        status = subscription.get("status")
        price_id = subscription_price_id(subscription)
        cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))

        fields = {
            STATUS_FIELD: status,
            PRICE_ID_FIELD: price_id,
            PERIOD_END_FIELD: subscription_period_end(subscription),
            TIER_FIELD: self._tier(price_id, status),
            CANCEL_AT_PERIOD_END_FIELD: cancel_at_period_end,
            CANCELLATION_DATE_FIELD: (
                from_epoch(subscription.get("cancel_at")) if cancel_at_period_end else None
            ),
        }
        return await self._write(user.user_id, user, fields)

    async def on_subscription_deleted(self, subscription: dict) -> WebhookOutcome:
        customer_id = object_id(subscription.get("customer"))
        if not customer_id:
            return self._skip(
                "webhook_missing_linkage",
                SUBSCRIPTION_DELETED,
                subscription_id=subscription.get("id"),
            )

        user = await self.store.find_by_customer_id(customer_id)
        if user is None:
            return self._skip(
                "webhook_user_not_found", SUBSCRIPTION_DELETED, customer_id=customer_id
            )

        fields = {
            TIER_FIELD: Tier.FREE.value,
            STATUS_FIELD: subscription.get("status") or "canceled",
            SUBSCRIPTION_ID_FIELD: None,
            PRICE_ID_FIELD: None,
            PERIOD_END_FIELD: None,
        }
        return await self._write(user.user_id, user, fields)
