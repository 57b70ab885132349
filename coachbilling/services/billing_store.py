"""Billing record access on top of Firestore.

Records live on ``users/{uid}``. Every write is a partial merge so unrelated
profile fields written elsewhere are never clobbered, and a merge also
creates the document when it does not exist yet.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from coachbilling.config import get_settings
from coachbilling.models import BillingRecord

# Firestore field names owned by the billing subsystem
CUSTOMER_ID_FIELD = "stripeCustomerId"
SUBSCRIPTION_ID_FIELD = "stripeSubscriptionId"
TIER_FIELD = "subscriptionTier"
STATUS_FIELD = "subscriptionStatus"
PRICE_ID_FIELD = "subscriptionPriceId"
PERIOD_END_FIELD = "subscriptionCurrentPeriodEnd"
CANCEL_AT_PERIOD_END_FIELD = "subscriptionCancelAtPeriodEnd"
CANCELLATION_DATE_FIELD = "subscriptionCancellationDate"
UPDATED_AT_FIELD = "updatedAt"


@dataclass
class StoredUser:
    """A user document resolved by the store."""

    user_id: str
    data: dict[str, Any]

    @property
    def record(self) -> BillingRecord:
        return BillingRecord.from_document(self.data)


class BillingStore:
    """Reads and merge-writes billing fields on user documents."""

    def __init__(self, client: Any, collection: str = "users") -> None:
        self._client = client
        self._collection = collection

    def _users(self):
        return self._client.collection(self._collection)

    async def get(self, user_id: str) -> StoredUser | None:
        snapshot = await self._users().document(user_id).get()
        if not snapshot.exists:
            return None
        return StoredUser(user_id=snapshot.id, data=snapshot.to_dict() or {})

    async def find_by_customer_id(self, customer_id: str) -> StoredUser | None:
        """Secondary-index lookup by Stripe customer id (first match)."""
        query = self._users().where(
            filter=FieldFilter(CUSTOMER_ID_FIELD, "==", customer_id)
        ).limit(1)
        for snapshot in await query.get():
            if snapshot.exists:
                return StoredUser(user_id=snapshot.id, data=snapshot.to_dict() or {})
        return None

    async def update(self, user_id: str, fields: dict[str, Any]) -> None:
        """Merge ``fields`` into the user document and stamp ``updatedAt``."""
        payload = dict(fields)
        payload[UPDATED_AT_FIELD] = firestore.SERVER_TIMESTAMP
        await self._users().document(user_id).set(payload, merge=True)

    async def set_customer_id(self, user_id: str, customer_id: str) -> None:
        await self.update(user_id, {CUSTOMER_ID_FIELD: customer_id})

    async def ping(self) -> None:
        """Cheap read used by the health check."""
        await self._users().document("_health").get()


@lru_cache
def get_firestore_client() -> firestore.AsyncClient:
    """Get the memoized Firestore client (credentials from the environment)."""
    settings = get_settings()
    return firestore.AsyncClient(project=settings.firebase_project_id)


def get_billing_store() -> BillingStore:
    settings = get_settings()
    return BillingStore(get_firestore_client(), settings.users_collection)
