"""Transactional email queue.

Emails are not sent from here: a templated document is added to the ``mail``
collection and the Firestore trigger-email extension delivers it.
"""

from __future__ import annotations

from typing import Any

from coachbilling.config import get_settings
from coachbilling.services.billing_store import get_firestore_client
from coachbilling.utils.logging import get_logger

logger = get_logger(__name__)

UPGRADED_TEMPLATE = "user_upgraded_to_premium"
DOWNGRADED_TEMPLATE = "subscription_downgraded"


class MailQueue:
    """Queues templated emails; failures are logged, never raised."""

    def __init__(self, client: Any, collection: str = "mail") -> None:
        self._client = client
        self._collection = collection

    async def send(self, email: str | None, template: str, data: dict[str, Any]) -> bool:
        """Queue ``template`` for ``email``. Returns whether it was queued."""
        if not email:
            logger.error("mail_missing_recipient", template=template)
            return False

        try:
            await self._client.collection(self._collection).add(
                {"to": [email], "template": {"name": template, "data": data}}
            )
        except Exception as e:
            logger.error("mail_queue_failed", template=template, error=str(e))
            return False

        logger.info("mail_queued", template=template)
        return True


def get_mail_queue() -> MailQueue:
    settings = get_settings()
    return MailQueue(get_firestore_client(), settings.mail_collection)
