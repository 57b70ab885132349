"""Redis ledger of Stripe webhook event ids.

Stripe delivers at least once. An event id is claimed with ``SET NX EX``
under a short processing TTL, then marked done once it has been handled.
Only a done event counts as a duplicate: a failed or interrupted claim is
released, and a claim left behind by a dead worker expires on its own, so
Stripe's retry is always processed.

The ledger is best-effort: when Redis is missing or failing, events are
processed anyway (every transition is an idempotent overwrite).
"""

from __future__ import annotations

from redis.asyncio import Redis
from redis.exceptions import RedisError

from coachbilling.config import get_settings
from coachbilling.utils.logging import get_logger

logger = get_logger(__name__)

PROCESSING = b"processing"
DONE = b"done"

# Redis connection (initialized in app startup)
redis_client: Redis | None = None


class EventLedger:
    """Claims webhook event ids in Redis."""

    def __init__(
        self,
        redis: Redis | None,
        ttl_seconds: int = 259200,
        processing_ttl_seconds: int = 120,
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._processing_ttl = processing_ttl_seconds

    @staticmethod
    def _key(event_id: str) -> str:
        return f"stripe:event:{event_id}"

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    async def claim(self, event_id: str | None) -> bool:
        """Return False only when the event was already processed."""
        if not event_id or self._redis is None:
            return True

        key = self._key(event_id)
        try:
            if await self._redis.set(key, PROCESSING, nx=True, ex=self._processing_ttl):
                return True
            state = await self._redis.get(key)
        except RedisError as e:
            logger.warning("event_ledger_unavailable", event_id=event_id, error=str(e))
            return True

        # An in-flight claim does not make this delivery a duplicate
        return state != DONE

    async def complete(self, event_id: str | None) -> None:
        """Mark an event processed for the full dedupe window."""
        if not event_id or self._redis is None:
            return

        try:
            await self._redis.set(self._key(event_id), DONE, ex=self._ttl)
        except RedisError as e:
            logger.warning("event_ledger_complete_failed", event_id=event_id, error=str(e))

    async def release(self, event_id: str | None) -> None:
        """Drop a claim so the sender's retry gets processed."""
        if not event_id or self._redis is None:
            return

        try:
            await self._redis.delete(self._key(event_id))
        except RedisError as e:
            logger.error("event_ledger_release_failed", event_id=event_id, error=str(e))


def get_event_ledger() -> EventLedger:
    settings = get_settings()
    return EventLedger(
        redis_client,
        settings.webhook_event_ttl_seconds,
        settings.webhook_processing_ttl_seconds,
    )
