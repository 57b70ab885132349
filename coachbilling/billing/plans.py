"""Static plan catalogue and the price -> tier rule.

Plans are a small, slowly changing set, so the lookup is a flat set of
premium price ids rather than a query.
"""

from __future__ import annotations

from collections.abc import Iterable

from coachbilling.models import Tier

# Monthly premium coach listing
DEFAULT_PREMIUM_PRICE_IDS = frozenset({"price_1RURVlG6UVJU45QN1mByj8Fc"})

# Stripe statuses that keep a premium price entitled
ENTITLED_STATUSES = frozenset({"active", "trialing"})

# Stripe statuses that force the free tier whatever the price
TERMINAL_STATUSES = frozenset({"canceled", "unpaid"})


def tier_for_price(price_id: str | None, premium_price_ids: Iterable[str]) -> Tier:
    """Map a Stripe price id to a tier. Unknown or missing ids are free."""
    if price_id and price_id in frozenset(premium_price_ids):
        return Tier.PREMIUM
    return Tier.FREE


def resolve_tier(
    price_id: str | None,
    status: str | None,
    premium_price_ids: Iterable[str],
) -> Tier:
    """Premium only for a premium price on an active or trialing subscription."""
    if status not in ENTITLED_STATUSES:
        return Tier.FREE
    return tier_for_price(price_id, premium_price_ids)
