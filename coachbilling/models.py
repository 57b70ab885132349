"""Pydantic models for billing records, requests and responses."""

from datetime import datetime
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Tier(str, Enum):
    """Feature-gating tiers."""

    FREE = "free"
    PREMIUM = "premium"


def _check_absolute_url(value: str) -> str:
    parts = urlsplit(value.strip())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError("must be an absolute http(s) URL")
    return value.strip()


class CamelModel(BaseModel):
    """Model that reads and writes camelCase keys on the wire."""

    model_config = ConfigDict(populate_by_name=True)


# ============ Authentication Models ============


class TokenData(BaseModel):
    """JWT token payload data."""

    sub: str  # Internal (Firebase) user id
    email: str | None = None
    exp: datetime | None = None


# ============ Billing Record ============


class BillingRecord(CamelModel):
    """Per-user subscription state mirrored from Stripe.

    Field aliases are the Firestore field names on the ``users/{uid}``
    document, which the rest of the application reads.
    """

    tier: Tier = Field(default=Tier.FREE, alias="subscriptionTier")
    status: str | None = Field(default=None, alias="subscriptionStatus")
    customer_id: str | None = Field(default=None, alias="stripeCustomerId")
    subscription_id: str | None = Field(default=None, alias="stripeSubscriptionId")
    price_id: str | None = Field(default=None, alias="subscriptionPriceId")
    current_period_end: datetime | None = Field(
        default=None, alias="subscriptionCurrentPeriodEnd"
    )
    cancel_at_period_end: bool = Field(
        default=False, alias="subscriptionCancelAtPeriodEnd"
    )
    cancellation_date: datetime | None = Field(
        default=None, alias="subscriptionCancellationDate"
    )
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @field_validator("tier", mode="before")
    @classmethod
    def default_unknown_tier(cls, v: Any) -> Any:
        if v is None or v not in {t.value for t in Tier}:
            return Tier.FREE
        return v

    @field_validator("cancel_at_period_end", mode="before")
    @classmethod
    def default_cancel_flag(cls, v: Any) -> bool:
        return bool(v)

    @field_validator("updated_at", mode="before")
    @classmethod
    def drop_unresolved_timestamp(cls, v: Any) -> Any:
        # Server timestamp sentinels have no value until the write lands
        return v if v is None or isinstance(v, (datetime, str, int, float)) else None

    @classmethod
    def from_document(cls, data: dict | None) -> "BillingRecord":
        """Build a record from a raw Firestore document (extra fields ignored)."""
        return cls.model_validate(data or {})


class BillingStatusResponse(CamelModel):
    """Billing state for the current user."""

    user_id: str = Field(alias="userId")
    is_premium: bool = Field(alias="isPremium")
    record: BillingRecord


# ============ Callable Requests / Responses ============


class CheckoutRequest(CamelModel):
    """Checkout session creation request.

    Any client-supplied user id is ignored; identity comes from the token.
    """

    price_id: str = Field(..., alias="priceId", min_length=1)
    success_url: str = Field(..., alias="successUrl", min_length=1)
    cancel_url: str = Field(..., alias="cancelUrl", min_length=1)

    @field_validator("success_url", "cancel_url")
    @classmethod
    def check_url(cls, v: str) -> str:
        return _check_absolute_url(v)

    @field_validator("price_id")
    @classmethod
    def strip_price(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class CheckoutResponse(CamelModel):
    session_id: str = Field(alias="sessionId")


class PortalRequest(CamelModel):
    """Billing portal link request. Without ``returnUrl`` the configured default is used."""

    return_url: str | None = Field(default=None, alias="returnUrl")

    @field_validator("return_url")
    @classmethod
    def check_url(cls, v: str | None) -> str | None:
        return v if v is None else _check_absolute_url(v)


class PortalResponse(CamelModel):
    portal_url: str = Field(alias="portalUrl")


class PaymentVerificationRequest(CamelModel):
    """Post-checkout verification request."""

    session_id: str = Field(..., alias="sessionId", min_length=1)


class PaymentVerificationResponse(CamelModel):
    verified: bool
    message: str


# ============ Webhook Models ============


class WebhookOutcome(str, Enum):
    """How a webhook event was handled."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


class WebhookAck(BaseModel):
    """Webhook acknowledgement body."""

    received: bool = True
    event_type: str | None = None
    outcome: WebhookOutcome


# ============ Error Models ============


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    """Structured callable error body."""

    error: ErrorDetail


# ============ Health Models ============


class HealthCheck(BaseModel):
    """Health check response."""

    status: str
    version: str
    environment: str
    firestore: str
    redis: str
    stripe: str
