"""Services package."""

from coachbilling.services.billing_store import BillingStore, get_billing_store
from coachbilling.services.event_ledger import EventLedger, get_event_ledger
from coachbilling.services.notifications import MailQueue, get_mail_queue
from coachbilling.services.stripe_gateway import StripeGateway, get_stripe_gateway

__all__ = [
    "BillingStore",
    "get_billing_store",
    "EventLedger",
    "get_event_ledger",
    "MailQueue",
    "get_mail_queue",
    "StripeGateway",
    "get_stripe_gateway",
]
