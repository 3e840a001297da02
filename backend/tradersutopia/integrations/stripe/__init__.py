"""
Stripe integration module.
"""

from tradersutopia.integrations.stripe.billing_client import (
    StripeAPIError,
    StripeBillingClient,
    get_billing_client,
)
from tradersutopia.integrations.stripe.events import BillingEventRecord, parse_event

__all__ = [
    "StripeAPIError",
    "StripeBillingClient",
    "get_billing_client",
    "BillingEventRecord",
    "parse_event",
]
