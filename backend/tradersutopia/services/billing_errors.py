"""
Error taxonomy for billing event processing.

- BillingValidationError: malformed or unrecognizable payload. Never retried.
- TransientBillingError: storage/network failure. Retried by Stripe.
- NotifierError: notification delivery failed. Always swallowed.

Provider inconsistencies (e.g. a subscription with no period end) are not
exceptions: the reconciler logs a warning and uses a conservative default.
"""

from typing import Optional


class BillingError(Exception):
    """Base exception for billing reconciliation errors."""

    retryable: bool = False

    def __init__(self, message: str, event_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.event_id = event_id


class BillingValidationError(BillingError):
    """Event payload is missing required identifiers or has the wrong shape."""

    retryable = False


class TransientBillingError(BillingError):
    """Temporary failure. The event must not be marked processed."""

    retryable = True


class NotifierError(BillingError):
    """Notification could not be delivered."""

    retryable = False
