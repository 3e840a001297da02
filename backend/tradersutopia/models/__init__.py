"""
Database models for billing, subscriptions, and access.
"""

from tradersutopia.models.base import TimestampMixin
from tradersutopia.models.account import Account
from tradersutopia.models.subscription import Subscription, SubscriptionStatus
from tradersutopia.models.webhook_event import WebhookEvent, WebhookOutcome
from tradersutopia.models.billing_event import BillingEvent, BillingEventType
from tradersutopia.models.notification import Notification, NotificationKind

__all__ = [
    "TimestampMixin",
    "Account",
    "Subscription",
    "SubscriptionStatus",
    "WebhookEvent",
    "WebhookOutcome",
    "BillingEvent",
    "BillingEventType",
    "Notification",
    "NotificationKind",
]
