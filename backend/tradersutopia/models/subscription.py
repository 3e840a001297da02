"""
Subscription model: the canonical, locally reconciled view of a Stripe customer.

CRITICAL: One subscription row per billing customer.
Rows are written ONLY by the SubscriptionReconciler (webhooks + reconciliation job).
Everything else reads them, and access decisions go through the AccessService.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column, String, Integer, Boolean, Enum as SAEnum,
    ForeignKey, Index
)
from sqlalchemy.orm import relationship

from tradersutopia.models.base import Base, TimestampMixin, UTCDateTime, generate_uuid, ensure_utc


class SubscriptionStatus(str, Enum):
    """Local subscription status values."""
    ACTIVE = "active"            # Paid (or trialing) and inside the billing window
    PAST_DUE = "past_due"        # Provider gave up retrying inside the period
    CANCELLED = "cancelled"      # Deleted in Stripe or cancelled immediately
    PAUSED = "paused"            # Collection paused, access revoked
    EXPIRED = "expired"          # Window lapsed or unpaid
    FREE = "free"                # No subscription


# Stripe status vocabulary -> local status
STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "paused": SubscriptionStatus.PAUSED,
    "unpaid": SubscriptionStatus.EXPIRED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "incomplete": SubscriptionStatus.FREE,
}

# Stripe statuses that still count as "in good standing"
STRIPE_ACTIVE_STATUSES = frozenset({"active", "trialing"})


def map_stripe_status(stripe_status: Optional[str]) -> Optional[SubscriptionStatus]:
    """Map a Stripe subscription status to the local enum, None if unknown."""
    if not stripe_status:
        return None
    return STRIPE_STATUS_MAP.get(stripe_status.lower())


class Subscription(Base, TimestampMixin):
    """
    Canonical subscription record for one Stripe customer.

    CRITICAL DESIGN:
    - Keyed by customer_ref (Stripe customer id), fallback subscription_ref
    - Last-write-wins by event occurred_at, tracked in last_reconciled_at
    - Optimistic locking via version_id_col protects concurrent webhook deliveries
    - status == active always carries current_period_end
    """

    __tablename__ = "subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    # Stripe references
    customer_ref = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Stripe customer id (cus_...)"
    )
    subscription_ref = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Stripe subscription id (sub_...). Replaced, never cleared"
    )
    product_ref = Column(
        String(255),
        nullable=True,
        comment="Stripe product id of the first line item"
    )
    price_ref = Column(
        String(255),
        nullable=True,
        comment="Stripe price id of the first line item"
    )

    account_id = Column(
        String(36),
        ForeignKey("accounts.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Linked local account"
    )

    status = Column(
        SAEnum(
            *[s.value for s in SubscriptionStatus],
            name="subscription_status"
        ),
        default=SubscriptionStatus.FREE.value,
        nullable=False,
        index=True,
        comment="Current subscription status"
    )

    # Paid access window
    current_period_start = Column(
        UTCDateTime(),
        nullable=True,
        comment="Start of current billing period"
    )
    current_period_end = Column(
        UTCDateTime(),
        nullable=True,
        comment="End of current billing period"
    )

    auto_renew = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="False when Stripe reports cancel_at_period_end"
    )
    cancelled_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="When cancellation was requested or processed"
    )

    failed_payment_count = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Attempt count of the latest failed invoice"
    )
    customer_deleted_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="Customer deleted in Stripe. Terminal"
    )

    # Reconciliation bookkeeping
    last_reconciled_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="occurred_at of the last applied event"
    )
    last_event_id = Column(
        String(255),
        nullable=True,
        comment="Stripe event id of the last applied event"
    )
    version = Column(
        Integer,
        nullable=False,
        comment="Optimistic concurrency counter"
    )

    account = relationship("Account", back_populates="subscription")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, customer_ref={self.customer_ref}, "
            f"status={self.status})>"
        )

    @property
    def is_customer_deleted(self) -> bool:
        return self.customer_deleted_at is not None

    def is_window_open(self, now: datetime) -> bool:
        """True when now falls before current_period_end."""
        period_end = ensure_utc(self.current_period_end)
        return period_end is not None and ensure_utc(now) < period_end

    def is_lapsed(self, now: datetime) -> bool:
        """Active on paper but the paid window has passed (missed webhook)."""
        return self.status == SubscriptionStatus.ACTIVE.value and not self.is_window_open(now)
