"""
BillingEvent model for immutable audit trail.

CRITICAL: This table is APPEND-ONLY.
Never update or delete billing events - only insert new ones.
"""

from sqlalchemy import Column, String, JSON, ForeignKey, Index, func

from tradersutopia.models.base import Base, UTCDateTime, generate_uuid, utcnow


class BillingEventType:
    """Billing event type constants."""
    # Subscription lifecycle
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_EXPIRED = "subscription_expired"

    # Payment events
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"

    # Customer events
    CUSTOMER_LINKED = "customer_linked"
    CUSTOMER_DELETED = "customer_deleted"

    # Reconciliation
    STALE_EVENT_DISCARDED = "stale_event_discarded"


class ActorType:
    """Actor type constants."""
    WEBHOOK = "webhook"
    CRON = "cron"
    SYSTEM = "system"


class BillingEvent(Base):
    """
    Immutable audit log of canonical subscription changes.

    NOTE: occurred_at is the provider event time, created_at the insert time.
    """

    __tablename__ = "billing_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    subscription_id = Column(
        String(36),
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Related subscription"
    )
    customer_ref = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Stripe customer id"
    )
    stripe_event_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Stripe event that caused the change"
    )

    event_type = Column(
        String(64),
        nullable=False,
        index=True,
        comment="BillingEventType value"
    )
    actor_type = Column(
        String(32),
        nullable=False,
        default=ActorType.WEBHOOK,
        comment="Who caused the change"
    )

    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=True)

    extra_metadata = Column(
        JSON,
        nullable=True,
        comment="Event-specific details"
    )

    occurred_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        comment="When the underlying event happened"
    )
    created_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="When the record was inserted"
    )

    __table_args__ = (
        Index("ix_billing_events_customer_occurred", "customer_ref", "occurred_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<BillingEvent(id={self.id}, type={self.event_type}, "
            f"customer_ref={self.customer_ref})>"
        )
