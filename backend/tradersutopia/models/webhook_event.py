"""
WebhookEvent model for tracking processed Stripe webhooks.

Used for idempotency - ensures each Stripe event id is applied exactly once.
The row is written in the same transaction as the reconciled state, so an
event is only marked processed once its effects are committed.
"""

from sqlalchemy import Column, String, Index, func

from tradersutopia.models.base import Base, UTCDateTime, generate_uuid, utcnow


class WebhookOutcome:
    """Outcome constants recorded per event."""
    APPLIED = "applied"      # State changed (or confirmed)
    STALE = "stale"          # Older than last_reconciled_at, discarded
    IGNORED = "ignored"      # Unknown or informational event type
    REJECTED = "rejected"    # Failed validation, never retried


class WebhookEvent(Base):
    """
    Tracks processed Stripe webhook events for deduplication.

    Stripe may deliver webhooks multiple times and out of order. This table
    ensures each unique event is processed exactly once.
    """

    __tablename__ = "webhook_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    stripe_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Stripe event id (evt_...)"
    )

    event_type = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Stripe event type (e.g., customer.subscription.updated)"
    )

    customer_ref = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Stripe customer id the event referred to, if any"
    )

    outcome = Column(
        String(32),
        nullable=False,
        default=WebhookOutcome.APPLIED,
        comment="applied / stale / ignored / rejected"
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    occurred_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="Event creation time reported by Stripe"
    )

    processed_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        comment="When the webhook was processed"
    )

    created_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="When the record was created"
    )

    __table_args__ = (
        Index("idx_webhook_events_customer_type", "customer_ref", "event_type"),
        Index("idx_webhook_events_processed", "processed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(id={self.id}, event_id={self.stripe_event_id}, "
            f"type={self.event_type}, outcome={self.outcome})>"
        )
