"""
Notification model for user-facing billing notifications.

Written by NotificationService after a billing event commits.
Push delivery is handled elsewhere; this is the in-app record.
"""

from enum import Enum

from sqlalchemy import Column, String, Text, JSON, Index, func

from tradersutopia.models.base import Base, UTCDateTime, generate_uuid, utcnow


class NotificationKind(str, Enum):
    """Kinds of billing notifications."""
    SUBSCRIPTION_WELCOME = "SUBSCRIPTION_WELCOME"
    SUBSCRIPTION_STATUS_CHANGE = "SUBSCRIPTION_STATUS_CHANGE"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    SUBSCRIPTION_PAUSED = "SUBSCRIPTION_PAUSED"
    SUBSCRIPTION_RESUMED = "SUBSCRIPTION_RESUMED"
    TRIAL_ENDING = "TRIAL_ENDING"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_ACTION_REQUIRED = "PAYMENT_ACTION_REQUIRED"
    UPCOMING_INVOICE = "UPCOMING_INVOICE"


class Notification(Base):
    """In-app notification for an account (or a not-yet-linked customer)."""

    __tablename__ = "notifications"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    account_id = Column(
        String(36),
        nullable=True,
        index=True,
        comment="Target account (null if customer not linked yet)"
    )
    customer_ref = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Stripe customer id"
    )
    kind = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    action_url = Column(Text, nullable=True)
    event_metadata = Column(JSON, nullable=True)

    created_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        server_default=func.now()
    )

    __table_args__ = (
        Index("ix_notifications_account_created", "account_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Notification(id={self.id}, kind={self.kind}, account_id={self.account_id})>"
