"""
Account model: local user profile linked to a Clerk identity and a Stripe customer.

Identity sync (Clerk webhooks) owns clerk_user_id/email/is_admin.
The SubscriptionReconciler only ever sets stripe_customer_id.
"""

from sqlalchemy import Column, String, Boolean
from sqlalchemy.orm import relationship

from tradersutopia.models.base import Base, TimestampMixin, generate_uuid


class Account(Base, TimestampMixin):
    """Local account. is_admin grants access regardless of billing state."""

    __tablename__ = "accounts"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    clerk_user_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Clerk user id (user_...)"
    )
    email = Column(
        String(320),
        nullable=True,
        index=True,
        comment="Primary email address"
    )
    is_admin = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Admin override - always has access"
    )
    stripe_customer_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Linked Stripe customer id"
    )

    subscription = relationship(
        "Subscription",
        back_populates="account",
        uselist=False
    )

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, email={self.email}, is_admin={self.is_admin})>"
