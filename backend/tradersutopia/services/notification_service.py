"""
Billing notification service.

The reconciler queues NotificationMessage objects while it works; the webhook
handler hands them to a Notifier only after the reconciled state is committed.
Delivery is best-effort: a failing notifier never affects billing state.

The default NotificationService persists in-app notifications through its own
session so a notifier failure cannot roll back (or be rolled back with) the
webhook transaction.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tradersutopia.models.notification import Notification, NotificationKind
from tradersutopia.services.billing_errors import NotifierError


logger = logging.getLogger(__name__)


@dataclass
class NotificationMessage:
    """A user-facing notification waiting to be delivered."""
    kind: NotificationKind
    title: str
    message: str
    target_account_id: Optional[str] = None
    customer_ref: Optional[str] = None
    action_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    """Anything that can deliver a NotificationMessage."""

    def notify(self, message: NotificationMessage) -> None:
        ...


class NotificationService:
    """
    Default notifier: writes Notification rows.

    Raises NotifierError on storage failure; callers swallow it.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def notify(self, message: NotificationMessage) -> None:
        session = self._session_factory()
        try:
            session.add(Notification(
                account_id=message.target_account_id,
                customer_ref=message.customer_ref,
                kind=message.kind.value,
                title=message.title,
                message=message.message,
                action_url=message.action_url,
                event_metadata=message.metadata or None,
            ))
            session.commit()
            logger.info(
                "Notification created",
                extra={
                    "kind": message.kind.value,
                    "account_id": message.target_account_id,
                    "customer_ref": message.customer_ref,
                },
            )
        except SQLAlchemyError as e:
            session.rollback()
            raise NotifierError(f"Failed to persist notification: {e}") from e
        finally:
            session.close()


def _format_amount(amount_minor: int, currency: Optional[str]) -> str:
    return f"{amount_minor / 100:.2f} {(currency or 'usd').upper()}"


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d") if value else "the end of your billing period"


# =============================================================================
# Message builders
# =============================================================================


def welcome_message(customer_ref: str, account_id: Optional[str]) -> NotificationMessage:
    return NotificationMessage(
        kind=NotificationKind.SUBSCRIPTION_WELCOME,
        title="Welcome to Premium!",
        message="Your premium subscription is now active. Enjoy exclusive access!",
        target_account_id=account_id,
        customer_ref=customer_ref,
        metadata={"customer_ref": customer_ref},
    )


def status_change_message(
    customer_ref: str,
    account_id: Optional[str],
    old_status: str,
    new_status: str,
) -> NotificationMessage:
    return NotificationMessage(
        kind=NotificationKind.SUBSCRIPTION_STATUS_CHANGE,
        title="Subscription Status Updated",
        message=f"Your subscription status changed from {old_status} to {new_status}",
        target_account_id=account_id,
        customer_ref=customer_ref,
        metadata={"customer_ref": customer_ref, "old_status": old_status, "new_status": new_status},
    )


def cancelled_message(
    customer_ref: str,
    account_id: Optional[str],
    access_until_period_end: bool,
) -> NotificationMessage:
    if access_until_period_end:
        text = (
            "Your subscription has been cancelled. You will lose premium access "
            "at the end of your billing period."
        )
    else:
        text = "Your subscription has been cancelled. Premium access has ended."
    return NotificationMessage(
        kind=NotificationKind.SUBSCRIPTION_CANCELLED,
        title="Subscription Cancelled",
        message=text,
        target_account_id=account_id,
        customer_ref=customer_ref,
        metadata={"customer_ref": customer_ref},
    )


def paused_message(customer_ref: str, account_id: Optional[str]) -> NotificationMessage:
    return NotificationMessage(
        kind=NotificationKind.SUBSCRIPTION_PAUSED,
        title="Subscription Paused",
        message="Your subscription has been paused. Premium access is temporarily disabled.",
        target_account_id=account_id,
        customer_ref=customer_ref,
        metadata={"customer_ref": customer_ref},
    )


def resumed_message(customer_ref: str, account_id: Optional[str]) -> NotificationMessage:
    return NotificationMessage(
        kind=NotificationKind.SUBSCRIPTION_RESUMED,
        title="Subscription Resumed",
        message="Your subscription has been resumed. Welcome back to premium!",
        target_account_id=account_id,
        customer_ref=customer_ref,
        metadata={"customer_ref": customer_ref},
    )


def trial_ending_message(
    customer_ref: str,
    account_id: Optional[str],
    trial_end: Optional[datetime],
) -> NotificationMessage:
    return NotificationMessage(
        kind=NotificationKind.TRIAL_ENDING,
        title="Trial Ending Soon",
        message=(
            f"Your trial ends on {_format_date(trial_end)}. "
            "Subscribe to continue enjoying premium features!"
        ),
        target_account_id=account_id,
        customer_ref=customer_ref,
        metadata={
            "customer_ref": customer_ref,
            "trial_end": trial_end.isoformat() if trial_end else None,
        },
    )


def payment_success_message(
    customer_ref: str,
    account_id: Optional[str],
    amount: int,
    currency: Optional[str],
) -> NotificationMessage:
    return NotificationMessage(
        kind=NotificationKind.PAYMENT_SUCCESS,
        title="Payment Successful",
        message=f"Your payment of {_format_amount(amount, currency)} was processed successfully.",
        target_account_id=account_id,
        customer_ref=customer_ref,
        metadata={"customer_ref": customer_ref, "amount": amount, "currency": currency},
    )


def payment_failed_message(
    customer_ref: str,
    account_id: Optional[str],
    attempt_count: int,
    next_attempt: Optional[datetime],
) -> NotificationMessage:
    text = f"Payment attempt {attempt_count} failed."
    if next_attempt:
        text += f" Next attempt: {_format_date(next_attempt)}"
    return NotificationMessage(
        kind=NotificationKind.PAYMENT_FAILED,
        title="Payment Failed",
        message=text,
        target_account_id=account_id,
        customer_ref=customer_ref,
        metadata={
            "customer_ref": customer_ref,
            "attempt_count": attempt_count,
            "next_attempt": next_attempt.isoformat() if next_attempt else None,
        },
    )


def payment_action_required_message(
    customer_ref: str,
    account_id: Optional[str],
    invoice_url: Optional[str],
) -> NotificationMessage:
    return NotificationMessage(
        kind=NotificationKind.PAYMENT_ACTION_REQUIRED,
        title="Payment Action Required",
        message=(
            "Your payment requires additional authentication. "
            "Please complete the payment process."
        ),
        target_account_id=account_id,
        customer_ref=customer_ref,
        action_url=invoice_url,
        metadata={"customer_ref": customer_ref, "invoice_url": invoice_url},
    )


def upcoming_invoice_message(
    customer_ref: str,
    account_id: Optional[str],
    amount: int,
    currency: Optional[str],
    due_at: Optional[datetime],
) -> NotificationMessage:
    return NotificationMessage(
        kind=NotificationKind.UPCOMING_INVOICE,
        title="Upcoming Payment",
        message=(
            f"Your next payment of {_format_amount(amount, currency)} "
            f"is due on {_format_date(due_at)}."
        ),
        target_account_id=account_id,
        customer_ref=customer_ref,
        metadata={
            "customer_ref": customer_ref,
            "amount": amount,
            "currency": currency,
            "due_at": due_at.isoformat() if due_at else None,
        },
    )
