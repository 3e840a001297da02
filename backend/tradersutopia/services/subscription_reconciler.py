"""
Subscription reconciler.

Applies typed Stripe events to the canonical Subscription row of a customer:
- Last-write-wins by event occurred_at, never by arrival order
- Keyed by customer_ref, falling back to subscription_ref
- Row lock (SELECT ... FOR UPDATE) plus optimistic version check
- Append-only audit trail in billing_events

The reconciler only stages changes in the caller's session. The webhook
handler commits them together with the idempotency record, and only then
invalidates caches and sends the notifications collected in ReconcileOutcome.

CRITICAL: This is the ONLY writer of subscriptions rows.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from tradersutopia.config.billing_config import BillingConfig, get_billing_config
from tradersutopia.integrations.stripe import events as stripe_events
from tradersutopia.integrations.stripe.billing_client import StripeAPIError, StripeBillingClient
from tradersutopia.integrations.stripe.events import (
    BillingEventRecord,
    CheckoutEvent,
    CustomerEvent,
    InvoiceEvent,
    StripeInvoice,
    StripeInvoiceLine,
    StripeSubscription,
    SubscriptionEvent,
    from_unix,
)
from tradersutopia.models.account import Account
from tradersutopia.models.base import ensure_utc, generate_uuid, utcnow
from tradersutopia.models.billing_event import ActorType, BillingEvent, BillingEventType
from tradersutopia.models.subscription import (
    STRIPE_ACTIVE_STATUSES,
    Subscription,
    SubscriptionStatus,
    map_stripe_status,
)
from tradersutopia.models.webhook_event import WebhookOutcome
from tradersutopia.services import notification_service as messages
from tradersutopia.services.billing_errors import BillingValidationError, TransientBillingError
from tradersutopia.services.notification_service import NotificationMessage

logger = logging.getLogger(__name__)


# Audit event type recorded when a row moves into a status
_STATUS_AUDIT_TYPES = {
    SubscriptionStatus.ACTIVE.value: BillingEventType.SUBSCRIPTION_UPDATED,
    SubscriptionStatus.PAST_DUE.value: BillingEventType.SUBSCRIPTION_UPDATED,
    SubscriptionStatus.CANCELLED.value: BillingEventType.SUBSCRIPTION_CANCELLED,
    SubscriptionStatus.PAUSED.value: BillingEventType.SUBSCRIPTION_PAUSED,
    SubscriptionStatus.EXPIRED.value: BillingEventType.SUBSCRIPTION_EXPIRED,
    SubscriptionStatus.FREE.value: BillingEventType.SUBSCRIPTION_UPDATED,
}

# Provider statuses that override a forced ACTIVE after payment
_HOLD_STATUSES = (SubscriptionStatus.CANCELLED, SubscriptionStatus.PAUSED)


@dataclass
class ReconcileOutcome:
    """What an event did to canonical state, and what must happen after commit."""
    outcome: str = WebhookOutcome.APPLIED
    subscription: Optional[Subscription] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    message: str = ""
    notifications: List[NotificationMessage] = field(default_factory=list)
    invalidate_account_ids: Set[str] = field(default_factory=set)
    reevaluate: bool = False

    @property
    def applied(self) -> bool:
        return self.outcome == WebhookOutcome.APPLIED

    @property
    def changed(self) -> bool:
        return self.applied and self.from_status != self.to_status


class SubscriptionReconciler:
    """
    Maps Stripe events onto one CanonicalSubscription per customer.

    Provider lookups are optional: without a billing client the reconciler
    works from payload data and conservative defaults.
    """

    def __init__(
        self,
        db_session: Session,
        config: Optional[BillingConfig] = None,
        billing_client: Optional[StripeBillingClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize reconciler.

        Args:
            db_session: Database session (caller owns commit/rollback)
            config: Billing configuration (defaults to the loaded billing.yml)
            billing_client: Optional Stripe client for defensive re-syncs
            clock: Current-time source
        """
        self.db = db_session
        self.config = config or get_billing_config()
        self.billing_client = billing_client
        self._clock = clock

        self._handlers = {
            stripe_events.SUBSCRIPTION_CREATED: self._handle_subscription_upsert,
            stripe_events.SUBSCRIPTION_UPDATED: self._handle_subscription_upsert,
            stripe_events.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            stripe_events.SUBSCRIPTION_PAUSED: self._handle_subscription_paused,
            stripe_events.SUBSCRIPTION_RESUMED: self._handle_subscription_resumed,
            stripe_events.SUBSCRIPTION_TRIAL_WILL_END: self._handle_trial_will_end,
            stripe_events.INVOICE_PAYMENT_SUCCEEDED: self._handle_invoice_paid,
            stripe_events.INVOICE_PAID: self._handle_invoice_paid,
            stripe_events.INVOICE_PAYMENT_FAILED: self._handle_invoice_failed,
            stripe_events.INVOICE_UPCOMING: self._handle_invoice_upcoming,
            stripe_events.INVOICE_PAYMENT_ACTION_REQUIRED: self._handle_payment_action_required,
            stripe_events.INVOICE_CREATED: self._handle_informational,
            stripe_events.INVOICE_FINALIZED: self._handle_informational,
            stripe_events.CUSTOMER_CREATED: self._handle_customer_upsert,
            stripe_events.CUSTOMER_UPDATED: self._handle_customer_upsert,
            stripe_events.CUSTOMER_DELETED: self._handle_customer_deleted,
            stripe_events.CHECKOUT_SESSION_COMPLETED: self._handle_checkout_completed,
        }

    # ------------------------------------------------------------------
    # Primary API
    # ------------------------------------------------------------------

    async def upsert_from_event(self, event: BillingEventRecord) -> ReconcileOutcome:
        """
        Apply one event to canonical state.

        Raises:
            BillingValidationError: Required identifiers missing or unknown status
            TransientBillingError: Provider lookup or concurrent-write failure
        """
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info("Ignoring unhandled Stripe event type", extra={
                "event_id": event.event_id,
                "event_type": event.event_type,
            })
            return ReconcileOutcome(
                outcome=WebhookOutcome.IGNORED,
                message=f"Unhandled event type: {event.event_type}",
            )

        outcome = await handler(event)
        self._finalize(outcome)
        self._flush(event.event_id)

        logger.info("Stripe event reconciled", extra={
            "event_id": event.event_id,
            "event_type": event.event_type,
            "outcome": outcome.outcome,
            "from_status": outcome.from_status,
            "to_status": outcome.to_status,
            "customer_ref": event.customer_ref,
        })
        return outcome

    async def resync_lapsed(self, row: Subscription) -> ReconcileOutcome:
        """
        Repair an ACTIVE row whose window has passed (missed webhook).

        Re-syncs from Stripe when a client is configured, otherwise demotes
        the row to EXPIRED. Used by the reconciliation job.
        """
        now = self._clock()
        from_status = row.status
        subscription = await self._fetch_subscription(row.subscription_ref)

        if subscription is not None:
            status = map_stripe_status(subscription.status) or SubscriptionStatus.EXPIRED
            self._apply_snapshot(row, subscription, status, now)
            if row.status == SubscriptionStatus.ACTIVE.value and not row.is_window_open(now):
                logger.warning("Stripe reports active subscription with lapsed period", extra={
                    "customer_ref": row.customer_ref,
                    "subscription_ref": row.subscription_ref,
                    "current_period_end": str(row.current_period_end),
                })
                row.status = SubscriptionStatus.EXPIRED.value
            # Provider state as of now supersedes anything older still in flight
            row.last_reconciled_at = now
            source = "stripe"
        else:
            row.status = SubscriptionStatus.EXPIRED.value
            source = "local_expiry"

        self._log_audit_event(
            event_type=_STATUS_AUDIT_TYPES.get(row.status, BillingEventType.SUBSCRIPTION_UPDATED),
            subscription=row,
            occurred_at=now,
            from_status=from_status,
            to_status=row.status,
            actor_type=ActorType.CRON,
            metadata={"reason": "lapsed_window", "source": source},
        )

        outcome = ReconcileOutcome(
            subscription=row,
            from_status=from_status,
            message=f"Lapsed subscription reconciled from {source}",
        )
        self._finalize(outcome)
        self._flush(None)
        return outcome

    async def sync_account(self, account: Account) -> ReconcileOutcome:
        """
        Rebuild an account's subscription from Stripe.

        Looks up the account's linked customer (falling back to customers
        registered under its email), picks the subscription that best
        represents access and applies it as an authoritative snapshot. Used
        when local data is missing or suspect.

        Raises:
            TransientBillingError: Provider lookup failed
            BillingValidationError: Stripe returned unusable subscription data
        """
        if self.billing_client is None:
            return ReconcileOutcome(
                outcome=WebhookOutcome.IGNORED,
                message="Stripe client not configured",
            )

        now = self._clock()
        subscription = self._pick_subscription(await self._provider_subscriptions(account))
        if subscription is None:
            logger.info("No Stripe subscription found for account", extra={
                "account_id": account.id,
                "customer_ref": account.stripe_customer_id,
            })
            return ReconcileOutcome(
                outcome=WebhookOutcome.IGNORED,
                message="No Stripe subscription found",
            )

        row, created = self._get_or_create(subscription.customer, subscription.id, None)
        if row.is_customer_deleted:
            return ReconcileOutcome(
                outcome=WebhookOutcome.IGNORED,
                subscription=row,
                message="Customer deleted",
            )

        from_status = row.status
        status = map_stripe_status(subscription.status) or SubscriptionStatus.EXPIRED
        self._apply_snapshot(row, subscription, status, now)
        if row.status == SubscriptionStatus.ACTIVE.value and not row.is_window_open(now):
            row.status = SubscriptionStatus.EXPIRED.value
        # Provider state as of now supersedes anything older still in flight
        row.last_reconciled_at = now

        outcome = ReconcileOutcome(
            subscription=row,
            from_status=from_status,
            message="Subscription synced from Stripe",
        )
        self._link_account(row, outcome, None, account_id=account.id)

        self._log_audit_event(
            event_type=(
                BillingEventType.SUBSCRIPTION_CREATED if created
                else _STATUS_AUDIT_TYPES.get(row.status, BillingEventType.SUBSCRIPTION_UPDATED)
            ),
            subscription=row,
            occurred_at=now,
            from_status=from_status,
            to_status=row.status,
            actor_type=ActorType.SYSTEM,
            metadata={
                "source": "stripe_sync",
                "stripe_status": subscription.status,
                "product_ref": row.product_ref,
            },
        )

        self._finalize(outcome)
        self._flush(None)
        logger.info("Account subscription synced from Stripe", extra={
            "account_id": account.id,
            "customer_ref": row.customer_ref,
            "subscription_ref": row.subscription_ref,
            "from_status": from_status,
            "to_status": row.status,
        })
        return outcome

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    async def _handle_subscription_upsert(self, event: SubscriptionEvent) -> ReconcileOutcome:
        subscription = event.subscription
        status = map_stripe_status(subscription.status)
        if status is None:
            raise BillingValidationError(
                f"Unknown subscription status: {subscription.status}",
                event_id=event.event_id,
            )

        row, created = self._get_or_create(subscription.customer, subscription.id, event)
        discarded = self._check_discard(row, created, event)
        if discarded:
            return discarded
        if status != SubscriptionStatus.ACTIVE and self._is_superseded(row, subscription):
            return self._superseded(row, event)

        from_status = row.status
        self._apply_snapshot(row, subscription, status, event.occurred_at, event.event_id)
        self._mark_applied(row, event)

        outcome = ReconcileOutcome(subscription=row, from_status=from_status)
        self._link_account(
            row,
            outcome,
            event,
            account_id=subscription.metadata.get("account_id"),
            clerk_user_id=subscription.metadata.get("clerk_user_id"),
            email=subscription.customer_email,
        )

        if created:
            audit_type = BillingEventType.SUBSCRIPTION_CREATED
        elif from_status != row.status:
            audit_type = _STATUS_AUDIT_TYPES[row.status]
        else:
            audit_type = BillingEventType.SUBSCRIPTION_UPDATED
        self._log_audit_event(
            event_type=audit_type,
            subscription=row,
            event=event,
            from_status=from_status,
            to_status=row.status,
            metadata={
                "stripe_status": subscription.status,
                "cancel_at_period_end": subscription.cancel_at_period_end,
                "product_ref": row.product_ref,
            },
        )

        account_id = self._target_account_id(row)
        if row.status == SubscriptionStatus.ACTIVE.value and from_status == SubscriptionStatus.FREE.value:
            outcome.notifications.append(messages.welcome_message(row.customer_ref, account_id))
        elif from_status != row.status:
            outcome.notifications.append(messages.status_change_message(
                row.customer_ref, account_id, from_status, row.status
            ))
        return outcome

    async def _handle_subscription_deleted(self, event: SubscriptionEvent) -> ReconcileOutcome:
        subscription = event.subscription
        row, created = self._get_or_create(subscription.customer, subscription.id, event)
        discarded = self._check_discard(row, created, event)
        if discarded:
            return discarded
        if self._is_superseded(row, subscription):
            return self._superseded(row, event)

        from_status = row.status
        if created:
            self._apply_snapshot(
                row, subscription, SubscriptionStatus.CANCELLED, event.occurred_at, event.event_id
            )
        else:
            # Window fields are preserved
            row.subscription_ref = subscription.id

        row.status = SubscriptionStatus.CANCELLED.value
        row.auto_renew = False
        row.cancelled_at = from_unix(subscription.canceled_at) or event.occurred_at
        self._mark_applied(row, event)

        self._log_audit_event(
            event_type=BillingEventType.SUBSCRIPTION_CANCELLED,
            subscription=row,
            event=event,
            from_status=from_status,
            to_status=row.status,
            metadata={"stripe_status": subscription.status},
        )

        outcome = ReconcileOutcome(subscription=row, from_status=from_status)
        outcome.notifications.append(messages.cancelled_message(
            row.customer_ref,
            self._target_account_id(row),
            access_until_period_end=self.config.cancelled_grace_until_period_end,
        ))
        return outcome

    async def _handle_subscription_paused(self, event: SubscriptionEvent) -> ReconcileOutcome:
        subscription = event.subscription
        row, created = self._get_or_create(subscription.customer, subscription.id, event)
        discarded = self._check_discard(row, created, event)
        if discarded:
            return discarded
        if self._is_superseded(row, subscription):
            return self._superseded(row, event)

        from_status = row.status
        if created:
            self._apply_snapshot(
                row, subscription, SubscriptionStatus.PAUSED, event.occurred_at, event.event_id
            )
        row.subscription_ref = subscription.id
        row.status = SubscriptionStatus.PAUSED.value
        self._mark_applied(row, event)

        self._log_audit_event(
            event_type=BillingEventType.SUBSCRIPTION_PAUSED,
            subscription=row,
            event=event,
            from_status=from_status,
            to_status=row.status,
        )

        outcome = ReconcileOutcome(subscription=row, from_status=from_status, reevaluate=True)
        outcome.notifications.append(
            messages.paused_message(row.customer_ref, self._target_account_id(row))
        )
        return outcome

    async def _handle_subscription_resumed(self, event: SubscriptionEvent) -> ReconcileOutcome:
        subscription = event.subscription
        row, created = self._get_or_create(subscription.customer, subscription.id, event)
        discarded = self._check_discard(row, created, event)
        if discarded:
            return discarded

        status = map_stripe_status(subscription.status)
        if status is None or status == SubscriptionStatus.PAUSED:
            status = SubscriptionStatus.ACTIVE

        from_status = row.status
        now = self._clock()
        if created or (status == SubscriptionStatus.ACTIVE and not row.is_window_open(now)):
            # Keep the window unless there is no usable one
            self._apply_snapshot(row, subscription, status, event.occurred_at, event.event_id)
        row.subscription_ref = subscription.id
        row.status = status.value
        self._mark_applied(row, event)

        self._log_audit_event(
            event_type=BillingEventType.SUBSCRIPTION_RESUMED,
            subscription=row,
            event=event,
            from_status=from_status,
            to_status=row.status,
        )

        outcome = ReconcileOutcome(subscription=row, from_status=from_status, reevaluate=True)
        outcome.notifications.append(
            messages.resumed_message(row.customer_ref, self._target_account_id(row))
        )
        return outcome

    async def _handle_trial_will_end(self, event: SubscriptionEvent) -> ReconcileOutcome:
        subscription = event.subscription
        row = self._load_row(subscription.customer, subscription.id, lock=False)
        outcome = ReconcileOutcome(outcome=WebhookOutcome.IGNORED, message="Trial ending notice")
        outcome.notifications.append(messages.trial_ending_message(
            subscription.customer,
            self._target_account_id(row, subscription.customer),
            from_unix(subscription.trial_end),
        ))
        return outcome

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def _handle_invoice_paid(self, event: InvoiceEvent) -> ReconcileOutcome:
        invoice = event.invoice
        if not invoice.subscription:
            return self._ignored(event, "Invoice is not for a subscription")

        # Payload may be partial or stale, prefer Stripe's current view
        subscription = await self._fetch_subscription(invoice.subscription, event.event_id)
        if subscription is None:
            subscription = invoice.subscription_object

        row, created = self._get_or_create(invoice.customer, invoice.subscription, event)
        discarded = self._check_discard(row, created, event)
        if discarded:
            return discarded

        from_status = row.status
        if subscription is not None:
            mapped = map_stripe_status(subscription.status)
            status = mapped if mapped in _HOLD_STATUSES else SubscriptionStatus.ACTIVE
            self._apply_snapshot(row, subscription, status, event.occurred_at, event.event_id)
            source = "subscription"
        else:
            self._apply_invoice_line(row, invoice, event)
            if SubscriptionStatus(row.status) not in _HOLD_STATUSES:
                row.status = SubscriptionStatus.ACTIVE.value
            source = "invoice_line"

        row.failed_payment_count = 0
        self._mark_applied(row, event)

        self._log_audit_event(
            event_type=BillingEventType.PAYMENT_SUCCEEDED,
            subscription=row,
            event=event,
            from_status=from_status,
            to_status=row.status,
            metadata={
                "invoice_id": invoice.id,
                "amount_paid": invoice.amount_paid,
                "currency": invoice.currency,
                "source": source,
            },
        )

        outcome = ReconcileOutcome(subscription=row, from_status=from_status)
        # invoice.paid accompanies invoice.payment_succeeded; notify once
        if event.event_type == stripe_events.INVOICE_PAYMENT_SUCCEEDED:
            outcome.notifications.append(messages.payment_success_message(
                row.customer_ref,
                self._target_account_id(row),
                invoice.amount_paid,
                invoice.currency,
            ))
        return outcome

    async def _handle_invoice_failed(self, event: InvoiceEvent) -> ReconcileOutcome:
        invoice = event.invoice
        if not invoice.subscription:
            return self._ignored(event, "Invoice is not for a subscription")

        subscription = await self._fetch_subscription(invoice.subscription, event.event_id)
        if subscription is None:
            subscription = invoice.subscription_object

        row, created = self._get_or_create(invoice.customer, invoice.subscription, event)
        discarded = self._check_discard(row, created, event)
        if discarded:
            return discarded

        from_status = row.status
        row.failed_payment_count = max(invoice.attempt_count, 1)
        provider_status = subscription.status if subscription is not None else None

        if provider_status is not None:
            if provider_status not in STRIPE_ACTIVE_STATUSES:
                mapped = map_stripe_status(provider_status)
                if mapped in (
                    SubscriptionStatus.PAST_DUE,
                    SubscriptionStatus.EXPIRED,
                    SubscriptionStatus.CANCELLED,
                    SubscriptionStatus.PAUSED,
                ):
                    row.status = mapped.value
            # Still active/trialing in Stripe: retries pending, keep access
        elif (
            row.status == SubscriptionStatus.ACTIVE.value
            and row.failed_payment_count >= self.config.max_payment_attempts
        ):
            row.status = SubscriptionStatus.PAST_DUE.value

        self._mark_applied(row, event)

        self._log_audit_event(
            event_type=BillingEventType.PAYMENT_FAILED,
            subscription=row,
            event=event,
            from_status=from_status,
            to_status=row.status,
            metadata={
                "invoice_id": invoice.id,
                "attempt_count": invoice.attempt_count,
                "provider_status": provider_status,
            },
        )

        account_id = self._target_account_id(row)
        outcome = ReconcileOutcome(subscription=row, from_status=from_status)
        outcome.notifications.append(messages.payment_failed_message(
            row.customer_ref,
            account_id,
            row.failed_payment_count,
            from_unix(invoice.next_payment_attempt),
        ))
        if from_status != row.status:
            outcome.notifications.append(messages.status_change_message(
                row.customer_ref, account_id, from_status, row.status
            ))
        return outcome

    async def _handle_invoice_upcoming(self, event: InvoiceEvent) -> ReconcileOutcome:
        invoice = event.invoice
        row = self._load_row(invoice.customer, invoice.subscription, lock=False)
        due_at = from_unix(invoice.next_payment_attempt) or from_unix(invoice.period_end)
        if due_at is None and row is not None:
            due_at = ensure_utc(row.current_period_end)

        outcome = ReconcileOutcome(outcome=WebhookOutcome.IGNORED, message="Upcoming invoice notice")
        outcome.notifications.append(messages.upcoming_invoice_message(
            invoice.customer,
            self._target_account_id(row, invoice.customer),
            invoice.amount_due,
            invoice.currency,
            due_at,
        ))
        return outcome

    async def _handle_payment_action_required(self, event: InvoiceEvent) -> ReconcileOutcome:
        invoice = event.invoice
        row = self._load_row(invoice.customer, invoice.subscription, lock=False)
        outcome = ReconcileOutcome(outcome=WebhookOutcome.IGNORED, message="Payment action required")
        outcome.notifications.append(messages.payment_action_required_message(
            invoice.customer,
            self._target_account_id(row, invoice.customer),
            invoice.hosted_invoice_url,
        ))
        return outcome

    async def _handle_informational(self, event: BillingEventRecord) -> ReconcileOutcome:
        logger.info("Informational Stripe event", extra={
            "event_id": event.event_id,
            "event_type": event.event_type,
            "customer_ref": event.customer_ref,
        })
        return ReconcileOutcome(outcome=WebhookOutcome.IGNORED, message="Informational event")

    # ------------------------------------------------------------------
    # Customers and checkout
    # ------------------------------------------------------------------

    async def _handle_customer_upsert(self, event: CustomerEvent) -> ReconcileOutcome:
        customer = event.customer
        row = self._load_row(customer.id, None)
        if row is not None and row.is_customer_deleted:
            return self._ignored(event, "Customer deleted")

        outcome = ReconcileOutcome(subscription=row, from_status=row.status if row else None)
        account = self._link_account(
            row,
            outcome,
            event,
            account_id=customer.metadata.get("account_id"),
            clerk_user_id=customer.metadata.get("clerk_user_id"),
            email=customer.email,
        )
        if account is None:
            return self._ignored(event, "No matching account")

        outcome.message = f"Customer linked to account {account.id}"
        return outcome

    async def _handle_customer_deleted(self, event: CustomerEvent) -> ReconcileOutcome:
        customer = event.customer
        row, _ = self._get_or_create(customer.id, None, event)
        if row.is_customer_deleted:
            return self._ignored(event, "Customer already deleted")

        # Terminal: applies regardless of event ordering
        from_status = row.status
        row.customer_deleted_at = event.occurred_at
        row.status = SubscriptionStatus.CANCELLED.value
        row.auto_renew = False
        if row.cancelled_at is None:
            row.cancelled_at = event.occurred_at
        self._mark_applied(row, event)

        self._log_audit_event(
            event_type=BillingEventType.CUSTOMER_DELETED,
            subscription=row,
            event=event,
            from_status=from_status,
            to_status=row.status,
        )
        return ReconcileOutcome(subscription=row, from_status=from_status, reevaluate=True)

    async def _handle_checkout_completed(self, event: CheckoutEvent) -> ReconcileOutcome:
        session = event.session
        customer_ref = event.customer_ref
        if not customer_ref:
            raise BillingValidationError("Checkout session has no customer", event_id=event.event_id)
        if session.mode and session.mode != "subscription":
            return self._ignored(event, f"Checkout mode {session.mode} does not create a subscription")

        subscription = session.subscription_object
        if subscription is None and session.subscription:
            subscription = await self._fetch_subscription(session.subscription, event.event_id)

        subscription_ref = session.subscription or (subscription.id if subscription else None)
        if not subscription_ref:
            raise BillingValidationError(
                "Checkout session has no subscription", event_id=event.event_id
            )

        row, created = self._get_or_create(customer_ref, subscription_ref, event)
        discarded = self._check_discard(row, created, event)
        if discarded:
            return discarded

        from_status = row.status
        if subscription is not None:
            mapped = map_stripe_status(subscription.status)
            provider_says_inactive = mapped in _HOLD_STATUSES or mapped == SubscriptionStatus.EXPIRED
            status = mapped if provider_says_inactive else SubscriptionStatus.ACTIVE
            self._apply_snapshot(row, subscription, status, event.occurred_at, event.event_id)
        else:
            logger.warning("Checkout without subscription details, using default window", extra={
                "event_id": event.event_id,
                "customer_ref": customer_ref,
                "subscription_ref": subscription_ref,
            })
            row.subscription_ref = subscription_ref
            product_ref = session.metadata.get("product_id")
            if product_ref:
                row.product_ref = product_ref
            row.current_period_start = event.occurred_at
            row.current_period_end = event.occurred_at + timedelta(days=self.config.default_period_days)
            row.auto_renew = True
            row.cancelled_at = None
            row.status = SubscriptionStatus.ACTIVE.value
        self._mark_applied(row, event)

        outcome = ReconcileOutcome(subscription=row, from_status=from_status)
        self._link_account(
            row,
            outcome,
            event,
            account_id=session.client_reference_id or session.metadata.get("account_id"),
            clerk_user_id=session.client_reference_id or session.metadata.get("clerk_user_id"),
            email=session.customer_email,
        )

        self._log_audit_event(
            event_type=(
                BillingEventType.SUBSCRIPTION_CREATED
                if created else _STATUS_AUDIT_TYPES[row.status]
            ),
            subscription=row,
            event=event,
            from_status=from_status,
            to_status=row.status,
            metadata={"checkout_session_id": session.id, "product_ref": row.product_ref},
        )

        if row.status == SubscriptionStatus.ACTIVE.value and from_status != row.status:
            outcome.notifications.append(
                messages.welcome_message(row.customer_ref, self._target_account_id(row))
            )
        return outcome

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------

    def _load_row(
        self,
        customer_ref: Optional[str],
        subscription_ref: Optional[str],
        lock: bool = True,
    ) -> Optional[Subscription]:
        query = self.db.query(Subscription)
        if lock:
            query = query.with_for_update()

        row = None
        if customer_ref:
            row = query.filter(Subscription.customer_ref == customer_ref).first()
        if row is None and subscription_ref:
            row = query.filter(Subscription.subscription_ref == subscription_ref).first()
        return row

    def _get_or_create(
        self,
        customer_ref: Optional[str],
        subscription_ref: Optional[str],
        event: Optional[BillingEventRecord],
    ) -> Tuple[Subscription, bool]:
        if not customer_ref:
            raise BillingValidationError(
                "Event has no customer id", event_id=event.event_id if event else None
            )

        row = self._load_row(customer_ref, subscription_ref)
        if row is not None:
            return row, False

        row = Subscription(
            id=generate_uuid(),
            customer_ref=customer_ref,
            status=SubscriptionStatus.FREE.value,
            auto_renew=True,
            failed_payment_count=0,
        )
        account = self._account_for_customer(customer_ref)
        if account is not None:
            row.account_id = account.id
        self.db.add(row)
        return row, True

    def _check_discard(
        self,
        row: Subscription,
        created: bool,
        event: BillingEventRecord,
    ) -> Optional[ReconcileOutcome]:
        """Return an outcome if the event must not touch the row."""
        if created:
            return None

        if row.is_customer_deleted:
            logger.info("Event for deleted customer discarded", extra={
                "event_id": event.event_id,
                "customer_ref": row.customer_ref,
            })
            return ReconcileOutcome(
                outcome=WebhookOutcome.IGNORED,
                subscription=row,
                message="Customer deleted",
            )

        if self._is_stale(row, event):
            logger.info("Stale Stripe event discarded", extra={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "occurred_at": event.occurred_at.isoformat(),
                "last_reconciled_at": str(row.last_reconciled_at),
            })
            self._log_audit_event(
                event_type=BillingEventType.STALE_EVENT_DISCARDED,
                subscription=row,
                event=event,
                from_status=row.status,
                to_status=row.status,
                metadata={
                    "stripe_event_type": event.event_type,
                    "last_reconciled_at": ensure_utc(row.last_reconciled_at).isoformat(),
                    "last_event_id": row.last_event_id,
                },
            )
            return ReconcileOutcome(
                outcome=WebhookOutcome.STALE,
                subscription=row,
                from_status=row.status,
                to_status=row.status,
                message="Event older than last reconciled state",
            )
        return None

    def _is_stale(self, row: Subscription, event: BillingEventRecord) -> bool:
        last = ensure_utc(row.last_reconciled_at)
        if last is None:
            return False
        if event.occurred_at < last:
            return True
        # Same-second "created" after the row already saw this subscription
        if (
            event.occurred_at == last
            and event.event_type == stripe_events.SUBSCRIPTION_CREATED
            and isinstance(event, SubscriptionEvent)
            and row.subscription_ref == event.subscription.id
        ):
            return True
        return False

    def _is_superseded(self, row: Subscription, subscription: StripeSubscription) -> bool:
        """An older subscription of a customer who already has a newer active one."""
        return (
            row.subscription_ref is not None
            and row.subscription_ref != subscription.id
            and row.status == SubscriptionStatus.ACTIVE.value
            and row.is_window_open(self._clock())
        )

    def _superseded(self, row: Subscription, event: SubscriptionEvent) -> ReconcileOutcome:
        logger.info("Event for superseded subscription ignored", extra={
            "event_id": event.event_id,
            "customer_ref": row.customer_ref,
            "event_subscription_ref": event.subscription.id,
            "current_subscription_ref": row.subscription_ref,
        })
        return ReconcileOutcome(
            outcome=WebhookOutcome.IGNORED,
            subscription=row,
            message="Subscription superseded by a newer one",
        )

    def _ignored(self, event: BillingEventRecord, message: str) -> ReconcileOutcome:
        logger.info(message, extra={
            "event_id": event.event_id,
            "event_type": event.event_type,
            "customer_ref": event.customer_ref,
        })
        return ReconcileOutcome(outcome=WebhookOutcome.IGNORED, message=message)

    def _mark_applied(self, row: Subscription, event: BillingEventRecord) -> None:
        last = ensure_utc(row.last_reconciled_at)
        if last is None or event.occurred_at > last:
            row.last_reconciled_at = event.occurred_at
        row.last_event_id = event.event_id

    # ------------------------------------------------------------------
    # Snapshot application
    # ------------------------------------------------------------------

    def _apply_snapshot(
        self,
        row: Subscription,
        subscription: StripeSubscription,
        status: SubscriptionStatus,
        occurred_at: datetime,
        event_id: Optional[str] = None,
    ) -> None:
        """Copy a Stripe subscription onto the row with the given local status."""
        # Replaced by newer subscriptions, never cleared
        row.subscription_ref = subscription.id
        if subscription.product_ref:
            row.product_ref = subscription.product_ref
        if subscription.price_ref:
            row.price_ref = subscription.price_ref

        row.auto_renew = not subscription.cancel_at_period_end

        if status == SubscriptionStatus.FREE:
            row.current_period_start = None
            row.current_period_end = None
        else:
            start, end = self._extract_window(subscription, occurred_at, event_id)
            row.current_period_start = start
            row.current_period_end = end

        if subscription.canceled_at:
            row.cancelled_at = from_unix(subscription.canceled_at)
        elif subscription.cancel_at_period_end:
            if row.cancelled_at is None:
                row.cancelled_at = occurred_at
        elif status == SubscriptionStatus.ACTIVE:
            row.cancelled_at = None

        row.status = status.value

    def _extract_window(
        self,
        subscription: StripeSubscription,
        occurred_at: datetime,
        event_id: Optional[str],
    ) -> Tuple[Optional[datetime], datetime]:
        """
        Billing window: subscription level, then first item (newer API
        versions), then created + default period days.
        """
        item = subscription.first_item
        start = subscription.current_period_start or (item.current_period_start if item else None)
        end = subscription.current_period_end or (item.current_period_end if item else None)

        if end is None:
            base = from_unix(subscription.created) or occurred_at
            logger.warning("Subscription has no billing period, using default window", extra={
                "event_id": event_id,
                "subscription_ref": subscription.id,
                "default_period_days": self.config.default_period_days,
            })
            return base, base + timedelta(days=self.config.default_period_days)

        return from_unix(start), from_unix(end)

    def _apply_invoice_line(
        self,
        row: Subscription,
        invoice: StripeInvoice,
        event: InvoiceEvent,
    ) -> None:
        line = self._invoice_line(invoice)
        row.subscription_ref = invoice.subscription
        if line is not None and line.price is not None:
            if line.price.product:
                row.product_ref = line.price.product
            if line.price.id:
                row.price_ref = line.price.id

        period = line.period if line is not None else None
        if period is not None and period.end:
            row.current_period_start = from_unix(period.start)
            row.current_period_end = from_unix(period.end)
        elif not row.is_window_open(event.occurred_at):
            logger.warning("Paid invoice has no line period, using default window", extra={
                "event_id": event.event_id,
                "invoice_id": invoice.id,
                "customer_ref": invoice.customer,
            })
            row.current_period_start = event.occurred_at
            row.current_period_end = event.occurred_at + timedelta(
                days=self.config.default_period_days
            )

    @staticmethod
    def _invoice_line(invoice: StripeInvoice) -> Optional[StripeInvoiceLine]:
        for line in invoice.lines.data:
            if line.subscription == invoice.subscription:
                return line
        return invoice.first_line

    async def _fetch_subscription(
        self,
        subscription_ref: Optional[str],
        event_id: Optional[str] = None,
    ) -> Optional[StripeSubscription]:
        if self.billing_client is None or not subscription_ref:
            return None
        try:
            return await self.billing_client.retrieve_subscription(subscription_ref)
        except StripeAPIError as e:
            raise TransientBillingError(
                f"Stripe subscription lookup failed: {e}", event_id=event_id
            ) from e

    async def _provider_subscriptions(self, account: Account) -> List[StripeSubscription]:
        """Subscriptions of the account's linked customer, else of customers sharing its email."""
        subscriptions: List[StripeSubscription] = []
        checked: Set[str] = set()
        if account.stripe_customer_id:
            checked.add(account.stripe_customer_id)
            subscriptions = await self._provider_call(
                self.billing_client.list_subscriptions, account.stripe_customer_id
            )
        if subscriptions or not account.email:
            return subscriptions

        customers = await self._provider_call(self.billing_client.list_customers, account.email)
        for customer in customers:
            if customer.deleted or customer.id in checked:
                continue
            checked.add(customer.id)
            subscriptions.extend(
                await self._provider_call(self.billing_client.list_subscriptions, customer.id)
            )
        return subscriptions

    @staticmethod
    def _pick_subscription(
        subscriptions: List[StripeSubscription],
    ) -> Optional[StripeSubscription]:
        """Prefer active/trialing, then the latest period end, then the newest."""
        if not subscriptions:
            return None

        def rank(subscription: StripeSubscription) -> Tuple[bool, int, int]:
            item = subscription.first_item
            period_end = subscription.current_period_end or (
                item.current_period_end if item else None
            )
            return (
                subscription.status in STRIPE_ACTIVE_STATUSES,
                period_end or 0,
                subscription.created or 0,
            )

        return max(subscriptions, key=rank)

    async def _provider_call(self, method, *args):
        try:
            return await method(*args)
        except StripeAPIError as e:
            raise TransientBillingError(f"Stripe lookup failed: {e}") from e

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def _find_account(
        self,
        account_id: Optional[str] = None,
        clerk_user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Account]:
        if account_id:
            account = self.db.query(Account).filter(Account.id == account_id).first()
            if account is not None:
                return account
        if clerk_user_id:
            account = self.db.query(Account).filter(
                Account.clerk_user_id == clerk_user_id
            ).first()
            if account is not None:
                return account
        if email:
            return self.db.query(Account).filter(
                func.lower(Account.email) == email.strip().lower()
            ).order_by(Account.created_at).first()
        return None

    def _account_for_customer(self, customer_ref: str) -> Optional[Account]:
        return self.db.query(Account).filter(
            Account.stripe_customer_id == customer_ref
        ).first()

    def _target_account_id(
        self,
        row: Optional[Subscription],
        customer_ref: Optional[str] = None,
    ) -> Optional[str]:
        if row is not None and row.account_id:
            return row.account_id
        customer_ref = customer_ref or (row.customer_ref if row is not None else None)
        if not customer_ref:
            return None
        account = self._account_for_customer(customer_ref)
        return account.id if account else None

    def _link_account(
        self,
        row: Optional[Subscription],
        outcome: ReconcileOutcome,
        event: Optional[BillingEventRecord],
        account_id: Optional[str] = None,
        clerk_user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Account]:
        """Link the event's customer to a local account. Returns the account."""
        if not (account_id or clerk_user_id or email):
            return None

        account = self._find_account(account_id, clerk_user_id, email)
        if account is None:
            return None

        customer_ref = row.customer_ref if row is not None else event.customer_ref
        if account.stripe_customer_id != customer_ref:
            if account.stripe_customer_id:
                logger.info("Account relinked to new Stripe customer", extra={
                    "account_id": account.id,
                    "old_customer_ref": account.stripe_customer_id,
                    "customer_ref": customer_ref,
                })
            account.stripe_customer_id = customer_ref

        if row is not None and row.account_id != account.id:
            if row.account_id:
                outcome.invalidate_account_ids.add(row.account_id)
            row.account_id = account.id
            self._log_audit_event(
                event_type=BillingEventType.CUSTOMER_LINKED,
                subscription=row,
                event=event,
                metadata={"account_id": account.id},
            )

        outcome.invalidate_account_ids.add(account.id)
        return account

    def _affected_accounts(self, row: Subscription) -> Set[str]:
        account_ids = {
            account_id for (account_id,) in self.db.query(Account.id).filter(
                Account.stripe_customer_id == row.customer_ref
            ).all()
        }
        if row.account_id:
            account_ids.add(row.account_id)
        return account_ids

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _finalize(self, outcome: ReconcileOutcome) -> None:
        row = outcome.subscription
        if row is None:
            return
        if outcome.applied:
            outcome.to_status = row.status
            outcome.invalidate_account_ids |= self._affected_accounts(row)

    def _flush(self, event_id: Optional[str]) -> None:
        """Surface concurrent-write conflicts as retryable errors."""
        try:
            self.db.flush()
        except StaleDataError as e:
            raise TransientBillingError(
                "Subscription modified concurrently", event_id=event_id
            ) from e
        except IntegrityError as e:
            raise TransientBillingError(
                f"Subscription write conflict: {e.orig}", event_id=event_id
            ) from e

    def _log_audit_event(
        self,
        event_type: str,
        subscription: Optional[Subscription] = None,
        event: Optional[BillingEventRecord] = None,
        occurred_at: Optional[datetime] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        actor_type: str = ActorType.WEBHOOK,
        metadata: Optional[Dict] = None,
    ) -> None:
        """Log billing event to audit table."""
        audit = BillingEvent(
            subscription_id=subscription.id if subscription else None,
            customer_ref=subscription.customer_ref if subscription else (
                event.customer_ref if event else None
            ),
            stripe_event_id=event.event_id if event else None,
            event_type=event_type,
            actor_type=actor_type,
            from_status=from_status,
            to_status=to_status,
            extra_metadata=metadata,
            occurred_at=occurred_at or (event.occurred_at if event else self._clock()),
        )
        self.db.add(audit)
