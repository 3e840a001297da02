"""
Stripe billing webhook handler with idempotency support.

Processes Stripe billing events with:
- Event deduplication using the Stripe event id
- Out-of-order event handling (delegated to the SubscriptionReconciler)
- Atomic commit of reconciled state and the idempotency record
- Retryable / non-retryable failure classification

Side effects that must not roll back billing state (cache invalidation,
notifications) run only after the commit succeeds.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tradersutopia.entitlements.cache import AccessDecisionCache, get_access_cache
from tradersutopia.entitlements.service import AccessService
from tradersutopia.integrations.stripe.events import BillingEventRecord, parse_event
from tradersutopia.models.base import utcnow
from tradersutopia.models.webhook_event import WebhookEvent, WebhookOutcome
from tradersutopia.services.billing_errors import BillingValidationError
from tradersutopia.services.notification_service import Notifier
from tradersutopia.services.subscription_reconciler import (
    ReconcileOutcome,
    SubscriptionReconciler,
)

logger = logging.getLogger(__name__)


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    event_id: Optional[str] = None
    subscription_id: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


class StripeWebhookHandler:
    """
    Handler for Stripe billing webhooks with idempotency.

    Ensures each event is applied exactly once using the Stripe event id.
    The WebhookEvent row is written in the same transaction as the
    reconciler's changes, so a crash before commit leaves the event
    unrecorded and Stripe's retry re-applies it.
    """

    def __init__(
        self,
        db_session: Session,
        reconciler: Optional[SubscriptionReconciler] = None,
        cache: Optional[AccessDecisionCache] = None,
        notifier: Optional[Notifier] = None,
        access_service: Optional[AccessService] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            db_session: Database session
            reconciler: Reconciler bound to the same session
            cache: Access decision cache to invalidate after commit
            notifier: Best-effort notification sink (None disables notifications)
            access_service: Used for immediate re-evaluation on pause/resume
        """
        self.db = db_session
        self.reconciler = (
            reconciler if reconciler is not None else SubscriptionReconciler(db_session)
        )
        self.cache = cache if cache is not None else get_access_cache()
        self.notifier = notifier
        self.access_service = (
            access_service if access_service is not None
            else AccessService(db_session, cache=self.cache)
        )

    def _is_duplicate(self, stripe_event_id: str) -> bool:
        """Check if the event has already been recorded."""
        existing = self.db.query(WebhookEvent).filter(
            WebhookEvent.stripe_event_id == stripe_event_id
        ).first()

        return existing is not None

    @staticmethod
    def _payload_hash(payload: Any) -> Optional[str]:
        try:
            payload_str = json.dumps(payload, sort_keys=True, default=str)
        except (TypeError, ValueError):
            return None
        return hashlib.sha256(payload_str.encode()).hexdigest()

    def _record_event(
        self,
        stripe_event_id: str,
        event_type: str,
        outcome: str,
        customer_ref: Optional[str] = None,
        payload_hash: Optional[str] = None,
        occurred_at=None,
    ) -> None:
        """Stage the idempotency record in the current transaction."""
        self.db.add(WebhookEvent(
            stripe_event_id=stripe_event_id,
            event_type=event_type,
            customer_ref=customer_ref,
            outcome=outcome,
            payload_hash=payload_hash,
            occurred_at=occurred_at,
            processed_at=utcnow(),
        ))

    async def handle_event(self, raw_event: Dict[str, Any]) -> WebhookProcessingResult:
        """
        Parse and ingest a raw Stripe event.

        Args:
            raw_event: Decoded webhook body

        Returns:
            WebhookProcessingResult
        """
        payload_hash = self._payload_hash(raw_event)
        try:
            event = parse_event(raw_event)
        except BillingValidationError as e:
            event_type = raw_event.get("type") if isinstance(raw_event, dict) else None
            return self._reject(e, event_type=event_type, payload_hash=payload_hash)

        return await self.ingest(event, payload_hash=payload_hash)

    async def ingest(
        self,
        event: BillingEventRecord,
        payload_hash: Optional[str] = None,
    ) -> WebhookProcessingResult:
        """
        Apply a typed event exactly once.

        Args:
            event: Parsed billing event
            payload_hash: SHA-256 of the raw payload, for debugging

        Returns:
            WebhookProcessingResult
        """
        if self._is_duplicate(event.event_id):
            logger.info("Duplicate webhook skipped", extra={
                "event_id": event.event_id,
                "event_type": event.event_type,
            })
            return self._duplicate(event.event_id)

        try:
            outcome = await self.reconciler.upsert_from_event(event)
            self._record_event(
                event.event_id,
                event.event_type,
                outcome.outcome,
                customer_ref=event.customer_ref,
                payload_hash=payload_hash,
                occurred_at=event.occurred_at,
            )
            self.db.commit()

        except BillingValidationError as e:
            self.db.rollback()
            return self._reject(
                e,
                event_id=event.event_id,
                event_type=event.event_type,
                customer_ref=event.customer_ref,
                payload_hash=payload_hash,
                occurred_at=event.occurred_at,
            )

        except IntegrityError as e:
            self.db.rollback()
            if self._is_duplicate(event.event_id):
                # Lost the race against a concurrent delivery of the same event
                logger.info("Concurrent duplicate webhook skipped", extra={
                    "event_id": event.event_id,
                })
                return self._duplicate(event.event_id)
            return self._transient(event, e)

        except Exception as e:
            self.db.rollback()
            return self._transient(event, e)

        self._after_commit(event, outcome)

        logger.info("Webhook processed successfully", extra={
            "event_id": event.event_id,
            "event_type": event.event_type,
            "outcome": outcome.outcome,
            "customer_ref": event.customer_ref,
        })

        subscription_id = outcome.subscription.id if outcome.subscription is not None else None
        if outcome.applied:
            return WebhookProcessingResult(
                processed=True,
                message=outcome.message or f"Applied {event.event_type}",
                event_id=event.event_id,
                subscription_id=subscription_id,
            )
        return WebhookProcessingResult(
            processed=False,
            message=outcome.message or f"Skipped {event.event_type}",
            event_id=event.event_id,
            subscription_id=subscription_id,
            skipped_reason=outcome.outcome,
        )

    def _after_commit(self, event: BillingEventRecord, outcome: ReconcileOutcome) -> None:
        """Invalidate caches, re-evaluate, then notify. Never raises."""
        reason = f"{event.event_type}:{event.event_id}"
        for account_id in sorted(outcome.invalidate_account_ids):
            self.cache.invalidate(account_id, reason=reason)
            if outcome.reevaluate:
                decision = self.access_service.evaluate(account_id)
                logger.info("Access re-evaluated after billing change", extra={
                    "account_id": account_id,
                    "has_access": decision.has_access,
                    "reason": decision.reason.value,
                })

        if self.notifier is None:
            return
        for message in outcome.notifications:
            try:
                self.notifier.notify(message)
            except Exception as e:
                logger.warning("Notification delivery failed", extra={
                    "event_id": event.event_id,
                    "kind": message.kind.value,
                    "customer_ref": message.customer_ref,
                    "error": str(e),
                })

    def _duplicate(self, event_id: str) -> WebhookProcessingResult:
        return WebhookProcessingResult(
            processed=False,
            message="Duplicate webhook - already processed",
            event_id=event_id,
            skipped_reason="duplicate",
        )

    def _reject(
        self,
        error: BillingValidationError,
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
        customer_ref: Optional[str] = None,
        payload_hash: Optional[str] = None,
        occurred_at=None,
    ) -> WebhookProcessingResult:
        """Record a validation failure so redeliveries are not re-processed."""
        event_id = event_id or error.event_id
        logger.warning("Webhook rejected", extra={
            "event_id": event_id,
            "event_type": event_type,
            "error": error.message,
        })

        if event_id:
            try:
                if not self._is_duplicate(event_id):
                    self._record_event(
                        event_id,
                        event_type or "unknown",
                        WebhookOutcome.REJECTED,
                        customer_ref=customer_ref,
                        payload_hash=payload_hash,
                        occurred_at=occurred_at,
                    )
                    self.db.commit()
            except IntegrityError:
                self.db.rollback()

        return WebhookProcessingResult(
            processed=False,
            message=f"Invalid event: {error.message}",
            event_id=event_id,
            error="validation_error",
            retryable=False,
        )

    def _transient(self, event: BillingEventRecord, error: Exception) -> WebhookProcessingResult:
        logger.error("Error processing webhook", extra={
            "event_id": event.event_id,
            "event_type": event.event_type,
            "error_type": type(error).__name__,
            "error": str(error),
        })
        return WebhookProcessingResult(
            processed=False,
            message=f"Processing error: {error}",
            event_id=event.event_id,
            error="transient_error",
            retryable=True,
        )


def get_webhook_handler(
    db_session: Session,
    notifier: Optional[Notifier] = None,
    reconciler: Optional[SubscriptionReconciler] = None,
) -> StripeWebhookHandler:
    """Factory for StripeWebhookHandler."""
    return StripeWebhookHandler(db_session, reconciler=reconciler, notifier=notifier)
