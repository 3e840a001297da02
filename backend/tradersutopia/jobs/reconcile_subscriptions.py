"""
Subscription reconciliation job.

Runs hourly to repair subscriptions left ACTIVE after their paid window
passed (missed or delayed webhooks). Each lapsed row is re-synced from Stripe
when STRIPE_SECRET_KEY is configured, otherwise demoted to EXPIRED.

Usage:
    python -m tradersutopia.jobs.reconcile_subscriptions

Deployed as a cron job.
"""

import sys
import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from tradersutopia.database.session import get_session_factory
from tradersutopia.entitlements.cache import AccessDecisionCache, get_access_cache
from tradersutopia.integrations.stripe.billing_client import StripeBillingClient, get_billing_client
from tradersutopia.models.base import utcnow
from tradersutopia.models.subscription import Subscription, SubscriptionStatus
from tradersutopia.services.subscription_reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)

# Maximum subscriptions to process per run (for rate limiting)
MAX_SUBSCRIPTIONS_PER_RUN = 500

# Delay between Stripe lookups
PROVIDER_DELAY_SECONDS = 0.1


class ReconciliationStats:
    """Track reconciliation run statistics."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self.subscriptions_checked = 0
        self.subscriptions_resynced = 0
        self.subscriptions_expired = 0
        self.accounts_invalidated = 0
        self.errors = 0
        self.start_time = clock()

    def to_dict(self) -> dict:
        duration = (self._clock() - self.start_time).total_seconds()
        return {
            "subscriptions_checked": self.subscriptions_checked,
            "subscriptions_resynced": self.subscriptions_resynced,
            "subscriptions_expired": self.subscriptions_expired,
            "accounts_invalidated": self.accounts_invalidated,
            "errors": self.errors,
            "duration_seconds": duration
        }


def find_lapsed_subscriptions(
    session: Session,
    now: datetime,
    limit: int = MAX_SUBSCRIPTIONS_PER_RUN,
) -> List[Subscription]:
    """ACTIVE rows whose current_period_end has passed (or was never set)."""
    return session.query(Subscription).filter(
        Subscription.status == SubscriptionStatus.ACTIVE.value,
        (Subscription.current_period_end.is_(None)) | (Subscription.current_period_end <= now),
        Subscription.customer_deleted_at.is_(None),
    ).order_by(Subscription.current_period_end).limit(limit).all()


async def reconcile_lapsed_subscriptions(
    session: Session,
    reconciler: SubscriptionReconciler,
    cache: AccessDecisionCache,
    stats: ReconciliationStats,
    now: datetime,
) -> None:
    """
    Re-sync or expire each lapsed subscription, one transaction per row.

    Args:
        session: Database session
        reconciler: Reconciler bound to the session
        cache: Access cache to invalidate after each commit
        stats: Statistics tracker
        now: Reference time
    """
    lapsed = find_lapsed_subscriptions(session, now)
    logger.info("Found lapsed subscriptions", extra={"count": len(lapsed)})

    for subscription in lapsed:
        stats.subscriptions_checked += 1
        customer_ref = subscription.customer_ref
        try:
            outcome = await reconciler.resync_lapsed(subscription)
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("Error reconciling subscription", extra={
                "customer_ref": customer_ref,
                "error": str(e)
            })
            stats.errors += 1
            continue

        if outcome.to_status == SubscriptionStatus.EXPIRED.value:
            stats.subscriptions_expired += 1
        else:
            stats.subscriptions_resynced += 1

        for account_id in outcome.invalidate_account_ids:
            cache.invalidate(account_id, reason="reconciliation:lapsed_window")
            stats.accounts_invalidated += 1

        logger.info("Lapsed subscription reconciled", extra={
            "customer_ref": customer_ref,
            "from_status": outcome.from_status,
            "to_status": outcome.to_status,
        })

        if reconciler.billing_client is not None:
            # Small delay between Stripe lookups to avoid rate limiting
            await asyncio.sleep(PROVIDER_DELAY_SECONDS)


async def run_reconciliation(
    session: Optional[Session] = None,
    billing_client: Optional[StripeBillingClient] = None,
    cache: Optional[AccessDecisionCache] = None,
    clock: Callable[[], datetime] = utcnow,
) -> dict:
    """
    Run the subscription reconciliation job.

    Returns:
        Statistics dictionary with job results
    """
    logger.info("Starting subscription reconciliation job")

    stats = ReconciliationStats(clock=clock)
    owns_session = session is None
    if owns_session:
        session = get_session_factory()()
    if billing_client is None:
        billing_client = get_billing_client()

    try:
        reconciler = SubscriptionReconciler(
            session,
            billing_client=billing_client,
            clock=clock,
        )
        await reconcile_lapsed_subscriptions(
            session,
            reconciler,
            cache if cache is not None else get_access_cache(),
            stats,
            clock(),
        )

        result = stats.to_dict()
        logger.info("Reconciliation job completed", extra=result)
        return result

    except Exception as e:
        logger.error("Reconciliation job failed", extra={
            "error": str(e)
        })
        raise
    finally:
        if owns_session:
            session.close()


def main():
    """Entry point for running reconciliation job from command line."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        result = asyncio.run(run_reconciliation())
        print(f"Reconciliation completed: {result}")
        sys.exit(0)
    except Exception as e:
        print(f"Reconciliation failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
