"""
Access Service - single entry point for premium access checks.

Provides:
- evaluate(account_id) -> AccessDecision
- invalidate(account_id, reason)

Architecture:
- Fail-CLOSED: any evaluation error denies access and is never cached
- Cache-first: decisions are served from AccessDecisionCache until invalidated
- Deterministic subscription selection: the row for the account's linked
  Stripe customer wins, then the most recently updated row for the account

CRITICAL: Access-gated routes use ONLY this service.
Do NOT query subscriptions or call the evaluator directly for access checks.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from tradersutopia.config.billing_config import BillingConfig, get_billing_config
from tradersutopia.entitlements.access_evaluator import (
    AccessDecision,
    AccessReason,
    SubscriptionSnapshot,
    evaluate,
)
from tradersutopia.entitlements.cache import AccessDecisionCache, get_access_cache
from tradersutopia.models.account import Account
from tradersutopia.models.base import utcnow
from tradersutopia.models.subscription import Subscription

logger = logging.getLogger(__name__)


class AccessService:
    """
    Central access service.

    One instance per request / job. Stateless between calls except for
    injected collaborators (db, cache, config, clock).
    """

    def __init__(
        self,
        db_session: Session,
        cache: Optional[AccessDecisionCache] = None,
        config: Optional[BillingConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db_session
        self._cache = cache if cache is not None else get_access_cache()
        self._config = config or get_billing_config()
        self._clock = clock

    def evaluate(self, account_id: str) -> AccessDecision:
        """
        Resolve premium access for an account.

        1. Cache hit -> return
        2. Load account + canonical subscription, evaluate, cache
        3. On ANY failure -> deny (reason none), do not cache
        """
        if not account_id:
            return self._deny(account_id or "")

        try:
            return self._cache.get_or_compute(account_id, lambda: self._compute(account_id))
        except Exception as exc:
            logger.error("Access evaluation failed - denying access", extra={
                "account_id": account_id,
                "error": str(exc),
            })
            return self._deny(account_id)

    def invalidate(self, account_id: str, reason: Optional[str] = None) -> bool:
        deleted = self._cache.invalidate(account_id, reason)
        logger.info("Access decision invalidated", extra={
            "account_id": account_id,
            "reason": reason,
            "cache_deleted": deleted,
        })
        return deleted

    def _compute(self, account_id: str) -> AccessDecision:
        account = self.db.query(Account).filter(Account.id == account_id).first()
        if account is None:
            return evaluate(None, False, self._clock(), self._config, account_id)

        subscription = self._load_subscription(account)
        snapshot = SubscriptionSnapshot.from_model(subscription) if subscription else None
        return evaluate(
            snapshot,
            bool(account.is_admin),
            self._clock(),
            self._config,
            account_id,
        )

    def _load_subscription(self, account: Account) -> Optional[Subscription]:
        if account.stripe_customer_id:
            subscription = self.db.query(Subscription).filter(
                Subscription.customer_ref == account.stripe_customer_id
            ).first()
            if subscription is not None:
                return subscription

        return self.db.query(Subscription).filter(
            Subscription.account_id == account.id
        ).order_by(Subscription.updated_at.desc()).first()

    def _deny(self, account_id: str) -> AccessDecision:
        return AccessDecision(
            account_id=account_id,
            has_access=False,
            reason=AccessReason.NONE,
            evaluated_at=self._clock(),
        )
