"""
Integration tests for AccessService.

Tests cover:
- Subscription selection for an account
- Cache-first evaluation and invalidation
- Fail-closed behaviour on storage errors
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import SQLAlchemyError

from tradersutopia.config.billing_config import BillingConfig
from tradersutopia.entitlements.access_evaluator import AccessReason
from tradersutopia.entitlements.service import AccessService
from tradersutopia.models.account import Account
from tradersutopia.models.base import generate_uuid
from tradersutopia.models.subscription import Subscription, SubscriptionStatus
from tradersutopia.tests.stripe_factories import (
    BASE_TIME,
    CUSTOMER_ID,
    PERIOD_END,
    PREMIUM_PRODUCT,
)


@pytest.fixture
def make_account(db_session):
    def _make(**kwargs):
        account = Account(id=generate_uuid(), **kwargs)
        db_session.add(account)
        db_session.commit()
        return account
    return _make


@pytest.fixture
def make_subscription(db_session):
    def _make(**kwargs):
        values = {
            "id": generate_uuid(),
            "customer_ref": CUSTOMER_ID,
            "subscription_ref": "sub_1",
            "product_ref": PREMIUM_PRODUCT,
            "status": SubscriptionStatus.ACTIVE.value,
            "current_period_start": BASE_TIME,
            "current_period_end": PERIOD_END,
        }
        values.update(kwargs)
        subscription = Subscription(**values)
        db_session.add(subscription)
        db_session.commit()
        return subscription
    return _make


class TestEvaluate:
    """Tests for AccessService.evaluate."""

    def test_unknown_account(self, access_service):
        decision = access_service.evaluate("acct_missing")

        assert decision.has_access is False
        assert decision.reason == AccessReason.NONE
        assert decision.account_id == "acct_missing"

    def test_empty_account_id(self, access_service):
        assert access_service.evaluate("").reason == AccessReason.NONE

    def test_admin_without_subscription(self, access_service, make_account):
        account = make_account(is_admin=True)

        decision = access_service.evaluate(account.id)

        assert decision.has_access is True
        assert decision.reason == AccessReason.ADMIN_BYPASS

    def test_linked_customer(self, access_service, make_account, make_subscription):
        account = make_account(stripe_customer_id=CUSTOMER_ID)
        make_subscription()

        decision = access_service.evaluate(account.id)

        assert decision.reason == AccessReason.ACTIVE
        assert decision.product_ref == PREMIUM_PRODUCT
        assert decision.current_period_end == PERIOD_END

    def test_account_id_fallback(self, access_service, make_account, make_subscription):
        account = make_account()
        make_subscription(account_id=account.id)

        assert access_service.evaluate(account.id).reason == AccessReason.ACTIVE

    def test_linked_customer_wins_over_account_rows(
        self, access_service, make_account, make_subscription
    ):
        account = make_account(stripe_customer_id=CUSTOMER_ID)
        make_subscription(
            customer_ref="cus_old",
            subscription_ref="sub_old",
            account_id=account.id,
            status=SubscriptionStatus.CANCELLED.value,
        )
        make_subscription()

        assert access_service.evaluate(account.id).reason == AccessReason.ACTIVE

    def test_lapsed_active_row_is_expired(self, access_service, make_account, make_subscription, clock):
        account = make_account(stripe_customer_id=CUSTOMER_ID)
        make_subscription(current_period_end=clock() - timedelta(seconds=1))

        decision = access_service.evaluate(account.id)

        assert decision.has_access is False
        assert decision.reason == AccessReason.EXPIRED

    def test_cancelled_with_grace(self, db_session, access_cache, clock, make_account, make_subscription):
        config = BillingConfig(
            allowed_product_ids=frozenset({PREMIUM_PRODUCT}),
            cancelled_grace_until_period_end=True,
        )
        service = AccessService(db_session, cache=access_cache, config=config, clock=clock)
        account = make_account(stripe_customer_id=CUSTOMER_ID)
        make_subscription(status=SubscriptionStatus.CANCELLED.value)

        assert service.evaluate(account.id).reason == AccessReason.ACTIVE


class TestCaching:
    """Cache-first evaluation."""

    def test_decision_is_cached_until_invalidated(
        self, access_service, db_session, make_account, make_subscription
    ):
        account = make_account(stripe_customer_id=CUSTOMER_ID)
        subscription = make_subscription()
        assert access_service.evaluate(account.id).has_access is True

        subscription.status = SubscriptionStatus.PAUSED.value
        db_session.commit()

        assert access_service.evaluate(account.id).has_access is True

        access_service.invalidate(account.id, reason="test")

        decision = access_service.evaluate(account.id)
        assert decision.has_access is False
        assert decision.reason == AccessReason.NONE

    def test_positive_ttl_never_outlives_period(
        self, access_service, access_cache, make_account, make_subscription, clock
    ):
        period_end = clock() + timedelta(minutes=10)
        account = make_account(stripe_customer_id=CUSTOMER_ID)
        make_subscription(current_period_end=period_end)

        decision = access_service.evaluate(account.id)

        assert decision.expires_at == period_end
        clock.advance(minutes=10)
        assert access_cache.get(account.id) is None

    def test_negative_decision_expires_quickly(self, access_service, access_cache, clock):
        decision = access_service.evaluate("acct_missing")

        assert decision.expires_at == clock() + timedelta(seconds=60)
        assert access_cache.get("acct_missing") is not None


class TestFailClosed:
    """Storage failures deny access."""

    def test_storage_error_denies_and_is_not_cached(self, access_cache, billing_config, clock):
        db = MagicMock()
        db.query.side_effect = SQLAlchemyError("connection reset")
        service = AccessService(db, cache=access_cache, config=billing_config, clock=clock)

        decision = service.evaluate("acct_1")

        assert decision.has_access is False
        assert decision.reason == AccessReason.NONE
        assert access_cache.get("acct_1") is None
