"""
Integration tests for the subscription reconciliation job.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradersutopia.integrations.stripe.billing_client import StripeAPIError
from tradersutopia.integrations.stripe.events import StripeSubscription
from tradersutopia.jobs import reconcile_subscriptions
from tradersutopia.jobs.reconcile_subscriptions import find_lapsed_subscriptions, run_reconciliation
from tradersutopia.models.account import Account
from tradersutopia.models.base import ensure_utc, generate_uuid
from tradersutopia.models.billing_event import ActorType, BillingEvent, BillingEventType
from tradersutopia.models.subscription import Subscription, SubscriptionStatus
from tradersutopia.tests.stripe_factories import (
    BASE_TIME,
    CUSTOMER_ID,
    PERIOD_END,
    PREMIUM_PRODUCT,
    subscription_payload,
)


@pytest.fixture(autouse=True)
def no_provider_delay(monkeypatch):
    monkeypatch.setattr(reconcile_subscriptions, "PROVIDER_DELAY_SECONDS", 0)


@pytest.fixture
def lapsed_clock(clock):
    """Clock one hour past the end of the default billing window."""
    clock.now = PERIOD_END + timedelta(hours=1)
    return clock


@pytest.fixture
def account_id(db_session):
    account = Account(id=generate_uuid(), stripe_customer_id=CUSTOMER_ID)
    db_session.add(account)
    db_session.commit()
    return account.id


def add_subscription(db_session, **kwargs) -> Subscription:
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


def provider(result):
    client = MagicMock()
    if isinstance(result, Exception):
        client.retrieve_subscription = AsyncMock(side_effect=result)
    else:
        client.retrieve_subscription = AsyncMock(
            return_value=StripeSubscription.model_validate(result)
        )
    return client


def get_row(db_session) -> Subscription:
    return db_session.query(Subscription).filter(
        Subscription.customer_ref == CUSTOMER_ID
    ).one()


class TestFindLapsed:
    """Tests for the lapsed-row query."""

    def test_only_active_lapsed_rows(self, db_session, lapsed_clock):
        add_subscription(db_session)
        add_subscription(
            db_session, customer_ref="cus_fresh", subscription_ref="sub_fresh",
            current_period_end=PERIOD_END + timedelta(days=30),
        )
        add_subscription(
            db_session, customer_ref="cus_cancelled", subscription_ref="sub_cancelled",
            status=SubscriptionStatus.CANCELLED.value,
        )
        add_subscription(
            db_session, customer_ref="cus_deleted", subscription_ref="sub_deleted",
            customer_deleted_at=BASE_TIME,
        )
        add_subscription(
            db_session, customer_ref="cus_nowindow", subscription_ref="sub_nowindow",
            current_period_end=None,
        )

        lapsed = find_lapsed_subscriptions(db_session, lapsed_clock())

        assert sorted(row.customer_ref for row in lapsed) == [CUSTOMER_ID, "cus_nowindow"]


class TestRunReconciliation:
    """Tests for run_reconciliation."""

    @pytest.mark.asyncio
    async def test_expires_without_provider(self, db_session, access_cache, lapsed_clock, account_id):
        add_subscription(db_session)

        result = await run_reconciliation(session=db_session, cache=access_cache, clock=lapsed_clock)

        assert result["subscriptions_checked"] == 1
        assert result["subscriptions_expired"] == 1
        assert result["accounts_invalidated"] == 1
        assert result["errors"] == 0
        assert get_row(db_session).status == SubscriptionStatus.EXPIRED.value

        audit = db_session.query(BillingEvent).one()
        assert audit.event_type == BillingEventType.SUBSCRIPTION_EXPIRED
        assert audit.actor_type == ActorType.CRON
        assert audit.extra_metadata["source"] == "local_expiry"

    @pytest.mark.asyncio
    async def test_provider_renewal_resyncs(self, db_session, access_cache, lapsed_clock, account_id):
        add_subscription(db_session)
        new_end = PERIOD_END + timedelta(days=30)
        client = provider(subscription_payload(period_start=PERIOD_END, period_end=new_end))

        result = await run_reconciliation(
            session=db_session, billing_client=client, cache=access_cache, clock=lapsed_clock,
        )

        assert result["subscriptions_resynced"] == 1
        row = get_row(db_session)
        assert row.status == SubscriptionStatus.ACTIVE.value
        assert ensure_utc(row.current_period_end) == new_end
        assert ensure_utc(row.last_reconciled_at) == lapsed_clock()
        client.retrieve_subscription.assert_awaited_once_with("sub_1")

    @pytest.mark.asyncio
    async def test_provider_active_with_lapsed_window_expires(self, db_session, access_cache, lapsed_clock):
        add_subscription(db_session)
        client = provider(subscription_payload())

        result = await run_reconciliation(
            session=db_session, billing_client=client, cache=access_cache, clock=lapsed_clock,
        )

        assert result["subscriptions_expired"] == 1
        assert get_row(db_session).status == SubscriptionStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_provider_cancelled(self, db_session, access_cache, lapsed_clock):
        add_subscription(db_session)
        client = provider(subscription_payload(status="canceled", canceled_at=PERIOD_END))

        await run_reconciliation(
            session=db_session, billing_client=client, cache=access_cache, clock=lapsed_clock,
        )

        row = get_row(db_session)
        assert row.status == SubscriptionStatus.CANCELLED.value
        assert ensure_utc(row.cancelled_at) == PERIOD_END

    @pytest.mark.asyncio
    async def test_provider_error_leaves_row_unchanged(self, db_session, access_cache, lapsed_clock):
        add_subscription(db_session)
        client = provider(StripeAPIError("Stripe unavailable", status_code=503, retryable=True))

        result = await run_reconciliation(
            session=db_session, billing_client=client, cache=access_cache, clock=lapsed_clock,
        )

        assert result["errors"] == 1
        assert result["subscriptions_expired"] == 0
        assert get_row(db_session).status == SubscriptionStatus.ACTIVE.value
        assert db_session.query(BillingEvent).count() == 0

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, db_session, access_cache, clock):
        add_subscription(db_session)

        result = await run_reconciliation(session=db_session, cache=access_cache, clock=clock)

        assert result["subscriptions_checked"] == 0
        assert get_row(db_session).status == SubscriptionStatus.ACTIVE.value
