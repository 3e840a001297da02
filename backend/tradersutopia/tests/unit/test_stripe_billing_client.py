"""
Unit tests for StripeBillingClient.

Tests cover:
- SDK call shape (per-request key, API version, expansion)
- Error classification (retryable vs. permanent)
- 404 handling
"""

from unittest.mock import patch

import pytest
import stripe

from tradersutopia.integrations.stripe.billing_client import (
    STRIPE_API_VERSION,
    StripeAPIError,
    StripeBillingClient,
    get_billing_client,
)
from tradersutopia.tests.stripe_factories import PREMIUM_PRODUCT, subscription_payload

API_KEY = "sk_test_123"


@pytest.fixture
def client():
    return StripeBillingClient(api_key=API_KEY)


class TestRequests:
    """Tests for successful lookups."""

    @pytest.mark.asyncio
    async def test_retrieve_subscription(self, client):
        with patch("stripe.Subscription.retrieve") as retrieve:
            retrieve.return_value = subscription_payload(status="trialing")
            subscription = await client.retrieve_subscription("sub_1")

        assert subscription.id == "sub_1"
        assert subscription.status == "trialing"
        assert subscription.product_ref == PREMIUM_PRODUCT
        retrieve.assert_called_once_with(
            id="sub_1",
            expand=["items.data.price"],
            api_key=API_KEY,
            stripe_version=STRIPE_API_VERSION,
        )

    @pytest.mark.asyncio
    async def test_retrieve_returns_sdk_object(self, client):
        sdk_object = stripe.Subscription.construct_from(subscription_payload(), API_KEY)

        with patch("stripe.Subscription.retrieve", return_value=sdk_object):
            subscription = await client.retrieve_subscription("sub_1")

        assert subscription.customer == "cus_1"
        assert subscription.price_ref == "price_1"

    @pytest.mark.asyncio
    async def test_retrieve_missing_subscription(self, client):
        missing = stripe.InvalidRequestError(
            "No such subscription: 'sub_gone'", "id", code="resource_missing", http_status=404,
        )

        with patch("stripe.Subscription.retrieve", side_effect=missing):
            assert await client.retrieve_subscription("sub_gone") is None

    @pytest.mark.asyncio
    async def test_list_subscriptions(self, client):
        listing = {
            "object": "list",
            "data": [
                subscription_payload(subscription_id="sub_new"),
                subscription_payload(subscription_id="sub_old", status="canceled"),
            ],
        }

        with patch("stripe.Subscription.list", return_value=listing) as list_subscriptions:
            subscriptions = await client.list_subscriptions("cus_1")

        assert [s.id for s in subscriptions] == ["sub_new", "sub_old"]
        list_subscriptions.assert_called_once_with(
            customer="cus_1",
            status="all",
            limit=10,
            expand=["data.items.data.price"],
            api_key=API_KEY,
            stripe_version=STRIPE_API_VERSION,
        )

    @pytest.mark.asyncio
    async def test_list_customers(self, client):
        listing = {"object": "list", "data": [{"id": "cus_1", "email": "a@example.com"}]}

        with patch("stripe.Customer.list", return_value=listing) as list_customers:
            customers = await client.list_customers("a@example.com")

        assert [c.id for c in customers] == ["cus_1"]
        assert list_customers.call_args.kwargs["email"] == "a@example.com"

    @pytest.mark.asyncio
    async def test_unexpected_shape(self, client):
        with patch("stripe.Subscription.retrieve", return_value={"id": "sub_1"}):
            with pytest.raises(StripeAPIError) as exc_info:
                await client.retrieve_subscription("sub_1")

        assert exc_info.value.retryable is False


class TestErrors:
    """Tests for error classification."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,status_code,retryable", [
        (stripe.InvalidRequestError("bad param", "id", http_status=400), 400, False),
        (stripe.AuthenticationError("bad key", http_status=401), 401, False),
        (stripe.PermissionError("restricted key", http_status=403), 403, False),
        (stripe.RateLimitError("slow down", http_status=429), 429, True),
        (stripe.APIError("boom", http_status=500), 500, True),
        (stripe.APIError("unavailable", http_status=503), 503, True),
    ])
    async def test_sdk_errors(self, client, error, status_code, retryable):
        with patch("stripe.Subscription.retrieve", side_effect=error):
            with pytest.raises(StripeAPIError) as exc_info:
                await client.retrieve_subscription("sub_1")

        assert exc_info.value.status_code == status_code
        assert exc_info.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_error_body_is_kept(self, client):
        body = {"error": {"message": "bad", "type": "invalid_request_error"}}
        error = stripe.InvalidRequestError("bad", "id", http_status=400, json_body=body)

        with patch("stripe.Subscription.retrieve", side_effect=error):
            with pytest.raises(StripeAPIError) as exc_info:
                await client.retrieve_subscription("sub_1")

        assert exc_info.value.response == body

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self, client):
        with patch("stripe.Customer.list", side_effect=stripe.APIConnectionError("refused")):
            with pytest.raises(StripeAPIError) as exc_info:
                await client.list_customers("a@example.com")

        assert exc_info.value.retryable is True
        assert exc_info.value.status_code is None


class TestFactory:
    """Tests for get_billing_client."""

    def test_no_key_no_client(self):
        assert get_billing_client() is None

    def test_client_from_env(self, monkeypatch):
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_env")

        assert isinstance(get_billing_client(), StripeBillingClient)

    def test_api_key_required(self):
        with pytest.raises(ValueError):
            StripeBillingClient(api_key="")
