"""
Read-only Stripe lookups through the official stripe SDK.

The reconciler uses this to re-fetch authoritative subscription state when a
webhook payload is partial or stale (invoice events, checkout sessions,
lapsed windows found by the reconciliation job), and to rebuild an account's
subscription from scratch on an explicit sync. It never mutates Stripe.

SDK calls are blocking, so each one runs in the default thread pool.

Documentation: https://docs.stripe.com/api
"""

import asyncio
import functools
import json
import logging
import os
from typing import Any, Callable, List, Optional

import stripe
from pydantic import ValidationError

from tradersutopia.integrations.stripe.events import StripeCustomer, StripeSubscription

logger = logging.getLogger(__name__)

# Pin the API version so payload shapes don't drift under us
STRIPE_API_VERSION = "2024-06-20"

# Expand the price on each item so product ids are available
SUBSCRIPTION_EXPAND = ["items.data.price"]
SUBSCRIPTION_LIST_EXPAND = ["data.items.data.price"]


class StripeBillingError(Exception):
    """Base exception for Stripe API errors."""
    pass


class StripeAPIError(StripeBillingError):
    """Error communicating with the Stripe API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
        response: Optional[dict] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
        self.response = response


def _plain(obj: Any) -> Any:
    """JSON-equivalent copy of an SDK object (StripeObject renders as JSON)."""
    if obj is None or (isinstance(obj, (dict, list)) and not isinstance(obj, stripe.StripeObject)):
        return obj
    return json.loads(str(obj))


class StripeBillingClient:
    """
    Client for Stripe subscription and customer lookups.

    SECURITY: The secret key is passed per request, never set on the global
    stripe module, and never logged.
    """

    def __init__(self, api_key: str):
        """
        Initialize the client.

        Args:
            api_key: Stripe secret key (sk_...)
        """
        if not api_key:
            raise ValueError("api_key is required")
        self._api_key = api_key

    async def _call(self, operation: str, method: Callable[..., Any], **params: Any) -> Any:
        """
        Run one SDK call off the event loop.

        Raises:
            StripeAPIError: On any Stripe failure. Network errors, 429 and 5xx are retryable.
        """
        call = functools.partial(
            method,
            api_key=self._api_key,
            stripe_version=STRIPE_API_VERSION,
            **params,
        )
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, call)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning("Stripe API temporarily unavailable", extra={
                "operation": operation,
                "error_type": type(e).__name__,
                "status_code": e.http_status,
            })
            raise StripeAPIError(
                f"{operation} failed: {e.user_message or e}",
                status_code=e.http_status,
                retryable=True,
            ) from e
        except stripe.AuthenticationError as e:
            logger.error("Stripe API authentication failed", extra={
                "operation": operation,
                "status_code": e.http_status,
            })
            raise StripeAPIError(
                "Authentication failed - secret key may be invalid or revoked",
                status_code=e.http_status,
            ) from e
        except stripe.StripeError as e:
            status_code = e.http_status
            logger.error("Stripe API error", extra={
                "operation": operation,
                "error_type": type(e).__name__,
                "status_code": status_code,
                "code": e.code,
            })
            raise StripeAPIError(
                f"{operation} failed: {e.user_message or e}",
                status_code=status_code,
                retryable=status_code is None or status_code >= 500,
                response=e.json_body,
            ) from e

    def _validate(self, model, data: Any, operation: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise StripeAPIError(f"{operation} returned an unexpected shape: {e}") from e

    async def retrieve_subscription(self, subscription_id: str) -> Optional[StripeSubscription]:
        """
        Fetch one subscription with prices expanded.

        Returns:
            StripeSubscription, or None if Stripe does not know the id
        """
        try:
            result = await self._call(
                "retrieve_subscription",
                stripe.Subscription.retrieve,
                id=subscription_id,
                expand=SUBSCRIPTION_EXPAND,
            )
        except StripeAPIError as e:
            if e.status_code == 404:
                logger.info("Stripe subscription not found", extra={
                    "subscription_ref": subscription_id,
                })
                return None
            raise
        return self._validate(StripeSubscription, _plain(result), "retrieve_subscription")

    async def list_subscriptions(
        self,
        customer_id: str,
        status: str = "all",
        limit: int = 10,
    ) -> List[StripeSubscription]:
        """List a customer's subscriptions, newest first."""
        result = await self._call(
            "list_subscriptions",
            stripe.Subscription.list,
            customer=customer_id,
            status=status,
            limit=limit,
            expand=SUBSCRIPTION_LIST_EXPAND,
        )
        data = (_plain(result) or {}).get("data", [])
        return [self._validate(StripeSubscription, item, "list_subscriptions") for item in data]

    async def list_customers(self, email: str, limit: int = 10) -> List[StripeCustomer]:
        """List customers registered under an email address."""
        result = await self._call(
            "list_customers",
            stripe.Customer.list,
            email=email,
            limit=limit,
        )
        data = (_plain(result) or {}).get("data", [])
        return [self._validate(StripeCustomer, item, "list_customers") for item in data]


def get_billing_client() -> Optional[StripeBillingClient]:
    """
    Build a client from STRIPE_SECRET_KEY.

    Returns None when no key is configured; callers then work from payload data only.
    """
    api_key = os.getenv("STRIPE_SECRET_KEY")
    if not api_key:
        return None
    return StripeBillingClient(api_key=api_key)
