"""
Builders for Stripe webhook payloads used across tests.

Shapes follow the Stripe API (2024-06-20) closely enough for the parsers;
only the fields the billing core reads are filled in.
"""

import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from tradersutopia.integrations.stripe.events import BillingEventRecord, parse_event

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)
PERIOD_END = BASE_TIME + timedelta(days=30)

PREMIUM_PRODUCT = "prod_premium"
OTHER_PRODUCT = "prod_other"
CUSTOMER_ID = "cus_1"
SUBSCRIPTION_ID = "sub_1"


def ts(value: datetime) -> int:
    """Unix timestamp for an aware datetime."""
    return int(value.timestamp())


def at(hours: float = 0) -> datetime:
    """BASE_TIME shifted by a number of hours."""
    return BASE_TIME + timedelta(hours=hours)


def subscription_payload(
    subscription_id: str = SUBSCRIPTION_ID,
    customer: Any = CUSTOMER_ID,
    status: str = "active",
    product: Any = PREMIUM_PRODUCT,
    price_id: str = "price_1",
    period_start: Optional[datetime] = BASE_TIME,
    period_end: Optional[datetime] = PERIOD_END,
    cancel_at_period_end: bool = False,
    canceled_at: Optional[datetime] = None,
    trial_end: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
    item_level_period: bool = False,
    **extra: Any,
) -> Dict[str, Any]:
    """A Stripe subscription object."""
    item: Dict[str, Any] = {
        "id": f"si_{subscription_id}",
        "object": "subscription_item",
        "price": {"id": price_id, "object": "price", "product": product},
    }
    payload: Dict[str, Any] = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "created": ts(BASE_TIME),
        "cancel_at_period_end": cancel_at_period_end,
        "canceled_at": ts(canceled_at) if canceled_at else None,
        "trial_end": ts(trial_end) if trial_end else None,
        "metadata": metadata or {},
        "items": {"object": "list", "data": [item]},
    }

    start = ts(period_start) if period_start else None
    end = ts(period_end) if period_end else None
    if item_level_period:
        # 2025+ API versions report the period on the item only
        item["current_period_start"] = start
        item["current_period_end"] = end
    else:
        payload["current_period_start"] = start
        payload["current_period_end"] = end

    payload.update(extra)
    return payload


def invoice_payload(
    invoice_id: Optional[str] = "in_1",
    customer: str = CUSTOMER_ID,
    subscription: Any = SUBSCRIPTION_ID,
    attempt_count: int = 1,
    amount_paid: int = 2999,
    amount_due: int = 2999,
    currency: str = "usd",
    line_period: Optional[tuple] = None,
    product: str = PREMIUM_PRODUCT,
    next_payment_attempt: Optional[datetime] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """A Stripe invoice object, optionally with one subscription line."""
    lines = []
    if line_period is not None:
        start, end = line_period
        lines.append({
            "id": "il_1",
            "object": "line_item",
            "subscription": subscription if isinstance(subscription, str) else None,
            "period": {"start": ts(start), "end": ts(end)},
            "price": {"id": "price_1", "product": product},
        })

    payload: Dict[str, Any] = {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "subscription": subscription,
        "attempt_count": attempt_count,
        "amount_paid": amount_paid,
        "amount_due": amount_due,
        "currency": currency,
        "next_payment_attempt": ts(next_payment_attempt) if next_payment_attempt else None,
        "hosted_invoice_url": "https://invoice.stripe.com/i/test",
        "lines": {"object": "list", "data": lines},
    }
    payload.update(extra)
    return payload


def customer_payload(
    customer_id: str = CUSTOMER_ID,
    email: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    deleted: bool = False,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": customer_id,
        "object": "customer",
        "email": email,
        "metadata": metadata or {},
    }
    if deleted:
        payload["deleted"] = True
    return payload


def checkout_payload(
    session_id: str = "cs_1",
    customer: Optional[str] = CUSTOMER_ID,
    subscription: Any = None,
    mode: str = "subscription",
    email: Optional[str] = None,
    client_reference_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """A completed Checkout Session; pass subscription_payload() to expand it."""
    return {
        "id": session_id,
        "object": "checkout.session",
        "mode": mode,
        "customer": customer,
        "subscription": subscription,
        "client_reference_id": client_reference_id,
        "customer_details": {"email": email},
        "payment_status": "paid",
        "metadata": metadata or {},
    }


def raw_event(
    event_type: str,
    obj: Dict[str, Any],
    occurred_at: datetime = BASE_TIME,
    event_id: Optional[str] = None,
    previous_attributes: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """A Stripe event envelope as delivered to the webhook endpoint."""
    data: Dict[str, Any] = {"object": obj}
    if previous_attributes is not None:
        data["previous_attributes"] = previous_attributes
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "created": ts(occurred_at),
        "livemode": False,
        "data": data,
    }


def typed_event(event_type: str, obj: Dict[str, Any], **kwargs: Any) -> BillingEventRecord:
    return parse_event(raw_event(event_type, obj, **kwargs))


def stripe_signature(payload: bytes, secret: str, timestamp: int) -> str:
    """Stripe-Signature header value for a payload."""
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def signed_body(event: Dict[str, Any], secret: str, timestamp: int):
    """Encoded body and matching signature header."""
    body = json.dumps(event).encode("utf-8")
    return body, stripe_signature(body, secret, timestamp)
