#!/usr/bin/env python3
"""
Script to test Stripe webhooks locally.

Usage:
    # Start your server first (with STRIPE_WEBHOOK_SECRET set)
    uvicorn main:app --reload

    # Then run this script
    python scripts/test_webhook.py --event checkout_completed
    python scripts/test_webhook.py --event subscription_deleted
    python scripts/test_webhook.py --event payment_failed
"""

import argparse
import hmac
import hashlib
import json
import os
import time
import uuid

import httpx

# Default webhook secret for testing
DEFAULT_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
DEFAULT_BASE_URL = os.getenv("TEST_BASE_URL", "http://localhost:8000")
WEBHOOK_PATH = "/api/webhooks/stripe"

CUSTOMER_ID = "cus_test_local"
SUBSCRIPTION_ID = "sub_test_local"
PRODUCT_ID = os.getenv("TEST_PRODUCT_ID", "prod_test_premium")


def sign_payload(payload: bytes, secret: str, timestamp: int) -> str:
    """Build a Stripe-Signature header value for the payload."""
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def build_event(event_type: str, obj: dict) -> dict:
    return {
        "id": f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }


def subscription_object(status: str = "active", cancel_at_period_end: bool = False) -> dict:
    now = int(time.time())
    return {
        "id": SUBSCRIPTION_ID,
        "object": "subscription",
        "customer": CUSTOMER_ID,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "created": now,
        "current_period_start": now,
        "current_period_end": now + 30 * 24 * 3600,
        "items": {"data": [{"id": "si_test", "price": {"id": "price_test", "product": PRODUCT_ID}}]},
    }


def send_webhook(event: dict, signature: str = None):
    """Send a signed test webhook to the local server."""
    url = f"{DEFAULT_BASE_URL}{WEBHOOK_PATH}"
    payload_bytes = json.dumps(event).encode("utf-8")
    if signature is None:
        signature = sign_payload(payload_bytes, DEFAULT_SECRET, int(time.time()))

    headers = {
        "Content-Type": "application/json",
        "Stripe-Signature": signature,
    }

    print(f"\n{'='*60}")
    print(f"Sending webhook: {event.get('type')}")
    print(f"URL: {url}")
    print(f"Payload: {json.dumps(event, indent=2)}")
    print(f"{'='*60}\n")

    try:
        response = httpx.post(url, content=payload_bytes, headers=headers)
        print(f"Response Status: {response.status_code}")
        print(f"Response Body: {response.text}")
        return response
    except httpx.HTTPError as e:
        print(f"Error: {e}")
        return None


def test_checkout_completed():
    """Checkout completion with an expanded subscription."""
    session = {
        "id": "cs_test_local",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": CUSTOMER_ID,
        "subscription": subscription_object(),
        "customer_details": {"email": "trader@example.com"},
    }
    return send_webhook(build_event("checkout.session.completed", session))


def test_subscription_updated():
    """Cancel-at-period-end toggle."""
    return send_webhook(build_event(
        "customer.subscription.updated",
        subscription_object(cancel_at_period_end=True),
    ))


def test_subscription_deleted():
    return send_webhook(build_event(
        "customer.subscription.deleted",
        subscription_object(status="canceled"),
    ))


def test_payment_failed():
    invoice = {
        "id": "in_test_local",
        "object": "invoice",
        "customer": CUSTOMER_ID,
        "subscription": SUBSCRIPTION_ID,
        "attempt_count": 1,
        "amount_due": 2999,
        "currency": "usd",
        "next_payment_attempt": int(time.time()) + 3 * 24 * 3600,
    }
    return send_webhook(build_event("invoice.payment_failed", invoice))


def test_invalid_signature():
    """Test that invalid signatures are rejected."""
    print(f"\n{'='*60}")
    print("Testing INVALID signature (should be rejected)")
    print(f"{'='*60}\n")

    event = build_event("customer.subscription.updated", subscription_object())
    response = send_webhook(event, signature=f"t={int(time.time())},v1=deadbeef")
    if response is not None:
        if response.status_code == 400:
            print("\nCorrectly rejected invalid signature")
        else:
            print("\nWARNING: Invalid signature was NOT rejected")
    return response


EVENTS = {
    "checkout_completed": test_checkout_completed,
    "subscription_updated": test_subscription_updated,
    "subscription_deleted": test_subscription_deleted,
    "payment_failed": test_payment_failed,
    "invalid_signature": test_invalid_signature,
    "all": None,  # Special case
}


def main():
    global DEFAULT_SECRET, DEFAULT_BASE_URL

    parser = argparse.ArgumentParser(description="Test Stripe webhooks locally")
    parser.add_argument(
        "--event",
        choices=list(EVENTS.keys()),
        default="all",
        help="Which event to test (default: all)"
    )
    parser.add_argument(
        "--secret",
        default=DEFAULT_SECRET,
        help="Webhook secret (default: STRIPE_WEBHOOK_SECRET env var)"
    )
    parser.add_argument(
        "--base-url",
        default=DEFAULT_BASE_URL,
        help="Base URL of your server (default: http://localhost:8000)"
    )

    args = parser.parse_args()

    DEFAULT_SECRET = args.secret
    DEFAULT_BASE_URL = args.base_url

    if args.event == "all":
        print("\n" + "="*60)
        print("Running ALL webhook tests")
        print("="*60)
        for name, func in EVENTS.items():
            if func is not None:
                func()
    else:
        EVENTS[args.event]()


if __name__ == "__main__":
    main()
