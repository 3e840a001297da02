"""
Stripe webhook endpoint for billing events.

SECURITY: All webhooks MUST verify the Stripe-Signature header before processing.
Verification uses stripe.Webhook.construct_event with the endpoint secret and
a five-minute timestamp tolerance.

Response codes drive Stripe's retry behaviour:
- 200: processed, duplicate, ignored, or permanently rejected (no retry)
- 500: transient failure (Stripe retries with backoff)

Documentation: https://docs.stripe.com/webhooks#verify-events
"""

import json
import logging
import os
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from tradersutopia.database.session import get_db_session, get_session_factory
from tradersutopia.integrations.stripe.billing_client import get_billing_client
from tradersutopia.services.billing_webhook_handler import StripeWebhookHandler
from tradersutopia.services.notification_service import NotificationService
from tradersutopia.services.subscription_reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

SIGNATURE_TOLERANCE_SECONDS = 300


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    processed: bool = False
    message: str = "Webhook processed"
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


def verify_webhook_body(payload: bytes, signature_header: str, secret: str) -> dict:
    """
    Verify a signed webhook body and decode it.

    Args:
        payload: Raw request body bytes
        signature_header: Stripe-Signature header value
        secret: Webhook endpoint secret (whsec_...)

    Returns:
        The decoded event object

    Raises:
        HTTPException: 400 if the signature, timestamp or body is invalid
    """
    try:
        stripe.Webhook.construct_event(
            payload, signature_header, secret, tolerance=SIGNATURE_TOLERANCE_SECONDS
        )
    except stripe.SignatureVerificationError as e:
        logger.warning("Invalid Stripe webhook signature", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature"
        )
    except ValueError as e:
        logger.error("Invalid JSON in webhook body", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON body"
        )

    # The raw dict, not the SDK object, so parsing and hashing see exactly what Stripe sent
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body must be a JSON object"
        )
    return data


async def get_verified_webhook_body(request: Request) -> dict:
    """
    Get and verify the webhook body.

    Raises:
        HTTPException: If verification fails
    """
    signature_header = request.headers.get("Stripe-Signature")
    if not signature_header:
        logger.warning("Missing Stripe-Signature header in webhook")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature"
        )

    secret = os.getenv("STRIPE_WEBHOOK_SECRET")
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not configured"
        )

    body = await request.body()
    return verify_webhook_body(body, signature_header, secret)


def get_stripe_webhook_handler(
    db: Session = Depends(get_db_session),
) -> StripeWebhookHandler:
    """Build a handler bound to the request's session."""
    return StripeWebhookHandler(
        db,
        reconciler=SubscriptionReconciler(db, billing_client=get_billing_client()),
        notifier=NotificationService(get_session_factory()),
    )


@router.post("/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    handler: StripeWebhookHandler = Depends(get_stripe_webhook_handler),
) -> WebhookResponse:
    """Receive a Stripe billing event."""
    payload = await get_verified_webhook_body(request)
    result = await handler.handle_event(payload)

    if result.retryable:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed - retry later"
        )

    return WebhookResponse(
        received=True,
        processed=result.processed,
        message=result.message,
        skipped_reason=result.skipped_reason,
        error=result.error,
    )
