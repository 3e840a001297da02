"""
Subscription access routes.

GET /access returns the premium access decision for the authenticated account.
POST /sync rebuilds that account's subscription from Stripe and re-evaluates.
The account id is attached to request.state by the upstream auth middleware;
it is never taken from client input.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from tradersutopia.database.session import get_db_session
from tradersutopia.entitlements.access_evaluator import AccessDecision
from tradersutopia.entitlements.service import AccessService
from tradersutopia.integrations.stripe.billing_client import get_billing_client
from tradersutopia.models.account import Account
from tradersutopia.services.billing_errors import BillingError
from tradersutopia.services.subscription_reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscription", tags=["subscription"])


class AccessResponse(BaseModel):
    """Access decision returned to the client."""
    has_access: bool
    reason: str
    expires_at: Optional[datetime] = None
    product_ref: Optional[str] = None
    current_period_end: Optional[datetime] = None

    @classmethod
    def from_decision(cls, decision: AccessDecision) -> "AccessResponse":
        return cls(
            has_access=decision.has_access,
            reason=decision.reason.value,
            expires_at=decision.expires_at,
            product_ref=decision.product_ref,
            current_period_end=decision.current_period_end,
        )


class SyncResponse(BaseModel):
    """Result of a Stripe sync for the current account."""
    synced: bool
    message: str
    access: AccessResponse


def get_current_account_id(request: Request) -> str:
    """Authenticated account id set by the auth middleware."""
    account_id = getattr(request.state, "account_id", None)
    if not account_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )
    return account_id


def get_access_service(db: Session = Depends(get_db_session)) -> AccessService:
    return AccessService(db)


def get_subscription_reconciler(db: Session = Depends(get_db_session)) -> SubscriptionReconciler:
    return SubscriptionReconciler(db, billing_client=get_billing_client())


@router.get("/access", response_model=AccessResponse)
async def get_subscription_access(
    account_id: str = Depends(get_current_account_id),
    access_service: AccessService = Depends(get_access_service),
) -> AccessResponse:
    """Check premium access for the current account."""
    decision = access_service.evaluate(account_id)
    return AccessResponse.from_decision(decision)


@router.post("/sync", response_model=SyncResponse)
async def sync_subscription(
    account_id: str = Depends(get_current_account_id),
    db: Session = Depends(get_db_session),
    reconciler: SubscriptionReconciler = Depends(get_subscription_reconciler),
    access_service: AccessService = Depends(get_access_service),
) -> SyncResponse:
    """Re-read the current account's subscription from Stripe."""
    if reconciler.billing_client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe sync not configured"
        )

    account = db.get(Account, account_id)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found"
        )

    try:
        outcome = await reconciler.sync_account(account)
        db.commit()
    except BillingError as e:
        db.rollback()
        logger.error("Subscription sync failed", extra={
            "account_id": account_id,
            "error_type": type(e).__name__,
            "error": e.message,
        })
        raise HTTPException(
            status_code=(
                status.HTTP_503_SERVICE_UNAVAILABLE if e.retryable
                else status.HTTP_502_BAD_GATEWAY
            ),
            detail="Subscription sync failed"
        )
    except Exception:
        db.rollback()
        raise

    for affected in sorted(outcome.invalidate_account_ids):
        access_service.invalidate(affected, reason="subscription_sync")

    decision = access_service.evaluate(account_id)
    return SyncResponse(
        synced=outcome.applied,
        message=outcome.message,
        access=AccessResponse.from_decision(decision),
    )
