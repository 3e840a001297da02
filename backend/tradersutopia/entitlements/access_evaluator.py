"""
Access evaluator - pure derivation of premium access.

Priority order (first match wins):
1. Admin account                                   -> admin_bypass
2. ACTIVE, inside window, allowed product          -> active
3. ACTIVE, inside window, product not allowed      -> invalid_product
4. CANCELLED (or customer deleted)                 -> cancelled
5. ACTIVE with lapsed/missing window, or EXPIRED   -> expired
6. Anything else                                   -> none

The time window is always re-checked here; a status left ACTIVE by a missed
webhook never grants access past current_period_end.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from tradersutopia.config.billing_config import BillingConfig
from tradersutopia.models.base import ensure_utc
from tradersutopia.models.subscription import Subscription, SubscriptionStatus


class AccessReason(str, Enum):
    """Why access was granted or denied."""
    ADMIN_BYPASS = "admin_bypass"
    ACTIVE = "active"
    INVALID_PRODUCT = "invalid_product"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    NONE = "none"


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The slice of canonical state the evaluator needs."""
    status: str
    product_ref: Optional[str] = None
    current_period_end: Optional[datetime] = None
    customer_deleted: bool = False

    @classmethod
    def from_model(cls, subscription: Subscription) -> "SubscriptionSnapshot":
        return cls(
            status=subscription.status,
            product_ref=subscription.product_ref,
            current_period_end=ensure_utc(subscription.current_period_end),
            customer_deleted=subscription.is_customer_deleted,
        )


@dataclass(frozen=True)
class AccessDecision:
    """Cacheable access decision for one account."""
    account_id: str
    has_access: bool
    reason: AccessReason
    evaluated_at: datetime
    expires_at: Optional[datetime] = None
    product_ref: Optional[str] = None
    current_period_end: Optional[datetime] = None

    def with_expiry(self, expires_at: Optional[datetime]) -> "AccessDecision":
        return replace(self, expires_at=expires_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "has_access": self.has_access,
            "reason": self.reason.value,
            "evaluated_at": self.evaluated_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "product_ref": self.product_ref,
            "current_period_end": (
                self.current_period_end.isoformat() if self.current_period_end else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccessDecision":
        def _dt(value: Optional[str]) -> Optional[datetime]:
            return ensure_utc(datetime.fromisoformat(value)) if value else None

        return cls(
            account_id=data["account_id"],
            has_access=bool(data["has_access"]),
            reason=AccessReason(data["reason"]),
            evaluated_at=_dt(data["evaluated_at"]),
            expires_at=_dt(data.get("expires_at")),
            product_ref=data.get("product_ref"),
            current_period_end=_dt(data.get("current_period_end")),
        )


def evaluate(
    snapshot: Optional[SubscriptionSnapshot],
    is_admin: bool,
    now: datetime,
    config: BillingConfig,
    account_id: str = "",
) -> AccessDecision:
    """Derive an AccessDecision. Pure: no I/O, no clock reads."""
    now = ensure_utc(now)

    def decide(has_access: bool, reason: AccessReason) -> AccessDecision:
        return AccessDecision(
            account_id=account_id,
            has_access=has_access,
            reason=reason,
            evaluated_at=now,
            product_ref=snapshot.product_ref if snapshot else None,
            current_period_end=snapshot.current_period_end if snapshot else None,
        )

    if is_admin:
        return decide(True, AccessReason.ADMIN_BYPASS)

    if snapshot is None:
        return decide(False, AccessReason.NONE)

    if snapshot.customer_deleted:
        return decide(False, AccessReason.CANCELLED)

    period_end = ensure_utc(snapshot.current_period_end)
    in_window = period_end is not None and now < period_end

    if snapshot.status == SubscriptionStatus.ACTIVE.value and in_window:
        if config.is_product_allowed(snapshot.product_ref):
            return decide(True, AccessReason.ACTIVE)
        return decide(False, AccessReason.INVALID_PRODUCT)

    if snapshot.status == SubscriptionStatus.CANCELLED.value:
        if (
            config.cancelled_grace_until_period_end
            and in_window
            and config.is_product_allowed(snapshot.product_ref)
        ):
            return decide(True, AccessReason.ACTIVE)
        return decide(False, AccessReason.CANCELLED)

    if snapshot.status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.EXPIRED.value):
        return decide(False, AccessReason.EXPIRED)

    return decide(False, AccessReason.NONE)
