"""
Typed Stripe webhook event records.

Stripe payloads are loosely typed JSON whose shape drifts across API
versions. Everything is validated here, at the ingest boundary, into
event-type-specific records; the reconciler never sees raw dicts.

Anything that does not match a known shape raises BillingValidationError.
Unknown event *types* are not errors: they parse into an UnknownEvent so
the handler can acknowledge them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from tradersutopia.services.billing_errors import BillingValidationError


# Event type catalog
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
SUBSCRIPTION_PAUSED = "customer.subscription.paused"
SUBSCRIPTION_RESUMED = "customer.subscription.resumed"
SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"

INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_PAYMENT_ACTION_REQUIRED = "invoice.payment_action_required"
INVOICE_UPCOMING = "invoice.upcoming"
INVOICE_CREATED = "invoice.created"
INVOICE_FINALIZED = "invoice.finalized"

CUSTOMER_CREATED = "customer.created"
CUSTOMER_UPDATED = "customer.updated"
CUSTOMER_DELETED = "customer.deleted"

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"

SUBSCRIPTION_EVENT_TYPES = frozenset({
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_PAUSED,
    SUBSCRIPTION_RESUMED,
    SUBSCRIPTION_TRIAL_WILL_END,
})
INVOICE_EVENT_TYPES = frozenset({
    INVOICE_PAYMENT_SUCCEEDED,
    INVOICE_PAID,
    INVOICE_PAYMENT_FAILED,
    INVOICE_PAYMENT_ACTION_REQUIRED,
    INVOICE_UPCOMING,
    INVOICE_CREATED,
    INVOICE_FINALIZED,
})
CUSTOMER_EVENT_TYPES = frozenset({CUSTOMER_CREATED, CUSTOMER_UPDATED, CUSTOMER_DELETED})
CHECKOUT_EVENT_TYPES = frozenset({CHECKOUT_SESSION_COMPLETED})


# Last second of year 9999, the largest value datetime can represent
MAX_UNIX_TIMESTAMP = 253402300799

# Unix seconds as Stripe sends them; anything outside datetime's range is malformed
UnixTimestamp = Annotated[int, Field(ge=0, le=MAX_UNIX_TIMESTAMP)]


def from_unix(value: Optional[int]) -> Optional[datetime]:
    """
    Convert a Stripe unix timestamp to an aware UTC datetime.

    Raises:
        BillingValidationError: If the value is not a representable timestamp
    """
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise BillingValidationError(f"Invalid unix timestamp: {value!r}") from e


def _id_of(value: Any) -> Any:
    """Stripe fields are either an id string or an expanded object with an id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


class StripeObject(BaseModel):
    """Base for Stripe objects. Unknown fields are kept for forward compatibility."""

    model_config = ConfigDict(extra="allow")


class StripePrice(StripeObject):
    id: Optional[str] = None
    product: Optional[str] = None
    unit_amount: Optional[int] = None
    currency: Optional[str] = None
    recurring: Optional[Dict[str, Any]] = None

    @model_validator(mode="before")
    @classmethod
    def _collapse_product(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("product"), dict):
            data = {**data, "product": _id_of(data["product"])}
        return data


class StripeSubscriptionItem(StripeObject):
    id: Optional[str] = None
    price: Optional[StripePrice] = None
    current_period_start: Optional[UnixTimestamp] = None
    current_period_end: Optional[UnixTimestamp] = None


class StripeSubscriptionItemList(StripeObject):
    data: List[StripeSubscriptionItem] = Field(default_factory=list)


class StripeSubscription(StripeObject):
    id: str = Field(min_length=1)
    customer: str = Field(min_length=1)
    customer_email: Optional[str] = None
    status: str
    created: Optional[UnixTimestamp] = None
    current_period_start: Optional[UnixTimestamp] = None
    current_period_end: Optional[UnixTimestamp] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[UnixTimestamp] = None
    trial_end: Optional[UnixTimestamp] = None
    items: StripeSubscriptionItemList = Field(default_factory=StripeSubscriptionItemList)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collapse_customer(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("customer"), dict):
            customer = data["customer"]
            data = {
                **data,
                "customer": customer.get("id"),
                "customer_email": data.get("customer_email") or customer.get("email"),
            }
        return data

    @property
    def first_item(self) -> Optional[StripeSubscriptionItem]:
        return self.items.data[0] if self.items.data else None

    @property
    def product_ref(self) -> Optional[str]:
        item = self.first_item
        if item and item.price:
            return item.price.product
        return None

    @property
    def price_ref(self) -> Optional[str]:
        item = self.first_item
        if item and item.price:
            return item.price.id
        return None


class StripePeriod(StripeObject):
    start: Optional[UnixTimestamp] = None
    end: Optional[UnixTimestamp] = None


class StripeInvoiceLine(StripeObject):
    id: Optional[str] = None
    period: Optional[StripePeriod] = None
    price: Optional[StripePrice] = None
    subscription: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _collapse_refs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("subscription"), dict):
            data["subscription"] = _id_of(data["subscription"])
        # Newer API versions nest the price under pricing.price_details
        if data.get("price") is None:
            details = (data.get("pricing") or {}).get("price_details") or {}
            if details.get("product"):
                data["price"] = {"id": details.get("price"), "product": details["product"]}
        return data


class StripeInvoiceLineList(StripeObject):
    data: List[StripeInvoiceLine] = Field(default_factory=list)


class StripeInvoice(StripeObject):
    # invoice.upcoming objects have no id
    id: Optional[str] = None
    customer: str = Field(min_length=1)
    subscription: Optional[str] = None
    subscription_object: Optional[StripeSubscription] = None
    status: Optional[str] = None
    paid: Optional[bool] = None
    attempt_count: int = 0
    next_payment_attempt: Optional[UnixTimestamp] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    period_end: Optional[UnixTimestamp] = None
    lines: StripeInvoiceLineList = Field(default_factory=StripeInvoiceLineList)

    @model_validator(mode="before")
    @classmethod
    def _normalize_subscription(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("customer"), dict):
            data["customer"] = _id_of(data["customer"])

        subscription = data.get("subscription")
        if isinstance(subscription, dict):
            data["subscription_object"] = subscription
            data["subscription"] = subscription.get("id")
        elif subscription is None:
            # 2025+ API versions moved it under parent.subscription_details
            details = (data.get("parent") or {}).get("subscription_details") or {}
            nested = details.get("subscription")
            if isinstance(nested, dict):
                data["subscription_object"] = nested
                data["subscription"] = nested.get("id")
            elif nested:
                data["subscription"] = nested
        return data

    @property
    def first_line(self) -> Optional[StripeInvoiceLine]:
        return self.lines.data[0] if self.lines.data else None

    @property
    def is_paid(self) -> bool:
        if self.paid is not None:
            return self.paid
        return self.status == "paid"


class StripeCustomer(StripeObject):
    id: str = Field(min_length=1)
    email: Optional[str] = None
    name: Optional[str] = None
    deleted: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StripeCheckoutSession(StripeObject):
    id: str = Field(min_length=1)
    mode: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    subscription_object: Optional[StripeSubscription] = None
    client_reference_id: Optional[str] = None
    customer_email: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("customer"), dict):
            customer = data["customer"]
            data["customer"] = customer.get("id")
            data.setdefault("customer_email", customer.get("email"))
        if isinstance(data.get("subscription"), dict):
            data["subscription_object"] = data["subscription"]
            data["subscription"] = data["subscription"].get("id")
        if not data.get("customer_email"):
            details = data.get("customer_details") or {}
            data["customer_email"] = details.get("email")
        return data


class StripeEventData(StripeObject):
    object: Dict[str, Any]
    previous_attributes: Optional[Dict[str, Any]] = None


class StripeEventEnvelope(StripeObject):
    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: UnixTimestamp
    data: StripeEventData


# =============================================================================
# Typed event records (tagged by category)
# =============================================================================


@dataclass(frozen=True)
class BillingEventRecord:
    """Common envelope for every billing event."""

    event_id: str
    event_type: str
    occurred_at: datetime
    category: str = "unknown"

    @property
    def customer_ref(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class SubscriptionEvent(BillingEventRecord):
    subscription: Optional[StripeSubscription] = None
    previous_attributes: Dict[str, Any] = field(default_factory=dict)
    category: str = "subscription"

    @property
    def customer_ref(self) -> Optional[str]:
        return self.subscription.customer if self.subscription else None


@dataclass(frozen=True)
class InvoiceEvent(BillingEventRecord):
    invoice: Optional[StripeInvoice] = None
    category: str = "invoice"

    @property
    def customer_ref(self) -> Optional[str]:
        return self.invoice.customer if self.invoice else None


@dataclass(frozen=True)
class CustomerEvent(BillingEventRecord):
    customer: Optional[StripeCustomer] = None
    previous_attributes: Dict[str, Any] = field(default_factory=dict)
    category: str = "customer"

    @property
    def customer_ref(self) -> Optional[str]:
        return self.customer.id if self.customer else None


@dataclass(frozen=True)
class CheckoutEvent(BillingEventRecord):
    session: Optional[StripeCheckoutSession] = None
    category: str = "checkout"

    @property
    def customer_ref(self) -> Optional[str]:
        if not self.session:
            return None
        if self.session.customer:
            return self.session.customer
        if self.session.subscription_object:
            return self.session.subscription_object.customer
        return None


@dataclass(frozen=True)
class UnknownEvent(BillingEventRecord):
    category: str = "unknown"


def _validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    fields = [".".join(str(p) for p in err.get("loc", ())) for err in errors]
    return f"invalid fields: {', '.join(fields) or 'unknown'}"


def build_event(
    event_id: str,
    event_type: str,
    payload: Dict[str, Any],
    occurred_at: datetime,
    previous_attributes: Optional[Dict[str, Any]] = None,
) -> BillingEventRecord:
    """
    Build a typed event record from its parts.

    Raises:
        BillingValidationError: If the object does not match the event type's shape
    """
    if not event_id:
        raise BillingValidationError("Event id is required")
    if not event_type:
        raise BillingValidationError("Event type is required", event_id=event_id)
    if not isinstance(payload, dict):
        raise BillingValidationError("Event payload must be an object", event_id=event_id)
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)

    previous = previous_attributes or {}

    try:
        if event_type in SUBSCRIPTION_EVENT_TYPES:
            return SubscriptionEvent(
                event_id=event_id,
                event_type=event_type,
                occurred_at=occurred_at,
                subscription=StripeSubscription.model_validate(payload),
                previous_attributes=previous,
            )
        if event_type in INVOICE_EVENT_TYPES:
            return InvoiceEvent(
                event_id=event_id,
                event_type=event_type,
                occurred_at=occurred_at,
                invoice=StripeInvoice.model_validate(payload),
            )
        if event_type in CUSTOMER_EVENT_TYPES:
            return CustomerEvent(
                event_id=event_id,
                event_type=event_type,
                occurred_at=occurred_at,
                customer=StripeCustomer.model_validate(payload),
                previous_attributes=previous,
            )
        if event_type in CHECKOUT_EVENT_TYPES:
            return CheckoutEvent(
                event_id=event_id,
                event_type=event_type,
                occurred_at=occurred_at,
                session=StripeCheckoutSession.model_validate(payload),
            )
    except ValidationError as e:
        raise BillingValidationError(
            f"Malformed {event_type} payload: {_validation_message(e)}",
            event_id=event_id,
        ) from e

    return UnknownEvent(event_id=event_id, event_type=event_type, occurred_at=occurred_at)


def parse_event(raw: Dict[str, Any]) -> BillingEventRecord:
    """
    Parse a raw Stripe event (as delivered to the webhook endpoint).

    Raises:
        BillingValidationError: If the envelope or its object is malformed
    """
    if not isinstance(raw, dict):
        raise BillingValidationError("Event must be a JSON object")

    try:
        envelope = StripeEventEnvelope.model_validate(raw)
    except ValidationError as e:
        event_id = raw.get("id") if isinstance(raw.get("id"), str) else None
        raise BillingValidationError(
            f"Malformed event envelope: {_validation_message(e)}",
            event_id=event_id,
        ) from e

    return build_event(
        event_id=envelope.id,
        event_type=envelope.type,
        payload=envelope.data.object,
        occurred_at=from_unix(envelope.created),
        previous_attributes=envelope.data.previous_attributes,
    )
