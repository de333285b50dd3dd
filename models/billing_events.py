"""
Typed view of the Stripe webhook events the billing reconciler acts on.

The signature is verified with the Stripe SDK first; the raw JSON body is then
parsed here into exactly one variant. Event types we do not act on become
``Unhandled`` so the endpoint can still acknowledge them.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel


def from_unix(ts: Optional[int]) -> Optional[datetime]:
    """Stripe timestamps are unix seconds."""
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def _id_of(value: Any) -> Optional[str]:
    # Expandable Stripe fields arrive either as an id string or an object
    if isinstance(value, dict):
        return value.get("id")
    return value or None


class CheckoutCompleted(BaseModel):
    session_id: str
    mode: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    user_id: Optional[str] = None


class SubscriptionUpdated(BaseModel):
    subscription_id: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None


class SubscriptionDeleted(BaseModel):
    subscription_id: str


class InvoicePaymentSucceeded(BaseModel):
    invoice_id: str
    subscription_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount: int = 0
    currency: Optional[str] = None
    description: Optional[str] = None


class InvoicePaymentFailed(BaseModel):
    invoice_id: str
    subscription_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount: int = 0
    currency: Optional[str] = None


class Unhandled(BaseModel):
    event_type: str


BillingEvent = Union[
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    Unhandled,
]


def _subscription_period(obj: Dict[str, Any], key: str) -> Optional[datetime]:
    # Newer API versions moved the period bounds onto the subscription items
    if obj.get(key) is not None:
        return from_unix(obj.get(key))
    items = (obj.get("items") or {}).get("data") or []
    if items and items[0].get(key) is not None:
        return from_unix(items[0].get(key))
    return None


def _invoice_subscription_id(obj: Dict[str, Any]) -> Optional[str]:
    sub = _id_of(obj.get("subscription"))
    if sub:
        return sub
    details = ((obj.get("parent") or {}).get("subscription_details") or {})
    return _id_of(details.get("subscription"))


def parse_billing_event(payload: Dict[str, Any]) -> BillingEvent:
    """Map a verified Stripe event payload onto its typed variant."""
    event_type = str(payload.get("type") or "")
    obj: Dict[str, Any] = ((payload.get("data") or {}).get("object") or {})

    if event_type == "checkout.session.completed":
        metadata = obj.get("metadata") or {}
        return CheckoutCompleted(
            session_id=obj.get("id") or "",
            mode=obj.get("mode"),
            customer_id=_id_of(obj.get("customer")),
            subscription_id=_id_of(obj.get("subscription")),
            user_id=metadata.get("userId") or obj.get("client_reference_id"),
        )

    if event_type == "customer.subscription.updated":
        return SubscriptionUpdated(
            subscription_id=obj.get("id") or "",
            status=obj.get("status") or "",
            current_period_start=_subscription_period(obj, "current_period_start"),
            current_period_end=_subscription_period(obj, "current_period_end"),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            canceled_at=from_unix(obj.get("canceled_at")),
        )

    if event_type == "customer.subscription.deleted":
        return SubscriptionDeleted(subscription_id=obj.get("id") or "")

    if event_type == "invoice.payment_succeeded":
        lines = (obj.get("lines") or {}).get("data") or []
        return InvoicePaymentSucceeded(
            invoice_id=obj.get("id") or "",
            subscription_id=_invoice_subscription_id(obj),
            payment_intent_id=_id_of(obj.get("payment_intent")),
            amount=int(obj.get("amount_paid") or 0),
            currency=obj.get("currency"),
            description=(lines[0].get("description") if lines else None) or "Pro Subscription",
        )

    if event_type == "invoice.payment_failed":
        return InvoicePaymentFailed(
            invoice_id=obj.get("id") or "",
            subscription_id=_invoice_subscription_id(obj),
            payment_intent_id=_id_of(obj.get("payment_intent")),
            amount=int(obj.get("amount_due") or 0),
            currency=obj.get("currency"),
        )

    return Unhandled(event_type=event_type)
