"""Typed Stripe webhook events.

parse_event() turns a verified Stripe event dict into one of a closed set of
variants. The reconciler dispatches on the variant type, so every handled
event type has exactly one handler and one payload shape.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union


CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


def stripe_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None


def _user_id_from(obj: Dict[str, Any]) -> Optional[str]:
    metadata = obj.get("metadata") or {}
    return metadata.get("user_id") or obj.get("client_reference_id") or None


@dataclass(frozen=True)
class CheckoutSessionCompleted:
    event_id: str
    event_type: str
    session_id: Optional[str]
    mode: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    user_id: Optional[str]
    payment_status: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionChanged:
    """customer.subscription.created / customer.subscription.updated"""
    event_id: str
    event_type: str
    subscription_id: Optional[str]
    customer_id: Optional[str]
    status: Optional[str]
    user_id: Optional[str]
    subscription: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    event_type: str
    subscription_id: Optional[str]
    customer_id: Optional[str]
    user_id: Optional[str]


@dataclass(frozen=True)
class InvoiceObserved:
    """invoice.paid / invoice.payment_failed - logged, never drives entitlement."""
    event_id: str
    event_type: str
    invoice_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: str
    event_type: str


WebhookEvent = Union[
    CheckoutSessionCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoiceObserved,
    UnhandledEvent,
]


def parse_event(event: Dict[str, Any]) -> WebhookEvent:
    event_id = event.get("id")
    event_type = event.get("type") or ""
    if not event_id:
        raise ValueError("Stripe event has no id")

    obj = (event.get("data") or {}).get("object") or {}

    if event_type == CHECKOUT_SESSION_COMPLETED:
        return CheckoutSessionCompleted(
            event_id=event_id,
            event_type=event_type,
            session_id=obj.get("id"),
            mode=obj.get("mode"),
            customer_id=stripe_id(obj.get("customer")),
            subscription_id=stripe_id(obj.get("subscription")),
            user_id=_user_id_from(obj),
            payment_status=obj.get("payment_status"),
        )

    if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        return SubscriptionChanged(
            event_id=event_id,
            event_type=event_type,
            subscription_id=obj.get("id"),
            customer_id=stripe_id(obj.get("customer")),
            status=obj.get("status"),
            user_id=_user_id_from(obj),
            subscription=obj,
        )

    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(
            event_id=event_id,
            event_type=event_type,
            subscription_id=obj.get("id"),
            customer_id=stripe_id(obj.get("customer")),
            user_id=_user_id_from(obj),
        )

    if event_type in (INVOICE_PAID, INVOICE_PAYMENT_FAILED):
        return InvoiceObserved(
            event_id=event_id,
            event_type=event_type,
            invoice_id=obj.get("id"),
            customer_id=stripe_id(obj.get("customer")),
            subscription_id=stripe_id(obj.get("subscription")),
        )

    return UnhandledEvent(event_id=event_id, event_type=event_type)
