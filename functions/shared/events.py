"""
Typed webhook events.

A verified provider event is parsed once into one of a closed set of event
classes, keyed by ``EventType``. Handlers receive the typed event instead of
reaching into the raw payload themselves.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from shared.constants import PROVIDER_EVENT_TYPES


class EventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    UNRECOGNIZED = "unrecognized"


RECOGNIZED_EVENT_TYPES = frozenset(t for t in EventType if t is not EventType.UNRECOGNIZED)


@dataclass(frozen=True)
class BillingEvent:
    """Fields common to every provider event."""

    event_type: ClassVar[EventType]

    event_id: str
    provider_type: str
    payload: dict = field(repr=False)
    created: int | None = None
    livemode: bool = False

    @property
    def subscription_id(self) -> str | None:
        return None

    @property
    def customer_id(self) -> str | None:
        return as_id(self.payload.get("customer"))


@dataclass(frozen=True)
class CheckoutCompleted(BillingEvent):
    event_type: ClassVar[EventType] = EventType.CHECKOUT_COMPLETED

    @property
    def metadata(self) -> dict:
        return self.payload.get("metadata") or {}

    @property
    def user_id(self) -> str | None:
        return self.metadata.get("userId") or None

    @property
    def tier_id(self) -> str | None:
        return self.metadata.get("tierId") or None

    @property
    def subscription_id(self) -> str | None:
        return as_id(self.payload.get("subscription"))

    @property
    def customer_email(self) -> str | None:
        details = self.payload.get("customer_details") or {}
        return self.payload.get("customer_email") or details.get("email")


@dataclass(frozen=True)
class _InvoiceEvent(BillingEvent):
    @property
    def invoice_id(self) -> str | None:
        return self.payload.get("id")

    @property
    def subscription_id(self) -> str | None:
        return invoice_subscription_id(self.payload)


@dataclass(frozen=True)
class InvoicePaymentSucceeded(_InvoiceEvent):
    event_type: ClassVar[EventType] = EventType.INVOICE_PAYMENT_SUCCEEDED


@dataclass(frozen=True)
class InvoicePaymentFailed(_InvoiceEvent):
    event_type: ClassVar[EventType] = EventType.INVOICE_PAYMENT_FAILED

    @property
    def attempt_count(self) -> int:
        return int(self.payload.get("attempt_count") or 1)


@dataclass(frozen=True)
class _SubscriptionEvent(BillingEvent):
    """Events whose payload is the subscription object itself."""

    @property
    def subscription_id(self) -> str | None:
        return self.payload.get("id")

    @property
    def metadata(self) -> dict:
        return self.payload.get("metadata") or {}

    @property
    def user_id(self) -> str | None:
        return self.metadata.get("userId") or None

    @property
    def provider_status(self) -> str | None:
        return self.payload.get("status")


@dataclass(frozen=True)
class SubscriptionUpdated(_SubscriptionEvent):
    event_type: ClassVar[EventType] = EventType.SUBSCRIPTION_UPDATED


@dataclass(frozen=True)
class SubscriptionDeleted(_SubscriptionEvent):
    event_type: ClassVar[EventType] = EventType.SUBSCRIPTION_DELETED


@dataclass(frozen=True)
class UnrecognizedEvent(BillingEvent):
    event_type: ClassVar[EventType] = EventType.UNRECOGNIZED

    @property
    def subscription_id(self) -> str | None:
        return as_id(self.payload.get("subscription"))


EVENT_CLASSES: dict[EventType, type[BillingEvent]] = {
    EventType.CHECKOUT_COMPLETED: CheckoutCompleted,
    EventType.INVOICE_PAYMENT_SUCCEEDED: InvoicePaymentSucceeded,
    EventType.INVOICE_PAYMENT_FAILED: InvoicePaymentFailed,
    EventType.SUBSCRIPTION_UPDATED: SubscriptionUpdated,
    EventType.SUBSCRIPTION_DELETED: SubscriptionDeleted,
    EventType.UNRECOGNIZED: UnrecognizedEvent,
}


def parse_event(raw: dict[str, Any]) -> BillingEvent:
    """Build a typed event from a verified provider event.

    Raises:
        ValueError: if the event has no id or type, or its data is not an object.
    """
    if not isinstance(raw, dict):
        raise ValueError("Event is not an object")
    event_id = raw.get("id")
    provider_type = raw.get("type")
    if not event_id or not provider_type:
        raise ValueError("Event is missing id or type")

    data = raw.get("data") or {}
    if not isinstance(data, dict):
        raise ValueError("Event data is not an object")
    data_object = data.get("object") or {}
    if not isinstance(data_object, dict):
        raise ValueError("Event data.object is not an object")
    local_name = PROVIDER_EVENT_TYPES.get(provider_type, EventType.UNRECOGNIZED.value)
    event_cls = EVENT_CLASSES[EventType(local_name)]

    return event_cls(
        event_id=event_id,
        provider_type=provider_type,
        payload=dict(data_object),
        created=raw.get("created"),
        livemode=bool(raw.get("livemode", False)),
    )


def invoice_subscription_id(invoice: dict) -> str | None:
    """Subscription id of an invoice.

    Newer API versions moved it under parent.subscription_details.
    """
    subscription = as_id(invoice.get("subscription"))
    if subscription:
        return subscription
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return as_id(details.get("subscription"))


def period_bounds(subscription: dict) -> tuple[int | None, int | None]:
    """Current period (start, end) in epoch seconds.

    Newer API versions carry the period on the subscription item rather than
    the subscription itself; the first item is used then.
    """
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is not None and end is not None:
        return start, end

    items = (subscription.get("items") or {}).get("data") or []
    if items:
        item = items[0]
        start = start if start is not None else item.get("current_period_start")
        end = end if end is not None else item.get("current_period_end")
    return start, end


def as_id(value: Any) -> str | None:
    """Expanded objects carry their id in a dict; plain references are strings."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None
