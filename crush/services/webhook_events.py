"""Stripe event payloads -> the handful of fields the reconciler acts on."""
from dataclasses import dataclass
from datetime import datetime, timezone

from crush.models.base import utcnow
from crush.payments import PaymentGateway

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
PAYMENT_FAILED = "invoice.payment_failed"


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    created: datetime
    user_id: str
    session_id: str
    subscription_id: str
    period_end: datetime | None
    plan_id: str | None = None
    promo_code: str | None = None
    redemption_id: int | None = None


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: str
    created: datetime
    user_id: str
    subscription_id: str
    status: str
    period_end: datetime | None
    plan_id: str | None = None
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    created: datetime
    user_id: str
    subscription_id: str


@dataclass(frozen=True)
class PaymentFailed:
    event_id: str
    created: datetime
    user_id: str
    subscription_id: str


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: str
    event_type: str
    reason: str


WebhookEvent = CheckoutCompleted | SubscriptionUpdated | SubscriptionDeleted | PaymentFailed | UnhandledEvent


def _from_timestamp(value) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _object_id(value) -> str | None:
    """Stripe sends either an id string or the expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _int_or_none(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def subscription_period_end(subscription: dict) -> datetime | None:
    """current_period_end moved from the subscription to its items in newer API versions."""
    value = subscription.get("current_period_end")
    if value is None:
        items = (subscription.get("items") or {}).get("data") or []
        ends = [item.get("current_period_end") for item in items if item.get("current_period_end")]
        value = max(ends) if ends else None
    return _from_timestamp(value)


def _invoice_subscription(invoice: dict) -> tuple[str | None, dict]:
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    legacy = invoice.get("subscription_details") or {}
    subscription_id = _object_id(invoice.get("subscription")) or _object_id(details.get("subscription"))
    metadata = details.get("metadata") or legacy.get("metadata") or {}
    return subscription_id, metadata


def parse_event(raw: dict, gateway: PaymentGateway) -> WebhookEvent:
    """
    May call the gateway (checkout completion needs the subscription's period
    end; invoice events may need its metadata). Gateway errors propagate.
    """
    event_id = raw.get("id") or ""
    event_type = raw.get("type") or ""
    created = _from_timestamp(raw.get("created")) or utcnow()
    obj = (raw.get("data") or {}).get("object") or {}

    if event_type == CHECKOUT_COMPLETED:
        metadata = obj.get("metadata") or {}
        user_id = metadata.get("userId") or obj.get("client_reference_id")
        subscription_id = _object_id(obj.get("subscription"))
        if not user_id or not subscription_id:
            return UnhandledEvent(event_id, event_type, "no user or subscription on session")
        subscription = gateway.retrieve_subscription(subscription_id)
        return CheckoutCompleted(
            event_id=event_id,
            created=created,
            user_id=user_id,
            session_id=obj.get("id") or "",
            subscription_id=subscription_id,
            period_end=subscription_period_end(subscription),
            plan_id=metadata.get("planId"),
            promo_code=metadata.get("promoCode"),
            redemption_id=_int_or_none(metadata.get("redemptionId")),
        )

    if event_type in (SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED):
        metadata = obj.get("metadata") or {}
        user_id = metadata.get("userId")
        subscription_id = obj.get("id")
        if not user_id or not subscription_id:
            return UnhandledEvent(event_id, event_type, "no user on subscription")
        if event_type == SUBSCRIPTION_DELETED:
            return SubscriptionDeleted(event_id, created, user_id, subscription_id)
        return SubscriptionUpdated(
            event_id=event_id,
            created=created,
            user_id=user_id,
            subscription_id=subscription_id,
            status=obj.get("status") or "",
            period_end=subscription_period_end(obj),
            plan_id=metadata.get("planId"),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        )

    if event_type == PAYMENT_FAILED:
        subscription_id, metadata = _invoice_subscription(obj)
        if not subscription_id:
            return UnhandledEvent(event_id, event_type, "invoice without subscription")
        user_id = metadata.get("userId")
        if not user_id:
            subscription = gateway.retrieve_subscription(subscription_id)
            user_id = (subscription.get("metadata") or {}).get("userId")
        if not user_id:
            return UnhandledEvent(event_id, event_type, "no user on subscription")
        return PaymentFailed(event_id, created, user_id, subscription_id)

    return UnhandledEvent(event_id, event_type, "event type not handled")
