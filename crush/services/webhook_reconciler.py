"""
Applies verified Stripe events to the entitlement fields.

Delivery is at-least-once and unordered:
- every event id is recorded in processed_webhook_events in the same
  transaction as its transition, so a redelivery is skipped;
- user.premium_event_at holds the `created` time of the last applied
  subscription event, and anything older is treated as stale.
"""
import logging
import time
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from crush.core.config import settings
from crush.core.errors import ActivationFailure
from crush.models import AuditLog, ErrorLog, ProcessedWebhookEvent, PromoCodeRedemption, User
from crush.models.base import utcnow
from crush.models.user import PREMIUM_SOURCE_PROMO_CODE
from crush.payments import PaymentGateway
from crush.services import entitlements, promo_store
from crush.services.webhook_events import (
    CheckoutCompleted,
    PaymentFailed,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
    parse_event,
)

logger = logging.getLogger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
STALE = "stale"
IGNORED = "ignored"

ACTIVE_STATUS = "active"


def process_event(
    db: Session, raw: dict, gateway: PaymentGateway, now: datetime | None = None
) -> str:
    """
    Returns the outcome. Database and gateway errors propagate so the webhook
    answers 500 and Stripe redelivers; nothing is recorded in that case.
    """
    event_id = raw.get("id")
    if not event_id:
        raise ValueError("Event without id")
    if db.get(ProcessedWebhookEvent, event_id) is not None:
        logger.info("Webhook event already processed: event_id=%s", event_id)
        return DUPLICATE

    now = now or utcnow()
    event = parse_event(raw, gateway)
    counted_redemption_id = None
    if isinstance(event, CheckoutCompleted):
        outcome, counted_redemption_id = _apply_checkout_completed(db, event, now)
    elif isinstance(event, SubscriptionUpdated):
        outcome = _apply_subscription_updated(db, event, now)
    elif isinstance(event, SubscriptionDeleted):
        outcome = _apply_subscription_deleted(db, event, now)
    elif isinstance(event, PaymentFailed):
        outcome = _note_payment_failed(db, event)
    else:
        outcome = _ignore(event)

    db.add(
        ProcessedWebhookEvent(
            event_id=event_id,
            event_type=raw.get("type") or "",
            outcome=outcome,
            processed_at=now,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event committed first
        db.rollback()
        logger.info("Webhook event processed concurrently: event_id=%s", event_id)
        return DUPLICATE

    logger.info("Webhook event %s: event_id=%s type=%s", outcome, event_id, raw.get("type"))
    if counted_redemption_id is not None:
        try:
            count_redemption_usage(db, counted_redemption_id)
        except ActivationFailure as e:
            record_activation_failure(db, counted_redemption_id, e)
    return outcome


def _is_stale(user: User, created: datetime) -> bool:
    return user.premium_event_at is not None and created < user.premium_event_at


def _ignore(event: UnhandledEvent) -> str:
    logger.info("Unhandled webhook event: type=%s reason=%s", event.event_type, event.reason)
    return IGNORED


def _find_redemption(db: Session, event: CheckoutCompleted) -> PromoCodeRedemption | None:
    if event.redemption_id is not None:
        redemption = promo_store.get_redemption(db, event.redemption_id)
        if redemption is not None and redemption.user_id == event.user_id:
            return redemption
    if event.promo_code:
        return promo_store.get_open_redemption(db, event.user_id, event.promo_code)
    return None


def _apply_checkout_completed(
    db: Session, event: CheckoutCompleted, now: datetime
) -> tuple[str, int | None]:
    """Unentitled -> Active. Also resolves the promo reservation that rode on the session."""
    user = entitlements.get_user(db, event.user_id)
    if user is None:
        logger.warning("Checkout completed for unknown user: user_id=%s", event.user_id)
        return IGNORED, None

    completed_id = None
    redemption = _find_redemption(db, event)
    if redemption is not None and promo_store.mark_redemption_completed(
        db, redemption, now=now, checkout_session_id=event.session_id
    ):
        completed_id = redemption.id

    if _is_stale(user, event.created):
        return STALE, completed_id

    granted = event.period_end is not None and event.period_end > now
    fields = {
        "is_premium": granted,
        "premium_expires_at": event.period_end,
        "premium_subscription_id": event.subscription_id,
        "premium_auto_renew": True,
        "premium_event_at": event.created,
    }
    if event.plan_id:
        fields["premium_plan"] = event.plan_id
    if not entitlements.write_subscription_state(db, event.user_id, now=now, **fields):
        return STALE, completed_id
    db.add(AuditLog(event="subscription_activated", user_id=event.user_id, detail=event.subscription_id))
    return APPLIED, completed_id


def _apply_subscription_updated(db: Session, event: SubscriptionUpdated, now: datetime) -> str:
    """Active -> Active (expiry refreshed) or Active -> Lapsed."""
    user = entitlements.get_user(db, event.user_id)
    if user is None:
        logger.warning("Subscription update for unknown user: user_id=%s", event.user_id)
        return IGNORED
    if user.premium_subscription_id and user.premium_subscription_id != event.subscription_id:
        logger.info(
            "Subscription update for a replaced subscription: user_id=%s subscription_id=%s",
            event.user_id,
            event.subscription_id,
        )
        return IGNORED
    if _is_stale(user, event.created):
        return STALE

    if event.status == ACTIVE_STATUS:
        fields = {
            "is_premium": event.period_end is not None and event.period_end > now,
            "premium_expires_at": event.period_end,
            "premium_subscription_id": event.subscription_id,
            "premium_auto_renew": not event.cancel_at_period_end,
            "premium_event_at": event.created,
        }
        if event.plan_id:
            fields["premium_plan"] = event.plan_id
        if not entitlements.write_subscription_state(db, event.user_id, now=now, **fields):
            return STALE
        return APPLIED

    if user.premium_source == PREMIUM_SOURCE_PROMO_CODE:
        # Never lapse a promo grant; only remember how far the subscription has got
        entitlements.write_subscription_state(db, event.user_id, now=now, premium_event_at=event.created)
        return IGNORED

    # Lapsed: expiry kept for audit, subscription id kept for the later deletion
    if not entitlements.write_subscription_state(
        db,
        event.user_id,
        now=now,
        is_premium=False,
        premium_subscription_id=event.subscription_id,
        premium_event_at=event.created,
    ):
        return STALE
    db.add(
        AuditLog(
            event="subscription_lapsed",
            user_id=event.user_id,
            detail=f"{event.subscription_id}:{event.status}",
        )
    )
    return APPLIED


def _apply_subscription_deleted(db: Session, event: SubscriptionDeleted, now: datetime) -> str:
    """Active/Lapsed -> Revoked."""
    user = entitlements.get_user(db, event.user_id)
    if user is None:
        logger.warning("Subscription deletion for unknown user: user_id=%s", event.user_id)
        return IGNORED
    if user.premium_subscription_id and user.premium_subscription_id != event.subscription_id:
        return IGNORED
    if _is_stale(user, event.created):
        return STALE
    if user.premium_source == PREMIUM_SOURCE_PROMO_CODE:
        # The subscription is gone but the promo grant stands
        entitlements.write_subscription_state(
            db,
            event.user_id,
            now=now,
            premium_subscription_id=None,
            premium_auto_renew=False,
            premium_event_at=event.created,
        )
        return IGNORED

    if not entitlements.write_subscription_state(
        db,
        event.user_id,
        now=now,
        is_premium=False,
        premium_subscription_id=None,
        premium_auto_renew=False,
        premium_event_at=event.created,
    ):
        return STALE
    db.add(AuditLog(event="subscription_revoked", user_id=event.user_id, detail=event.subscription_id))
    return APPLIED


def _note_payment_failed(db: Session, event: PaymentFailed) -> str:
    """
    Advisory only: Stripe keeps retrying the charge and its own
    customer.subscription.updated decides the status. The audit row is what a
    dunning/notification job picks up.
    """
    logger.warning(
        "Payment failed: user_id=%s subscription_id=%s", event.user_id, event.subscription_id
    )
    db.add(AuditLog(event="payment_failed", user_id=event.user_id, detail=event.subscription_id))
    return APPLIED


def count_redemption_usage(db: Session, redemption_id: int) -> bool:
    """
    Atomic used_count increment for a completed redemption, retried with a
    fixed wait. Returns False when the code's max_uses is already reached.
    Raises ActivationFailure once the retries are used up.
    """
    attempts = 1 + max(0, settings.usage_increment_retries)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            redemption = promo_store.get_redemption(db, redemption_id)
            if redemption is None or redemption.usage_counted:
                return True
            if not promo_store.increment_usage(db, redemption.promo_code_id):
                db.rollback()
                logger.warning(
                    "Usage cap reached, redemption left uncounted: redemption_id=%s", redemption_id
                )
                return False
            redemption.usage_counted = True
            db.add(redemption)
            db.commit()
            return True
        except SQLAlchemyError as e:
            db.rollback()
            last_error = e
            logger.warning(
                "Usage increment failed (attempt %s/%s): redemption_id=%s error=%s",
                attempt,
                attempts,
                redemption_id,
                e,
            )
            if attempt < attempts:
                time.sleep(settings.usage_increment_retry_wait_seconds)
    raise ActivationFailure(
        f"used_count increment failed for redemption {redemption_id}: {last_error}"
    )


def record_activation_failure(db: Session, redemption_id: int, error: ActivationFailure) -> None:
    """The reconciliation pass repairs the counter later; the grant itself is never retried."""
    logger.error("Activation failure, left for read-repair: redemption_id=%s error=%s", redemption_id, error)
    try:
        redemption = promo_store.get_redemption(db, redemption_id)
        db.add(
            ErrorLog(
                user_id=redemption.user_id if redemption else None,
                endpoint="webhook:usage_increment",
                error_message=str(error)[:2000],
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("ErrorLog write failed: %s", e)
