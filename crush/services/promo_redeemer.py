"""Promo code redemption: instant free activation or a pending discount reservation."""
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from crush.models import AuditLog, PromoCode
from crush.models.base import utcnow
from crush.models.redemption import REDEMPTION_COMPLETED, REDEMPTION_PENDING
from crush.services import entitlements, promo_store, promo_validator
from crush.services.promo_validator import ALREADY_USED, EXHAUSTED, InvalidPromo

logger = logging.getLogger(__name__)

ACTIVATION_FAILED = "activation failed"
ACTIVATION_FAILED_MESSAGE = "Failed to activate premium. Please try again."
APPLY_FAILED_MESSAGE = "Failed to apply promo code. Please try again."


@dataclass(frozen=True)
class FreeActivation:
    plan_id: str
    expires_at: datetime
    discount_percent: int = 100


@dataclass(frozen=True)
class PendingPayment:
    redemption_id: int
    discount_percent: int


@dataclass(frozen=True)
class RedemptionFailed:
    reason: str
    message: str


RedemptionOutcome = FreeActivation | PendingPayment | RedemptionFailed


def _failed(reason: str) -> RedemptionFailed:
    verdict = InvalidPromo(reason)
    return RedemptionFailed(reason=reason, message=verdict.message)


def redeem(
    db: Session,
    code: str,
    user_id: str,
    plan_id: str,
    now: datetime | None = None,
) -> RedemptionOutcome:
    """
    Re-validates (a cached client verdict may be stale), then either grants
    premium at once (100% codes) or reserves a pending ledger row for checkout.
    """
    now = now or utcnow()
    plan_id = (plan_id or "").strip().lower()
    verdict = promo_validator.validate(db, code, user_id, plan_id, now=now)
    if isinstance(verdict, InvalidPromo):
        return RedemptionFailed(reason=verdict.reason, message=verdict.message)

    if verdict.is_free_access:
        return _activate_free_premium(db, verdict.promo, user_id, plan_id, now)
    return _reserve_for_payment(db, verdict.promo, user_id, plan_id, now)


def _activate_free_premium(
    db: Session, promo: PromoCode, user_id: str, plan_id: str, now: datetime
) -> RedemptionOutcome:
    """
    One transaction: ledger row (slot reservation), usage counter, entitlement.
    Any failure rolls all three back, so the user either has premium with the
    right expiry or nothing changed.
    """
    code = promo.code
    try:
        redemption = promo_store.reserve_redemption(
            db, promo, user_id, plan_id, REDEMPTION_COMPLETED, now=now
        )
        if redemption is None:
            return _failed(ALREADY_USED)
        if not promo_store.increment_usage(db, promo.id, now=now):
            db.rollback()
            return _failed(EXHAUSTED)
        redemption.usage_counted = True
        db.add(redemption)
        expires_at = entitlements.grant_promo_access(db, user_id, plan_id, code, now=now)
        if expires_at is None:
            db.rollback()
            logger.error("Free activation failed: user not found user_id=%s code=%s", user_id, code)
            return RedemptionFailed(reason=ACTIVATION_FAILED, message=ACTIVATION_FAILED_MESSAGE)
        db.add(AuditLog(event="free_activation", user_id=user_id, detail=f"{code}:{plan_id}"))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Free activation failed: user_id=%s code=%s", user_id, code)
        return RedemptionFailed(reason=ACTIVATION_FAILED, message=ACTIVATION_FAILED_MESSAGE)

    logger.info(
        "Free premium activated: user_id=%s code=%s plan=%s expires_at=%s",
        user_id,
        code,
        plan_id,
        expires_at.isoformat(),
    )
    return FreeActivation(plan_id=plan_id, expires_at=expires_at)


def _reserve_for_payment(
    db: Session, promo: PromoCode, user_id: str, plan_id: str, now: datetime
) -> RedemptionOutcome:
    """Partial discount: hold the user's slot as a pending row; used_count waits for payment."""
    code = promo.code
    discount_percent = promo.discount_percent
    try:
        redemption = promo_store.reserve_redemption(
            db, promo, user_id, plan_id, REDEMPTION_PENDING, now=now
        )
        if redemption is None:
            return _failed(ALREADY_USED)
        db.add(AuditLog(event="promo_reserved", user_id=user_id, detail=f"{code}:{plan_id}"))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Promo reservation failed: user_id=%s code=%s", user_id, code)
        return RedemptionFailed(reason=ACTIVATION_FAILED, message=APPLY_FAILED_MESSAGE)

    logger.info(
        "Promo code reserved for checkout: user_id=%s code=%s discount=%s",
        user_id,
        code,
        discount_percent,
    )
    return PendingPayment(redemption_id=redemption.id, discount_percent=discount_percent)
