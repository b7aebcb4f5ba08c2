"""Promo code and redemption ledger access.

Every write here is flushed but not committed: the calling service owns the
unit of work and decides when to commit or roll back.
"""
import logging
from datetime import datetime

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from crush.models import PromoCode, PromoCodeRedemption
from crush.models.base import utcnow
from crush.models.redemption import (
    OPEN_STATUSES,
    REDEMPTION_APPLIED,
    REDEMPTION_COMPLETED,
    REDEMPTION_EXPIRED,
)

logger = logging.getLogger(__name__)


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def get_promo_by_code(db: Session, code: str) -> PromoCode | None:
    normalized = normalize_code(code)
    if not normalized:
        return None
    return db.exec(select(PromoCode).where(PromoCode.code == normalized)).first()


def get_promo_by_id(db: Session, promo_code_id: int) -> PromoCode | None:
    return db.get(PromoCode, promo_code_id)


def list_promo_codes(db: Session) -> list[PromoCode]:
    return list(db.exec(select(PromoCode).order_by(PromoCode.id.desc())).all())


def create_promo_code(
    db: Session,
    code: str,
    discount_percent: int,
    valid_from: datetime,
    valid_until: datetime,
    max_uses: int | None = None,
    max_uses_per_user: int = 1,
    applicable_plans: list[str] | None = None,
    description: str | None = None,
    is_active: bool = True,
) -> PromoCode:
    plans = ",".join(p.strip().lower() for p in (applicable_plans or []) if p.strip())
    promo = PromoCode(
        code=normalize_code(code),
        discount_percent=discount_percent,
        valid_from=valid_from,
        valid_until=valid_until,
        max_uses=max_uses if max_uses is not None and max_uses > 0 else None,
        max_uses_per_user=max(1, max_uses_per_user),
        applicable_plans=plans or None,
        description=description,
        is_active=is_active,
    )
    db.add(promo)
    db.flush()
    return promo


def deactivate_promo_code(db: Session, promo_code_id: int) -> PromoCode | None:
    promo = db.get(PromoCode, promo_code_id)
    if not promo:
        return None
    promo.is_active = False
    promo.updated_at = utcnow()
    db.add(promo)
    db.flush()
    return promo


def count_user_redemptions(db: Session, user_id: str, promo_code_id: int) -> int:
    """Rows for (user, code) across all statuses; pending rows hold a slot too."""
    stmt = select(func.count()).select_from(PromoCodeRedemption).where(
        PromoCodeRedemption.user_id == user_id,
        PromoCodeRedemption.promo_code_id == promo_code_id,
    )
    return int(db.exec(stmt).one())


def reserve_redemption(
    db: Session,
    promo: PromoCode,
    user_id: str,
    plan_id: str,
    status: str,
    now: datetime | None = None,
) -> PromoCodeRedemption | None:
    """
    Atomic check-and-reserve of a per-user slot.

    The row is inserted into slot N (N = rows already held); the unique key on
    (user_id, promo_code_id, slot) makes a concurrent attempt for the same slot
    fail. Returns None when the user has no slot left or lost the race.
    Must be the first write of the unit of work: a lost race rolls back the session.
    """
    held = count_user_redemptions(db, user_id, promo.id)
    if held >= promo.max_uses_per_user:
        return None
    redemption = PromoCodeRedemption(
        user_id=user_id,
        promo_code_id=promo.id,
        promo_code=promo.code,
        discount_percent=promo.discount_percent,
        plan_id=plan_id,
        slot=held,
        status=status,
        redeemed_at=now or utcnow(),
    )
    if status == REDEMPTION_COMPLETED:
        redemption.completed_at = redemption.redeemed_at
    db.add(redemption)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info(
            "Redemption slot taken concurrently: user_id=%s promo_code_id=%s slot=%s",
            user_id,
            promo.id,
            held,
        )
        return None
    return redemption


def increment_usage(db: Session, promo_code_id: int, now: datetime | None = None) -> bool:
    """
    used_count += 1 in the database, never read-modify-write in Python.
    Refuses to pass max_uses; returns False when the cap is already reached.
    """
    stmt = (
        update(PromoCode)
        .where(PromoCode.id == promo_code_id)
        .where(or_(PromoCode.max_uses.is_(None), PromoCode.used_count < PromoCode.max_uses))
        .values(used_count=PromoCode.used_count + 1, updated_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    result = db.exec(stmt)
    return result.rowcount == 1


def get_redemption(db: Session, redemption_id: int) -> PromoCodeRedemption | None:
    return db.get(PromoCodeRedemption, redemption_id)


def list_user_redemptions(db: Session, user_id: str) -> list[PromoCodeRedemption]:
    stmt = (
        select(PromoCodeRedemption)
        .where(PromoCodeRedemption.user_id == user_id)
        .order_by(PromoCodeRedemption.redeemed_at.desc(), PromoCodeRedemption.id.desc())
    )
    return list(db.exec(stmt).all())


def list_code_redemptions(db: Session, promo_code_id: int) -> list[PromoCodeRedemption]:
    stmt = (
        select(PromoCodeRedemption)
        .where(PromoCodeRedemption.promo_code_id == promo_code_id)
        .order_by(PromoCodeRedemption.redeemed_at.desc(), PromoCodeRedemption.id.desc())
    )
    return list(db.exec(stmt).all())


def get_open_redemption(
    db: Session, user_id: str, promo_code: str | None = None
) -> PromoCodeRedemption | None:
    """Most recent pending/applied row for the user, optionally for one code."""
    stmt = select(PromoCodeRedemption).where(
        PromoCodeRedemption.user_id == user_id,
        PromoCodeRedemption.status.in_(OPEN_STATUSES),
    )
    if promo_code:
        stmt = stmt.where(PromoCodeRedemption.promo_code == normalize_code(promo_code))
    stmt = stmt.order_by(PromoCodeRedemption.redeemed_at.desc(), PromoCodeRedemption.id.desc())
    return db.exec(stmt).first()


def mark_redemption_applied(
    db: Session, redemption: PromoCodeRedemption, checkout_session_id: str
) -> None:
    """pending -> applied once a checkout session carries the discount."""
    if redemption.status in OPEN_STATUSES:
        redemption.status = REDEMPTION_APPLIED
        redemption.checkout_session_id = checkout_session_id
        db.add(redemption)
        db.flush()


def mark_redemption_completed(
    db: Session,
    redemption: PromoCodeRedemption,
    now: datetime | None = None,
    checkout_session_id: str | None = None,
) -> bool:
    if redemption.status not in OPEN_STATUSES:
        return False
    redemption.status = REDEMPTION_COMPLETED
    redemption.completed_at = now or utcnow()
    if checkout_session_id:
        redemption.checkout_session_id = checkout_session_id
    db.add(redemption)
    db.flush()
    return True


def list_uncounted_completed(db: Session) -> list[PromoCodeRedemption]:
    stmt = select(PromoCodeRedemption).where(
        PromoCodeRedemption.status == REDEMPTION_COMPLETED,
        PromoCodeRedemption.usage_counted == False,  # noqa: E712
    )
    return list(db.exec(stmt).all())


def expire_open_redemptions(db: Session, cutoff: datetime) -> int:
    """pending/applied rows reserved before cutoff -> expired. They keep their slot."""
    stmt = (
        update(PromoCodeRedemption)
        .where(PromoCodeRedemption.status.in_(OPEN_STATUSES))
        .where(PromoCodeRedemption.redeemed_at < cutoff)
        .values(status=REDEMPTION_EXPIRED)
        .execution_options(synchronize_session=False)
    )
    return db.exec(stmt).rowcount or 0
