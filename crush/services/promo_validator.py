"""Read-only promo code check: returns a verdict, never writes, never raises on a bad code."""
from dataclasses import dataclass
from datetime import datetime

from sqlmodel import Session

from crush.models import PromoCode
from crush.models.base import utcnow
from crush.services import promo_store

# Reason codes returned to clients as `error`
INVALID = "invalid"
INACTIVE = "inactive"
NOT_YET_ACTIVE = "not yet active"
EXPIRED = "expired"
EXHAUSTED = "exhausted"
PLAN_MISMATCH = "plan mismatch"
ALREADY_USED = "already used"

MESSAGES = {
    INVALID: "Invalid promo code",
    INACTIVE: "This promo code is no longer active",
    NOT_YET_ACTIVE: "This promo code is not yet active",
    EXPIRED: "This promo code has expired",
    EXHAUSTED: "This promo code has reached its maximum uses",
    PLAN_MISMATCH: "This promo code is not valid for the selected plan",
    ALREADY_USED: "You have already used this promo code",
}


@dataclass(frozen=True)
class ValidPromo:
    promo: PromoCode
    discount_percent: int

    @property
    def is_free_access(self) -> bool:
        return self.discount_percent == 100


@dataclass(frozen=True)
class InvalidPromo:
    reason: str

    @property
    def message(self) -> str:
        return MESSAGES.get(self.reason, MESSAGES[INVALID])


PromoVerdict = ValidPromo | InvalidPromo


def validate(
    db: Session,
    code: str,
    user_id: str,
    plan_id: str | None = None,
    now: datetime | None = None,
) -> PromoVerdict:
    """Checks run in a fixed order and stop at the first failure."""
    promo = promo_store.get_promo_by_code(db, code)
    if promo is None:
        return InvalidPromo(INVALID)
    if not promo.is_active:
        return InvalidPromo(INACTIVE)

    now = now or utcnow()
    if now < promo.valid_from:
        return InvalidPromo(NOT_YET_ACTIVE)
    if now > promo.valid_until:
        return InvalidPromo(EXPIRED)

    if promo.max_uses is not None and promo.used_count >= promo.max_uses:
        return InvalidPromo(EXHAUSTED)

    plans = promo.plan_list
    if plan_id and plans and plan_id.strip().lower() not in plans:
        return InvalidPromo(PLAN_MISMATCH)

    if promo_store.count_user_redemptions(db, user_id, promo.id) >= promo.max_uses_per_user:
        return InvalidPromo(ALREADY_USED)

    return ValidPromo(promo=promo, discount_percent=promo.discount_percent)
