"""
Premium entitlement fields on the user record.

Writers read the current row and then UPDATE only the columns they own, so a
promo grant and a webhook transition touching different columns never
overwrite each other. Nothing here commits.
"""
import calendar
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_, update
from sqlmodel import Session, select

from crush.models import User
from crush.models.base import utcnow
from crush.models.user import PREMIUM_SOURCE_PROMO_CODE, PREMIUM_SOURCE_SUBSCRIPTION

PLAN_MONTHS = {"monthly": 1, "quarterly": 3, "yearly": 12}

PROMO_OWNED_FIELDS = frozenset(
    {
        "is_premium",
        "premium_plan",
        "premium_expires_at",
        "premium_auto_renew",
        "premium_source",
        "premium_promo_code",
    }
)
SUBSCRIPTION_OWNED_FIELDS = frozenset(
    {
        "is_premium",
        "premium_plan",
        "premium_expires_at",
        "premium_auto_renew",
        "premium_source",
        "premium_subscription_id",
        "premium_event_at",
    }
)


@dataclass(frozen=True)
class Entitlement:
    user_id: str
    is_premium: bool
    premium_plan: str | None
    premium_expires_at: datetime | None
    premium_auto_renew: bool
    premium_source: str | None
    premium_subscription_id: str | None

    def is_active(self, now: datetime | None = None) -> bool:
        """What feature gating should look at: flag set and not yet expired."""
        if not self.is_premium or self.premium_expires_at is None:
            return False
        return self.premium_expires_at > (now or utcnow())


def add_months(value: datetime, months: int) -> datetime:
    """Calendar months; the day is clamped to the target month's length (Jan 31 + 1 -> Feb 28/29)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def plan_duration_months(plan_id: str | None) -> int:
    return PLAN_MONTHS.get((plan_id or "").strip().lower(), 1)


def get_user(db: Session, user_id: str) -> User | None:
    return db.get(User, user_id)


def get_entitlement(db: Session, user_id: str) -> Entitlement | None:
    user = db.get(User, user_id)
    if user is None:
        return None
    return Entitlement(
        user_id=user.id,
        is_premium=user.is_premium,
        premium_plan=user.premium_plan,
        premium_expires_at=user.premium_expires_at,
        premium_auto_renew=user.premium_auto_renew,
        premium_source=user.premium_source,
        premium_subscription_id=user.premium_subscription_id,
    )


def holds_promo_grant(user: User, now: datetime) -> bool:
    return (
        user.is_premium
        and user.premium_source == PREMIUM_SOURCE_PROMO_CODE
        and user.premium_expires_at is not None
        and user.premium_expires_at > now
    )


def _write_fields(
    db: Session,
    user_id: str,
    fields: dict,
    owned: frozenset,
    now: datetime,
    not_older_than: datetime | None = None,
) -> bool:
    unknown = set(fields) - owned
    if unknown:
        raise ValueError(f"Fields not owned by this writer: {sorted(unknown)}")
    stmt = update(User).where(User.id == user_id)
    if not_older_than is not None:
        # Compare-and-set on the event marker: a newer event already applied wins
        stmt = stmt.where(
            or_(User.premium_event_at.is_(None), User.premium_event_at <= not_older_than)
        )
    stmt = (
        stmt
        .values(**fields, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    written = db.exec(stmt).rowcount == 1
    # Keep an already loaded User instance in step with the row
    user = db.get(User, user_id)
    if user is not None:
        db.refresh(user)
    return written


def grant_promo_access(
    db: Session,
    user_id: str,
    plan_id: str,
    promo_code: str,
    now: datetime | None = None,
) -> datetime | None:
    """
    Free activation. Stacks on an unexpired entitlement: the new expiry starts
    from max(current expiry, now). Returns the new expiry, None if the user is missing.
    """
    now = now or utcnow()
    user = db.get(User, user_id)
    if user is None:
        return None
    start = now
    if user.is_premium and user.premium_expires_at and user.premium_expires_at > now:
        start = user.premium_expires_at
    expires_at = add_months(start, plan_duration_months(plan_id))
    fields = {
        "is_premium": True,
        "premium_plan": plan_id,
        "premium_expires_at": expires_at,
        "premium_auto_renew": False,
        "premium_source": PREMIUM_SOURCE_PROMO_CODE,
        "premium_promo_code": promo_code,
    }
    if not _write_fields(db, user_id, fields, PROMO_OWNED_FIELDS, now):
        return None
    return expires_at


def write_subscription_state(
    db: Session, user_id: str, now: datetime | None = None, **fields
) -> bool:
    """
    Webhook reconciler's write path; source becomes subscription when premium
    is granted. An unexpired promo grant is never revoked or shortened here:
    unless the subscription runs past it, premium, expiry and source stay as
    the promo grant left them. When premium_event_at is written, the row only
    changes if its stored marker is not newer; returns False for such a stale write.
    """
    now = now or utcnow()
    user = db.get(User, user_id)
    if "is_premium" in fields and user is not None and holds_promo_grant(user, now):
        period_end = fields.get("premium_expires_at")
        if not fields["is_premium"] or period_end is None or period_end <= user.premium_expires_at:
            fields.update(
                is_premium=True,
                premium_expires_at=user.premium_expires_at,
                premium_source=PREMIUM_SOURCE_PROMO_CODE,
            )
    if fields.get("is_premium"):
        fields.setdefault("premium_source", PREMIUM_SOURCE_SUBSCRIPTION)
    return _write_fields(
        db,
        user_id,
        fields,
        SUBSCRIPTION_OWNED_FIELDS,
        now,
        not_older_than=fields.get("premium_event_at"),
    )


def expire_promo_entitlements(db: Session, now: datetime | None = None) -> int:
    """Promo grants past their expiry lose the premium flag; expiry stays for audit."""
    now = now or utcnow()
    stmt = select(User.id).where(
        User.is_premium == True,  # noqa: E712
        User.premium_source == PREMIUM_SOURCE_PROMO_CODE,
        User.premium_expires_at <= now,
    )
    expired = 0
    for user_id in db.exec(stmt).all():
        if _write_fields(db, user_id, {"is_premium": False}, PROMO_OWNED_FIELDS, now):
            expired += 1
    return expired
