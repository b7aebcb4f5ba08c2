"""Promo code: percent discount, validity window, global and per-user usage caps."""
from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from .base import utcnow


class PromoCode(SQLModel, table=True):
    __tablename__ = "promo_codes"

    id: int | None = Field(default=None, primary_key=True)
    code: str = Field(unique=True, index=True, max_length=64)  # stored uppercase, e.g. LAUNCH50
    discount_percent: int = Field(ge=0, le=100)  # 100 = free access
    max_uses: int | None = Field(default=None)  # null = unlimited
    used_count: int = Field(default=0)  # completed redemptions only
    max_uses_per_user: int = Field(default=1)
    valid_from: datetime = Field(sa_type=DateTime())  # inclusive
    valid_until: datetime = Field(sa_type=DateTime())  # inclusive
    is_active: bool = True
    # Plans the code applies to, empty = all. e.g. "monthly,yearly"
    applicable_plans: str | None = Field(default=None, max_length=64)
    description: str | None = Field(default=None, max_length=256)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())

    @property
    def plan_list(self) -> list[str]:
        if not self.applicable_plans:
            return []
        return [p.strip().lower() for p in self.applicable_plans.split(",") if p.strip()]
