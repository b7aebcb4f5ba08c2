"""Redemption ledger: one row per user attempt at a code. Rows are never deleted."""
from datetime import datetime

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from .base import utcnow

REDEMPTION_PENDING = "pending"
REDEMPTION_APPLIED = "applied"
REDEMPTION_COMPLETED = "completed"
REDEMPTION_EXPIRED = "expired"

# Rows still waiting for a checkout to finish
OPEN_STATUSES = (REDEMPTION_PENDING, REDEMPTION_APPLIED)


class PromoCodeRedemption(SQLModel, table=True):
    __tablename__ = "promo_code_redemptions"
    # slot = 0..max_uses_per_user-1; the unique key turns the per-user
    # check into a conditional insert
    __table_args__ = (
        UniqueConstraint("user_id", "promo_code_id", "slot", name="uq_redemption_user_code_slot"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=128)
    promo_code_id: int = Field(foreign_key="promo_codes.id", index=True)
    promo_code: str = Field(max_length=64)  # denormalized code string
    discount_percent: int
    plan_id: str = Field(max_length=32)
    slot: int = Field(default=0)
    status: str = Field(default=REDEMPTION_PENDING, index=True, max_length=16)
    # True once promo_codes.used_count has been incremented for this row
    usage_counted: bool = False
    checkout_session_id: str | None = Field(default=None, max_length=255)
    redeemed_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime())
    completed_at: datetime | None = Field(default=None, sa_type=DateTime())
