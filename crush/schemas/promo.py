from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

PlanId = Literal["monthly", "quarterly", "yearly"]


class CamelModel(BaseModel):
    """Wire format is camelCase; snake_case names are accepted too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ValidatePromoRequest(CamelModel):
    code: str = Field(min_length=1, max_length=64)
    plan_id: PlanId | None = None


class ApplyPromoRequest(CamelModel):
    code: str = Field(min_length=1, max_length=64)
    plan_id: PlanId


class ValidatePromoResponse(CamelModel):
    is_valid: bool
    discount_percent: int | None = None
    is_free_access: bool | None = None
    error: str | None = None
    message: str | None = None


class ApplyPromoResponse(CamelModel):
    success: bool
    is_free_access: bool | None = None
    discount_percent: int | None = None
    redirect_to_payment: bool | None = None
    premium_expires_at: datetime | None = None
    error: str | None = None
    message: str | None = None


class RedemptionResponse(CamelModel):
    id: int
    promo_code: str
    discount_percent: int
    plan_id: str
    status: str
    checkout_session_id: str | None = None
    redeemed_at: datetime
    completed_at: datetime | None = None


class AdminRedemptionResponse(RedemptionResponse):
    user_id: str
    slot: int
    usage_counted: bool


class PromoCodeCreate(CamelModel):
    code: str = Field(min_length=1, max_length=64)
    discount_percent: int = Field(ge=1, le=100)
    valid_from: datetime
    valid_until: datetime
    max_uses: int | None = Field(default=None, ge=1)
    max_uses_per_user: int = Field(default=1, ge=1)
    applicable_plans: list[PlanId] = []
    description: str | None = Field(default=None, max_length=256)
    is_active: bool = True

    @field_validator("valid_from", "valid_until")
    @classmethod
    def naive_utc(cls, v: datetime) -> datetime:
        """Stored naive in UTC."""
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @model_validator(mode="after")
    def window_order(self):
        if self.valid_until < self.valid_from:
            raise ValueError("validUntil must not be before validFrom")
        return self


class PromoCodeResponse(CamelModel):
    id: int
    code: str
    discount_percent: int
    max_uses: int | None = None
    used_count: int
    max_uses_per_user: int
    valid_from: datetime
    valid_until: datetime
    is_active: bool
    applicable_plans: list[str] = []
    description: str | None = None
    created_at: datetime

    @classmethod
    def from_promo(cls, promo) -> "PromoCodeResponse":
        data = promo.model_dump()
        data["applicable_plans"] = promo.plan_list
        return cls.model_validate(data)
