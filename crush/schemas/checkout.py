from pydantic import Field

from .promo import CamelModel


class CreateCheckoutSessionRequest(CamelModel):
    # Unknown plans are rejected by the checkout service with a 400
    plan_id: str = Field(min_length=1, max_length=32)
    user_email: str | None = Field(default=None, max_length=320)
    promo_code: str | None = Field(default=None, max_length=64)
    # Accepted for compatibility only; the discount comes from the caller's redemption row
    discount_percent: int | None = Field(default=None, ge=0, le=100)


class CheckoutSessionResponse(CamelModel):
    session_id: str
    url: str
    discount_applied: bool = False
    warning: str | None = None
