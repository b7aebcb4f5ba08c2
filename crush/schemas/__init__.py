from .checkout import CheckoutSessionResponse, CreateCheckoutSessionRequest
from .premium import EntitlementResponse
from .promo import (
    AdminRedemptionResponse,
    ApplyPromoRequest,
    ApplyPromoResponse,
    PromoCodeCreate,
    PromoCodeResponse,
    RedemptionResponse,
    ValidatePromoRequest,
    ValidatePromoResponse,
)

__all__ = [
    "AdminRedemptionResponse",
    "ApplyPromoRequest",
    "ApplyPromoResponse",
    "CheckoutSessionResponse",
    "CreateCheckoutSessionRequest",
    "EntitlementResponse",
    "PromoCodeCreate",
    "PromoCodeResponse",
    "RedemptionResponse",
    "ValidatePromoRequest",
    "ValidatePromoResponse",
]
