from datetime import datetime

from .promo import CamelModel


class EntitlementResponse(CamelModel):
    is_premium: bool
    is_active: bool
    premium_plan: str | None = None
    premium_expires_at: datetime | None = None
    premium_auto_renew: bool = False
    premium_source: str | None = None
    premium_subscription_id: str | None = None
