from .audit import AuditLog
from .error_log import ErrorLog
from .promo_code import PromoCode
from .redemption import PromoCodeRedemption
from .security_log import SecurityLog
from .user import User
from .webhook_event import ProcessedWebhookEvent

__all__ = [
    "AuditLog",
    "ErrorLog",
    "ProcessedWebhookEvent",
    "PromoCode",
    "PromoCodeRedemption",
    "SecurityLog",
    "User",
]
