"""Error taxonomy for the entitlement engine.

Promo-code validation failures are not exceptions: they come back as
``InvalidPromo`` values (see ``crush.services.promo_validator``).
"""


class CrushError(Exception):
    """Base class; ``user_message`` is safe to show to an end user."""

    user_message = "Something went wrong. Please try again."
    status_code = 500

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)


class SignatureVerificationError(CrushError):
    """Webhook payload failed the processor signature check."""

    user_message = "Webhook signature verification failed"
    status_code = 400


class TransientStoreError(CrushError):
    """Database or processor temporarily unavailable; the caller may retry."""

    user_message = "Service temporarily unavailable. Please try again."


class ActivationFailure(CrushError):
    """Entitlement and ledger/counter writes diverged; needs read-repair."""

    user_message = "Failed to activate premium. Please try again."


class PaymentGatewayError(CrushError):
    user_message = "Payment service is unavailable. Please try again."

    def __init__(self, message: str | None = None, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class UnknownPlanError(CrushError):
    user_message = "Invalid plan selected"
    status_code = 400


class PromoNotReservedError(CrushError):
    user_message = "Apply the promo code before starting checkout"
    status_code = 400
