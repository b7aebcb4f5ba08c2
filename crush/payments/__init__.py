from .gateway import CheckoutSessionRef, PaymentGateway

__all__ = ["CheckoutSessionRef", "PaymentGateway"]
