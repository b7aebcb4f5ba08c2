from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class CheckoutSessionRef:
    id: str
    url: str


class PaymentGateway(ABC):
    """What the entitlement engine needs from a payment processor."""

    @abstractmethod
    def create_checkout_session(
        self,
        *,
        price_id: str,
        customer_email: str | None,
        client_reference_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        subscription_metadata: dict[str, str],
        coupon_id: str | None = None,
    ) -> CheckoutSessionRef:
        raise NotImplementedError

    @abstractmethod
    def create_single_use_coupon(
        self, *, percent_off: int, name: str, metadata: dict[str, str]
    ) -> str:
        """
        Discount usable once, on the first payment only. Returns the coupon id.
        """
        raise NotImplementedError

    @abstractmethod
    def retrieve_subscription(self, subscription_id: str) -> dict:
        raise NotImplementedError

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str) -> dict:
        """
        Checks the signature header against the shared secret and returns the
        decoded event. Raises SignatureVerificationError.
        """
        raise NotImplementedError
