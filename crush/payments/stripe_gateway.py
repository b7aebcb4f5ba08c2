import json
import logging
import time
import uuid

import stripe

from crush.core.config import settings
from crush.core.errors import PaymentGatewayError, SignatureVerificationError
from crush.payments.gateway import CheckoutSessionRef, PaymentGateway

logger = logging.getLogger(__name__)

# Retried at the call site; anything else from Stripe is final
STRIPE_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)
WEBHOOK_TOLERANCE_SECONDS = 300
COUPON_NAME_MAX = 40  # Stripe limit


class StripeGateway(PaymentGateway):
    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_wait: float | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.stripe_secret_key
        self._webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        )
        self._timeout = settings.stripe_timeout_seconds if timeout is None else timeout
        self._max_retries = settings.stripe_max_retries if max_retries is None else max_retries
        self._retry_wait = settings.stripe_retry_wait_seconds if retry_wait is None else retry_wait
        self._client: stripe.StripeClient | None = None

    @property
    def client(self) -> stripe.StripeClient:
        """Per-gateway client with a bounded network timeout; stripe's module globals stay untouched."""
        if self._client is None:
            self._client = stripe.StripeClient(
                self._api_key,
                http_client=stripe.RequestsClient(timeout=self._timeout),
                max_network_retries=0,
            )
        return self._client

    def _call(self, operation: str, fn, *args, **kwargs):
        """Runs a Stripe call; connection/rate-limit errors are retried with a fixed wait."""
        attempts = 1 + max(0, self._max_retries)
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args, **kwargs)
            except STRIPE_TRANSIENT_ERRORS as e:
                if attempt == attempts:
                    logger.error("Stripe %s failed after %s attempts: %s", operation, attempts, e)
                    raise PaymentGatewayError(str(e), transient=True) from e
                logger.warning("Stripe %s retry after %s: %s", operation, type(e).__name__, e)
                time.sleep(self._retry_wait)
            except stripe.StripeError as e:
                logger.error("Stripe %s failed: %s", operation, e)
                raise PaymentGatewayError(str(e), transient=False) from e

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
        params = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "client_reference_id": client_reference_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": subscription_metadata},
        }
        if customer_email:
            params["customer_email"] = customer_email
        if coupon_id:
            params["discounts"] = [{"coupon": coupon_id}]
        # Same key across retries so a timed-out attempt is not created twice
        options = {"idempotency_key": f"checkout_{uuid.uuid4().hex}"}
        session = self._call(
            "checkout.sessions.create", self.client.v1.checkout.sessions.create, params, options
        )
        return CheckoutSessionRef(id=session.id, url=session.url)

    def create_single_use_coupon(
        self, *, percent_off: int, name: str, metadata: dict[str, str]
    ) -> str:
        params = {
            "percent_off": percent_off,
            "duration": "once",
            "max_redemptions": 1,
            "name": name[:COUPON_NAME_MAX],
            "metadata": metadata,
        }
        options = {"idempotency_key": f"coupon_{uuid.uuid4().hex}"}
        coupon = self._call("coupons.create", self.client.v1.coupons.create, params, options)
        return coupon.id

    def retrieve_subscription(self, subscription_id: str) -> dict:
        subscription = self._call(
            "subscriptions.retrieve", self.client.v1.subscriptions.retrieve, subscription_id
        )
        # StripeObject -> plain dict
        return json.loads(str(subscription))

    def verify_webhook(self, payload: bytes, signature: str) -> dict:
        if not self._webhook_secret:
            raise SignatureVerificationError("STRIPE_WEBHOOK_SECRET is not configured")
        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            stripe.WebhookSignature.verify_header(
                text, signature, self._webhook_secret, WEBHOOK_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError(str(e)) from e
        return json.loads(text)
