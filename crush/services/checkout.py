"""Checkout session creation for a priced plan, optionally with a single-use promo discount."""
import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from crush.core.config import settings
from crush.core.errors import PaymentGatewayError, UnknownPlanError
from crush.models import PromoCodeRedemption
from crush.payments import PaymentGateway
from crush.services import promo_store

logger = logging.getLogger(__name__)

DISCOUNT_DEGRADED_WARNING = (
    "The promo discount could not be attached; checkout continues at the regular price."
)


@dataclass(frozen=True)
class CheckoutSessionResult:
    session_id: str
    url: str
    discount_applied: bool
    warning: str | None = None


def _build_metadata(
    user_id: str,
    plan_id: str,
    promo_code: str | None,
    discount_percent: int | None,
    redemption_id: int | None,
) -> dict[str, str]:
    """The only link from a later webhook back to the user and the redemption."""
    metadata = {"userId": user_id, "planId": plan_id}
    if promo_code:
        metadata["promoCode"] = promo_code
    if discount_percent is not None:
        metadata["discountPercent"] = str(discount_percent)
    if redemption_id is not None:
        metadata["redemptionId"] = str(redemption_id)
    return metadata


def create_checkout_session(
    db: Session,
    gateway: PaymentGateway,
    plan_id: str,
    user_id: str,
    user_email: str | None,
    promo_code: str | None = None,
    discount_percent: int | None = None,
    redemption: PromoCodeRedemption | None = None,
) -> CheckoutSessionResult:
    """
    Raises UnknownPlanError for a plan with no price and PaymentGatewayError
    when Stripe cannot create the session. A failed discount is not fatal.
    """
    plan_id = (plan_id or "").strip().lower()
    price_id = settings.price_id_for(plan_id)
    if not price_id:
        raise UnknownPlanError(f"Unknown plan: {plan_id!r}")

    promo_code = promo_store.normalize_code(promo_code) or None
    redemption_id = redemption.id if redemption is not None else None
    metadata = _build_metadata(user_id, plan_id, promo_code, discount_percent, redemption_id)

    coupon_id = None
    warning = None
    if discount_percent is not None and 0 < discount_percent < 100:
        try:
            coupon_id = gateway.create_single_use_coupon(
                percent_off=discount_percent,
                name=f"{promo_code or 'PROMO'} {discount_percent}% off",
                metadata=metadata,
            )
        except PaymentGatewayError as e:
            logger.warning(
                "Discount coupon creation failed, continuing without discount: user_id=%s code=%s error=%s",
                user_id,
                promo_code,
                e,
            )
            warning = DISCOUNT_DEGRADED_WARNING
            # Full price: the reservation stays open for another checkout
            metadata = _build_metadata(user_id, plan_id, None, None, None)

    session = gateway.create_checkout_session(
        price_id=price_id,
        customer_email=user_email,
        client_reference_id=user_id,
        success_url=f"{settings.app_url}/premium/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{settings.app_url}/premium?canceled=true",
        metadata=metadata,
        subscription_metadata=metadata,
        coupon_id=coupon_id,
    )

    if redemption is not None and coupon_id is not None:
        try:
            promo_store.mark_redemption_applied(db, redemption, session.id)
            db.commit()
        except SQLAlchemyError:
            # The webhook still finds the row through redemptionId in the metadata
            db.rollback()
            logger.exception(
                "Could not mark redemption applied: redemption_id=%s session_id=%s",
                redemption_id,
                session.id,
            )

    logger.info(
        "Checkout session created: user_id=%s plan=%s session_id=%s discount=%s",
        user_id,
        plan_id,
        session.id,
        discount_percent if coupon_id else None,
    )
    return CheckoutSessionResult(
        session_id=session.id,
        url=session.url,
        discount_applied=coupon_id is not None,
        warning=warning,
    )
