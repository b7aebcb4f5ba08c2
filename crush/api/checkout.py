import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlmodel import Session

from crush.api.deps import get_current_user, get_gateway
from crush.core.config import settings
from crush.core.database import get_db
from crush.core.errors import PaymentGatewayError, PromoNotReservedError
from crush.core.rate_limit import limiter
from crush.models import User
from crush.payments import PaymentGateway
from crush.schemas import CheckoutSessionResponse, CreateCheckoutSessionRequest
from crush.services import checkout, promo_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["checkout"])


@router.post(
    "/create-checkout-session",
    response_model=CheckoutSessionResponse,
    response_model_exclude_none=True,
)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
def create_checkout_session(
    request: Request,
    body: CreateCheckoutSessionRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    redemption = None
    if body.promo_code:
        redemption = promo_store.get_open_redemption(db, user.id, body.promo_code)
        if redemption is None:
            raise PromoNotReservedError(f"No open redemption for {body.promo_code!r}")
        if body.discount_percent is not None and body.discount_percent != redemption.discount_percent:
            logger.warning(
                "Client discount ignored: user_id=%s code=%s sent=%s reserved=%s",
                user.id,
                redemption.promo_code,
                body.discount_percent,
                redemption.discount_percent,
            )

    try:
        result = checkout.create_checkout_session(
            db,
            gateway,
            plan_id=body.plan_id,
            user_id=user.id,
            user_email=body.user_email or user.email,
            promo_code=redemption.promo_code if redemption else None,
            discount_percent=redemption.discount_percent if redemption else None,
            redemption=redemption,
        )
    except PaymentGatewayError as e:
        logger.error("Checkout session failed: user_id=%s plan=%s error=%s", user.id, body.plan_id, e)
        raise HTTPException(status_code=500, detail="Failed to create checkout session. Please try again.")

    return CheckoutSessionResponse(
        session_id=result.session_id,
        url=result.url,
        discount_applied=result.discount_applied,
        warning=result.warning,
    )
