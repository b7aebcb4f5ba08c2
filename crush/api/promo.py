from fastapi import APIRouter, Depends, Request
from sqlmodel import Session

from crush.api.deps import get_current_user, get_current_user_id
from crush.core.config import settings
from crush.core.database import get_db
from crush.core.rate_limit import limiter
from crush.models import User
from crush.schemas import (
    ApplyPromoRequest,
    ApplyPromoResponse,
    RedemptionResponse,
    ValidatePromoRequest,
    ValidatePromoResponse,
)
from crush.services import promo_redeemer, promo_store, promo_validator
from crush.services.promo_redeemer import FreeActivation, PendingPayment
from crush.services.promo_validator import InvalidPromo

router = APIRouter(prefix="/promo", tags=["promo"])
_PROMO_RATE_LIMIT = f"{settings.promo_rate_limit_per_minute}/minute"


@router.post("/validate", response_model=ValidatePromoResponse, response_model_exclude_none=True)
@limiter.limit(_PROMO_RATE_LIMIT)
def validate_promo_code(
    request: Request,
    body: ValidatePromoRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    verdict = promo_validator.validate(db, body.code, user_id, body.plan_id)
    if isinstance(verdict, InvalidPromo):
        return ValidatePromoResponse(is_valid=False, error=verdict.reason, message=verdict.message)
    return ValidatePromoResponse(
        is_valid=True,
        discount_percent=verdict.discount_percent,
        is_free_access=verdict.is_free_access,
    )


@router.post("/apply", response_model=ApplyPromoResponse, response_model_exclude_none=True)
@limiter.limit(_PROMO_RATE_LIMIT)
def apply_promo_code(
    request: Request,
    body: ApplyPromoRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    outcome = promo_redeemer.redeem(db, body.code, user.id, body.plan_id)
    if isinstance(outcome, FreeActivation):
        return ApplyPromoResponse(
            success=True,
            is_free_access=True,
            discount_percent=outcome.discount_percent,
            premium_expires_at=outcome.expires_at,
        )
    if isinstance(outcome, PendingPayment):
        return ApplyPromoResponse(
            success=True,
            is_free_access=False,
            discount_percent=outcome.discount_percent,
            redirect_to_payment=True,
        )
    return ApplyPromoResponse(success=False, error=outcome.reason, message=outcome.message)


@router.get("/redemptions", response_model=list[RedemptionResponse])
def my_redemptions(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return promo_store.list_user_redemptions(db, user_id)


@router.get("/pending", response_model=RedemptionResponse | None)
def my_pending_redemption(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """The reservation a checkout would use; null when there is none."""
    return promo_store.get_open_redemption(db, user_id)
