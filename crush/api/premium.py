from fastapi import APIRouter, Depends
from sqlmodel import Session

from crush.api.deps import get_current_user
from crush.core.database import get_db
from crush.models import User
from crush.schemas import EntitlementResponse
from crush.services import entitlements

router = APIRouter(prefix="/premium", tags=["premium"])


@router.get("/status", response_model=EntitlementResponse)
def premium_status(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Feature gating reads this, never the redemption ledger."""
    entitlement = entitlements.get_entitlement(db, user.id)
    return EntitlementResponse(
        is_premium=entitlement.is_premium,
        is_active=entitlement.is_active(),
        premium_plan=entitlement.premium_plan,
        premium_expires_at=entitlement.premium_expires_at,
        premium_auto_renew=entitlement.premium_auto_renew,
        premium_source=entitlement.premium_source,
        premium_subscription_id=entitlement.premium_subscription_id,
    )
