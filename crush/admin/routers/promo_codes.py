"""Promo code management: create, list, inspect the ledger, kill switch."""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from crush.admin.deps import require_admin
from crush.core.database import get_db
from crush.models import AuditLog
from crush.schemas import AdminRedemptionResponse, PromoCodeCreate, PromoCodeResponse
from crush.services import promo_store

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=PromoCodeResponse, status_code=201)
def create_promo_code(
    body: PromoCodeCreate,
    _=Depends(require_admin),
    db: Session = Depends(get_db),
):
    code = promo_store.normalize_code(body.code)
    if not code:
        raise HTTPException(status_code=422, detail="Code must not be empty")
    if promo_store.get_promo_by_code(db, code) is not None:
        raise HTTPException(status_code=409, detail="This code already exists")
    try:
        promo = promo_store.create_promo_code(
            db,
            code=code,
            discount_percent=body.discount_percent,
            valid_from=body.valid_from,
            valid_until=body.valid_until,
            max_uses=body.max_uses,
            max_uses_per_user=body.max_uses_per_user,
            applicable_plans=list(body.applicable_plans),
            description=body.description,
            is_active=body.is_active,
        )
        db.add(AuditLog(event="promo_code_created", detail=f"{code}:{body.discount_percent}"))
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="This code already exists")
    db.refresh(promo)
    logger.info("Promo code created: code=%s discount=%s", code, promo.discount_percent)
    return PromoCodeResponse.from_promo(promo)


@router.get("", response_model=list[PromoCodeResponse])
def list_promo_codes(
    _=Depends(require_admin),
    db: Session = Depends(get_db),
):
    return [PromoCodeResponse.from_promo(p) for p in promo_store.list_promo_codes(db)]


@router.get("/{promo_code_id:int}/redemptions", response_model=list[AdminRedemptionResponse])
def promo_code_redemptions(
    promo_code_id: int,
    _=Depends(require_admin),
    db: Session = Depends(get_db),
):
    if promo_store.get_promo_by_id(db, promo_code_id) is None:
        raise HTTPException(status_code=404, detail="Promo code not found")
    return promo_store.list_code_redemptions(db, promo_code_id)


@router.post("/{promo_code_id:int}/deactivate", response_model=PromoCodeResponse)
def deactivate_promo_code(
    promo_code_id: int,
    _=Depends(require_admin),
    db: Session = Depends(get_db),
):
    promo = promo_store.deactivate_promo_code(db, promo_code_id)
    if promo is None:
        raise HTTPException(status_code=404, detail="Promo code not found")
    db.add(AuditLog(event="promo_code_deactivated", detail=promo.code))
    db.commit()
    db.refresh(promo)
    logger.info("Promo code deactivated: code=%s", promo.code)
    return PromoCodeResponse.from_promo(promo)
