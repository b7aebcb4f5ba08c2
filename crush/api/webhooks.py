"""Stripe webhook: verify, dedupe, reconcile. Non-2xx makes Stripe redeliver."""
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from crush.api.deps import get_gateway
from crush.core.database import get_db
from crush.core.errors import PaymentGatewayError, SignatureVerificationError, TransientStoreError
from crush.core.rate_limit import get_client_ip
from crush.models import SecurityLog
from crush.payments import PaymentGateway
from crush.services import webhook_reconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["webhooks"])


def _log_signature_failure(db: Session, request: Request, detail: str) -> None:
    ip = get_client_ip(request)
    logger.warning("Webhook signature verification failed: ip=%s detail=%s", ip, detail)
    try:
        db.add(
            SecurityLog(
                event="webhook_signature_failed",
                ip=ip or None,
                endpoint=request.url.path,
                detail=detail[:500],
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("SecurityLog webhook write failed: %s", e)


async def _raw_body(request: Request) -> bytes:
    return await request.body()


# Runs in the threadpool; only the raw body is read on the event loop
@router.post("/webhook")
def stripe_webhook(
    request: Request,
    payload: bytes = Depends(_raw_body),
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    if not stripe_signature:
        _log_signature_failure(db, request, "missing Stripe-Signature header")
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")

    try:
        event = gateway.verify_webhook(payload, stripe_signature)
    except SignatureVerificationError as e:
        _log_signature_failure(db, request, str(e))
        raise HTTPException(status_code=400, detail=SignatureVerificationError.user_message)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        outcome = webhook_reconciler.process_event(db, event, gateway)
    except ValueError as e:
        logger.warning("Malformed webhook event: %s", e)
        raise HTTPException(status_code=400, detail="Invalid payload")
    except (SQLAlchemyError, PaymentGatewayError) as e:
        db.rollback()
        logger.exception("Webhook processing failed: event_id=%s type=%s", event.get("id"), event.get("type"))
        # 500 makes Stripe redeliver
        raise TransientStoreError(f"Webhook processing failed: {e}") from e

    return {"received": True, "outcome": outcome}
