"""
Periodic reconciliation pass (admin endpoint or cron).

Repairs what the webhook path leaves behind: redemptions completed but never
counted, reservations nobody paid for, promo grants past their expiry and old
webhook dedup records.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlmodel import Session

from crush.core.config import settings
from crush.core.errors import ActivationFailure
from crush.models import AuditLog, ProcessedWebhookEvent
from crush.models.base import utcnow
from crush.services import entitlements, promo_store
from crush.services.webhook_reconciler import count_redemption_usage

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    usage_repaired: int = 0
    usage_over_cap: int = 0
    usage_failed: int = 0
    redemptions_expired: int = 0
    entitlements_expired: int = 0
    webhook_events_pruned: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def _repair_usage_counts(db: Session, report: ReconciliationReport) -> None:
    for redemption_id in [r.id for r in promo_store.list_uncounted_completed(db)]:
        try:
            if count_redemption_usage(db, redemption_id):
                report.usage_repaired += 1
            else:
                report.usage_over_cap += 1
        except ActivationFailure as e:
            logger.error("Usage repair failed: redemption_id=%s error=%s", redemption_id, e)
            report.usage_failed += 1


def prune_webhook_events(db: Session, now: datetime) -> int:
    cutoff = now - timedelta(days=settings.webhook_event_retention_days)
    stmt = delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.processed_at < cutoff)
    return db.exec(stmt).rowcount or 0


def run_reconciliation(db: Session, now: datetime | None = None) -> ReconciliationReport:
    """
    Order matters: usage repair runs before expiry so a completed row is
    counted even when its reservation window has passed.
    """
    now = now or utcnow()
    report = ReconciliationReport()
    _repair_usage_counts(db, report)

    report.redemptions_expired = promo_store.expire_open_redemptions(
        db, now - timedelta(hours=settings.pending_redemption_ttl_hours)
    )
    report.entitlements_expired = entitlements.expire_promo_entitlements(db, now)
    report.webhook_events_pruned = prune_webhook_events(db, now)
    db.add(AuditLog(event="reconciliation", detail=str(report.as_dict())[:500]))
    db.commit()

    logger.info("Reconciliation finished: %s", report.as_dict())
    return report
