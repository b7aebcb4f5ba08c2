from fastapi import APIRouter, Depends
from sqlmodel import Session

from crush.admin.deps import require_admin
from crush.core.database import get_db
from crush.services.maintenance import run_reconciliation

router = APIRouter()


@router.post("/reconcile")
def reconcile(
    _=Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Read-repair pass; safe to run from cron as often as needed."""
    return run_reconciliation(db).as_dict()
