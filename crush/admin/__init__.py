"""Admin JSON API under /admin, guarded by X-Admin-Secret."""
from fastapi import APIRouter

from crush.admin.routers import maintenance, promo_codes

admin_router = APIRouter(prefix="/admin", tags=["admin"])

admin_router.include_router(promo_codes.router, prefix="/promo-codes", tags=["admin-promo-codes"])
admin_router.include_router(maintenance.router, prefix="/maintenance", tags=["admin-maintenance"])
