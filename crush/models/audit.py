from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from .base import utcnow


class AuditLog(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    event: str = Field(index=True)  # free_activation, promo_reserved, subscription_revoked, payment_failed, ...
    user_id: str | None = Field(default=None, index=True)
    detail: str | None = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())
