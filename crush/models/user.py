from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from .base import utcnow

PREMIUM_SOURCE_PROMO_CODE = "promo_code"
PREMIUM_SOURCE_SUBSCRIPTION = "subscription"


class User(SQLModel, table=True):
    """User record; only the premium entitlement sub-object is owned by this service."""

    id: str = Field(primary_key=True, max_length=128)  # auth provider uid
    email: str | None = Field(default=None, index=True)
    display_name: str = ""
    # Entitlement sub-object. promo_code fields are written only by the redeemer,
    # subscription fields only by the webhook reconciler.
    is_premium: bool = False
    premium_plan: str | None = Field(default=None, max_length=32)  # monthly | quarterly | yearly
    premium_expires_at: datetime | None = Field(default=None, sa_type=DateTime())
    premium_auto_renew: bool = False
    premium_source: str | None = Field(default=None, max_length=16)  # promo_code | subscription
    premium_subscription_id: str | None = Field(default=None, index=True, max_length=255)
    premium_promo_code: str | None = Field(default=None, max_length=64)
    # created timestamp of the last applied subscription event (out-of-order guard)
    premium_event_at: datetime | None = Field(default=None, sa_type=DateTime())
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())
