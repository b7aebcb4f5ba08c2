from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from .base import utcnow


class ProcessedWebhookEvent(SQLModel, table=True):
    """Dedup record keyed on the processor event id (at-least-once delivery)."""

    __tablename__ = "processed_webhook_events"

    event_id: str = Field(primary_key=True, max_length=255)  # evt_...
    event_type: str = Field(max_length=64)
    outcome: str = Field(max_length=16)  # applied | stale | ignored
    processed_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime())
