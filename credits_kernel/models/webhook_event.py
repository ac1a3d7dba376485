"""
Module: credits_kernel.models.webhook_event
Responsibility: ORM persistence for processed push notifications.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - event_hash is unique (uq_processed_webhook_event_hash).
    - Rows are immutable (db/immutability.py) and are inserted in the same
      transaction as the side effects of the event they record.
"""

from datetime import datetime

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from credits_kernel.db.base import Base


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"

    __table_args__ = (
        UniqueConstraint("event_hash", name="uq_processed_webhook_event_hash"),
    )

    event_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    source: Mapped[str] = mapped_column(String(32), nullable=False)

    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)

    # NULL when the event could not be correlated to a user
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    processed_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<ProcessedWebhookEvent {self.source}:{self.event_hash[:12]}>"
