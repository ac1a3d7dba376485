"""
Module: credits_kernel.models.idempotency
Responsibility: ORM persistence for idempotency keys of mutating requests.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - First writer wins: UNIQUE constraint on key (uq_idempotency_key),
      never a read-then-write check.
    - key, user_id, endpoint and request_hash never change after insert
      (before_update listener in db/immutability.py).
    - job_id moves from NULL to the created job exactly once.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from credits_kernel.db.base import Base


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    __table_args__ = (
        UniqueConstraint("key", name="uq_idempotency_key"),
        Index("idx_idempotency_expires", "expires_at"),
    )

    key: Mapped[str] = mapped_column(String(255), nullable=False)

    user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    endpoint: Mapped[str] = mapped_column(String(128), nullable=False)

    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    job_id: Mapped[UUID | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    expires_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<IdempotencyRecord {self.key} job={self.job_id}>"
