"""
Module: credits_kernel.models.ledger
Responsibility: ORM persistence for credit ledger entries -- the sole source
    of truth for balances.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Entries are immutable once written (before_update / before_delete
      listeners in db/immutability.py).
    - sequence is gap-free and unique per user (uq_credit_ledger_user_sequence).
    - delta is never zero (CHECK constraint ck_credit_ledger_nonzero).
    - For every (user_id, pool_type) the sum of delta equals the matching
      CreditAccount field.

Audit relevance:
    reason distinguishes refund causes (refund_timeout, refund_failure,
    provider_error) and forfeiture causes (expiry, revocation) so the history
    explains every balance movement.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from credits_kernel.db.base import Base


class LedgerEntry(Base):
    """
    Immutable, signed record of one balance change in one pool.

    Guarantees:
        - Written only by LedgerStore.append_entry in the same flush as the
          matching account update.
        - job_id links generation charges to their refunds.
    """

    __tablename__ = "credit_ledger"

    __table_args__ = (
        CheckConstraint("delta <> 0", name="ck_credit_ledger_nonzero"),
        UniqueConstraint("user_id", "sequence", name="uq_credit_ledger_user_sequence"),
        Index("idx_credit_ledger_user_created", "user_id", "created_at"),
        Index("idx_credit_ledger_user_pool", "user_id", "pool_type"),
        Index("idx_credit_ledger_job", "job_id"),
    )

    user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # Monotonic per user, allocated from CreditAccount.entry_count under lock
    sequence: Mapped[int] = mapped_column(nullable=False)

    pool_type: Mapped[str] = mapped_column(String(32), nullable=False)

    delta: Mapped[int] = mapped_column(nullable=False)

    reason: Mapped[str] = mapped_column(String(32), nullable=False)

    job_id: Mapped[UUID | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<LedgerEntry {self.user_id} {self.pool_type} {self.delta:+d} {self.reason}>"
