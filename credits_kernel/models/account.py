"""
Module: credits_kernel.models.account
Responsibility: ORM persistence for the per-user credit account -- the cached
    balance of both pools.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One account per user (UNIQUE constraint via uq_credit_account_user).
    - weekly_remaining and purchased_remaining equal the sum of the user's
      ledger deltas for that pool.  Only LedgerStore.append_entry changes them,
      always under SELECT ... FOR UPDATE on this row.

Failure modes:
    - IntegrityError on a second account for the same user.
"""

from datetime import datetime

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from credits_kernel.db.base import Base


class CreditAccount(Base):
    """
    Cached balance of one user's weekly and purchased pools.

    Contract:
        Created zeroed by LedgerStore.open_account().  Balance fields are
        never assigned directly by services; they move only together with a
        ledger entry.

    Non-goals:
        - Accounts are never deleted while the owning identity exists.
    """

    __tablename__ = "credit_accounts"

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_credit_account_user"),
    )

    user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    weekly_remaining: Mapped[int] = mapped_column(
        nullable=False,
        default=0,
        server_default="0",
    )

    purchased_remaining: Mapped[int] = mapped_column(
        nullable=False,
        default=0,
        server_default="0",
    )

    # Per-account ledger sequence; the next entry gets entry_count + 1
    entry_count: Mapped[int] = mapped_column(
        nullable=False,
        default=0,
        server_default="0",
    )

    last_weekly_refresh_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return (
            f"<CreditAccount {self.user_id} weekly={self.weekly_remaining} "
            f"purchased={self.purchased_remaining}>"
        )
