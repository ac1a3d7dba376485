"""
Module: credits_kernel.models.subscription
Responsibility: ORM persistence for the locally observed subscription state.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - One subscription per user (uq_subscription_user) and per renewal chain
      (uq_subscription_original_txn).
    - Updated only by SubscriptionReconciler, after it holds the owning
      account's row lock.
"""

from datetime import datetime

from sqlalchemy import Boolean, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from credits_kernel.db.base import Base
from credits_kernel.domain.types import (
    SubscriptionEnvironment,
    SubscriptionStatus,
)


class Subscription(Base):
    """Observed subscription of one user, keyed by the original transaction id."""

    __tablename__ = "subscriptions"

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_subscription_user"),
        UniqueConstraint("original_transaction_id", name="uq_subscription_original_txn"),
        Index("idx_subscription_status_expires", "status", "expires_at"),
    )

    user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)

    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    original_transaction_id: Mapped[str] = mapped_column(String(128), nullable=False)

    product_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    environment: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SubscriptionEnvironment.PRODUCTION.value,
    )

    last_verified_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    @property
    def status_enum(self) -> SubscriptionStatus:
        return SubscriptionStatus(self.status)

    @property
    def environment_enum(self) -> SubscriptionEnvironment:
        return SubscriptionEnvironment(self.environment)

    def is_active_at(self, now: datetime) -> bool:
        return self.status_enum == SubscriptionStatus.ACTIVE and (
            self.expires_at is None or self.expires_at > now
        )

    def __repr__(self) -> str:
        return f"<Subscription {self.user_id} {self.status} until {self.expires_at}>"
