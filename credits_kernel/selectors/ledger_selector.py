"""
LedgerSelector -- balance, history and invariant reads.

The cached balance on CreditAccount is what callers see; verify_invariant()
recomputes each pool from the ledger and compares.
"""

from sqlalchemy import func, select

from credits_kernel.domain.dtos import (
    BalanceSnapshot,
    InvariantReport,
    LedgerEntryView,
    PoolInvariantCheck,
)
from credits_kernel.domain.types import LedgerReason, PoolType
from credits_kernel.exceptions import AccountNotFoundError
from credits_kernel.models.account import CreditAccount
from credits_kernel.models.ledger import LedgerEntry
from credits_kernel.selectors.base import BaseSelector

DEFAULT_HISTORY_LIMIT = 50


class LedgerSelector(BaseSelector):

    def _account(self, user_id: str) -> CreditAccount:
        account = self.session.execute(
            select(CreditAccount).where(CreditAccount.user_id == user_id)
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(user_id)
        return account

    def balance(self, user_id: str) -> BalanceSnapshot:
        account = self._account(user_id)
        return BalanceSnapshot(
            user_id=account.user_id,
            weekly_remaining=account.weekly_remaining,
            purchased_remaining=account.purchased_remaining,
            last_weekly_refresh_at=account.last_weekly_refresh_at,
        )

    def history(self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[LedgerEntryView]:
        """Most recent entries first."""
        rows = self.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.sequence.desc())
            .limit(limit)
        ).scalars()
        return [
            LedgerEntryView(
                entry_id=row.id,
                user_id=row.user_id,
                pool_type=PoolType(row.pool_type),
                delta=row.delta,
                reason=LedgerReason(row.reason),
                job_id=row.job_id,
                created_at=row.created_at,
            )
            for row in rows
        ]

    def pool_totals(self, user_id: str) -> dict[PoolType, int]:
        """Sum of ledger deltas per pool.  Pools with no entries sum to 0."""
        totals = {pool: 0 for pool in PoolType}
        rows = self.session.execute(
            select(LedgerEntry.pool_type, func.coalesce(func.sum(LedgerEntry.delta), 0))
            .where(LedgerEntry.user_id == user_id)
            .group_by(LedgerEntry.pool_type)
        ).all()
        for pool_type, total in rows:
            totals[PoolType(pool_type)] = int(total)
        return totals

    def verify_invariant(self, user_id: str) -> InvariantReport:
        account = self._account(user_id)
        totals = self.pool_totals(user_id)
        return InvariantReport(
            user_id=user_id,
            pools=(
                PoolInvariantCheck(
                    pool_type=PoolType.WEEKLY,
                    cached_balance=account.weekly_remaining,
                    ledger_sum=totals[PoolType.WEEKLY],
                ),
                PoolInvariantCheck(
                    pool_type=PoolType.PURCHASED,
                    cached_balance=account.purchased_remaining,
                    ledger_sum=totals[PoolType.PURCHASED],
                ),
            ),
        )
