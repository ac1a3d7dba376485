"""
CreditAccountingEngine -- deduction ordering, refunds, refresh and forfeiture.

Responsibility:
    Every balance-affecting business operation: spend for a job, give it back
    when the job fails, reset the weekly pool on renewal, zero it on expiry,
    top up the purchased pool, and administrative adjustments.

Architecture position:
    Kernel > Services.  Built on LedgerStore; called by JobOrchestrator and
    SubscriptionReconciler inside their transactions.

Invariants enforced:
    - Weekly first, purchased second.  A deduction that purchased cannot
      cover fails with InsufficientCreditsError and writes nothing.
    - One ledger entry per pool actually drawn from.
    - A job is refunded at most once: a positive refund-reason entry for the
      job_id is the refund marker, checked under the account lock.
    - Forfeiture never touches the purchased pool.
    - Refresh is only meaningful behind an eligibility check;
      refresh_if_eligible() does both under one lock.

Failure modes:
    - AccountNotFoundError, InsufficientCreditsError, InvalidCreditAmountError,
      PurchaseCapExceededError, SubscriptionRequiredError.
"""

from datetime import timedelta
from uuid import UUID

from sqlalchemy import select

from credits_kernel.domain.dtos import (
    BalanceSnapshot,
    DeductionResult,
    ForfeitResult,
    RefreshResult,
    RefundResult,
)
from credits_kernel.domain.types import (
    FORFEIT_REASONS,
    REFUND_REASONS,
    LedgerReason,
    PoolType,
)
from credits_kernel.exceptions import (
    InsufficientCreditsError,
    InvalidCreditAmountError,
    PurchaseCapExceededError,
    SubscriptionRequiredError,
)
from credits_kernel.logging_config import get_logger
from credits_kernel.models.account import CreditAccount
from credits_kernel.models.subscription import Subscription
from credits_kernel.services.base import BaseService
from credits_kernel.services.ledger_store import LedgerStore

logger = get_logger("services.credit_engine")

DEFAULT_MAX_PURCHASED = 500


def snapshot(account: CreditAccount) -> BalanceSnapshot:
    return BalanceSnapshot(
        user_id=account.user_id,
        weekly_remaining=account.weekly_remaining,
        purchased_remaining=account.purchased_remaining,
        last_weekly_refresh_at=account.last_weekly_refresh_at,
    )


class CreditAccountingEngine(BaseService):
    """
    Credit operations over one session.

    Contract:
        Every method that changes a balance locks the account row first and
        leaves the lock held for the rest of the caller's transaction.

    Non-goals:
        - Does NOT decide eligibility policy (allocation, interval); callers
          pass them in from configuration.
    """

    def __init__(self, session, clock=None, ledger: LedgerStore | None = None):
        super().__init__(session, clock)
        self.ledger = ledger or LedgerStore(session, self.clock)

    def lock_account(self, user_id: str) -> CreditAccount:
        return self.ledger.lock_account(user_id)

    # ------------------------------------------------------------------
    # Spending
    # ------------------------------------------------------------------

    def deduct(
        self,
        user_id: str,
        amount: int,
        job_id: UUID | None,
        reason: LedgerReason = LedgerReason.GENERATION,
    ) -> DeductionResult:
        """Consume ``amount`` weekly-first, purchased-second, all or nothing."""
        if amount < 0:
            raise InvalidCreditAmountError(amount, "deduction amount must not be negative")

        account = self.ledger.lock_account(user_id)

        weekly_available = max(account.weekly_remaining, 0)
        weekly_used = min(weekly_available, amount)
        purchased_used = amount - weekly_used

        if purchased_used > account.purchased_remaining:
            logger.info(
                "credits_insufficient",
                extra={
                    "user_id": user_id,
                    "amount": amount,
                    "weekly_remaining": account.weekly_remaining,
                    "purchased_remaining": account.purchased_remaining,
                },
            )
            raise InsufficientCreditsError(
                user_id=user_id,
                required=amount,
                available=weekly_available + account.purchased_remaining,
            )

        entry_ids: list[UUID] = []
        if weekly_used > 0:
            entry_ids.append(
                self.ledger.append_entry(account, PoolType.WEEKLY, -weekly_used, reason, job_id)
            )
        if purchased_used > 0:
            entry_ids.append(
                self.ledger.append_entry(
                    account, PoolType.PURCHASED, -purchased_used, reason, job_id
                )
            )

        logger.info(
            "credits_deducted",
            extra={
                "user_id": user_id,
                "job_id": str(job_id) if job_id else None,
                "amount": amount,
                "weekly_used": weekly_used,
                "purchased_used": purchased_used,
            },
        )
        return DeductionResult(
            user_id=user_id,
            amount=amount,
            weekly_used=weekly_used,
            purchased_used=purchased_used,
            entry_ids=tuple(entry_ids),
            balance=snapshot(account),
        )

    def refund(self, user_id: str, job_id: UUID, reason: LedgerReason) -> RefundResult:
        """Reverse every charge recorded for ``job_id``, at most once per job."""
        reason = LedgerReason(reason)
        if reason not in REFUND_REASONS:
            raise ValueError(f"{reason.value} is not a refund reason")

        account = self.ledger.lock_account(user_id)
        entries = self.ledger.entries_for_job(user_id, job_id)

        prior = [
            e for e in entries
            if e.delta > 0 and LedgerReason(e.reason) in REFUND_REASONS
        ]
        if prior:
            logger.warning(
                "refund_already_issued",
                extra={
                    "user_id": user_id,
                    "job_id": str(job_id),
                    "requested_reason": reason.value,
                    "existing_reason": prior[0].reason,
                },
            )
            return RefundResult(
                user_id=user_id,
                job_id=job_id,
                reason=reason,
                refunded_weekly=0,
                refunded_purchased=0,
                entry_ids=(),
                already_refunded=True,
            )

        refunded = {PoolType.WEEKLY: 0, PoolType.PURCHASED: 0}
        entry_ids: list[UUID] = []
        for charge in entries:
            if charge.delta >= 0:
                continue
            pool = PoolType(charge.pool_type)
            entry_ids.append(
                self.ledger.append_entry(account, pool, -charge.delta, reason, job_id)
            )
            refunded[pool] += -charge.delta

        logger.info(
            "credits_refunded",
            extra={
                "user_id": user_id,
                "job_id": str(job_id),
                "reason": reason.value,
                "refunded_weekly": refunded[PoolType.WEEKLY],
                "refunded_purchased": refunded[PoolType.PURCHASED],
            },
        )
        return RefundResult(
            user_id=user_id,
            job_id=job_id,
            reason=reason,
            refunded_weekly=refunded[PoolType.WEEKLY],
            refunded_purchased=refunded[PoolType.PURCHASED],
            entry_ids=tuple(entry_ids),
        )

    # ------------------------------------------------------------------
    # Weekly pool lifecycle
    # ------------------------------------------------------------------

    def is_eligible_for_refresh(self, user_id: str, min_interval: timedelta) -> bool:
        """True if never refreshed, or last refreshed at least ``min_interval`` ago."""
        last = self.session.execute(
            select(CreditAccount.last_weekly_refresh_at).where(
                CreditAccount.user_id == user_id
            )
        ).scalar_one_or_none()
        return self._eligible(last, min_interval)

    def _eligible(self, last_refresh_at, min_interval: timedelta) -> bool:
        if last_refresh_at is None:
            return True
        return self.clock.now() - last_refresh_at >= min_interval

    def refresh_weekly(
        self,
        user_id: str,
        allocation: int,
        reason: LedgerReason = LedgerReason.REFRESH,
    ) -> RefreshResult:
        """Reset the weekly pool to exactly ``allocation``.

        Unconditional.  Callers gate it with is_eligible_for_refresh() or use
        refresh_if_eligible().
        """
        if allocation < 0:
            raise InvalidCreditAmountError(allocation, "allocation must not be negative")
        account = self.ledger.lock_account(user_id)
        return self._refresh_locked(account, allocation, reason)

    def refresh_if_eligible(
        self,
        user_id: str,
        allocation: int,
        min_interval: timedelta,
    ) -> RefreshResult | None:
        """Eligibility check and refresh under a single lock acquisition."""
        account = self.ledger.lock_account(user_id)
        if not self._eligible(account.last_weekly_refresh_at, min_interval):
            logger.debug(
                "weekly_refresh_not_eligible",
                extra={
                    "user_id": user_id,
                    "last_weekly_refresh_at": account.last_weekly_refresh_at,
                },
            )
            return None
        return self._refresh_locked(account, allocation, LedgerReason.REFRESH)

    def _refresh_locked(
        self,
        account: CreditAccount,
        allocation: int,
        reason: LedgerReason,
    ) -> RefreshResult:
        now = self.clock.now()
        delta = allocation - account.weekly_remaining
        entry_id = None
        if delta != 0:
            entry_id = self.ledger.append_entry(account, PoolType.WEEKLY, delta, reason)
        account.last_weekly_refresh_at = now
        self.session.flush()

        logger.info(
            "weekly_credits_refreshed",
            extra={"user_id": account.user_id, "allocation": allocation, "delta": delta},
        )
        return RefreshResult(
            user_id=account.user_id,
            allocation=allocation,
            delta=delta,
            entry_id=entry_id,
            refreshed_at=now,
        )

    def forfeit_weekly(
        self,
        user_id: str,
        reason: LedgerReason = LedgerReason.EXPIRY,
    ) -> ForfeitResult:
        """Zero the weekly pool.  The purchased pool is never touched."""
        reason = LedgerReason(reason)
        if reason not in FORFEIT_REASONS:
            raise ValueError(f"{reason.value} is not a forfeiture reason")

        account = self.ledger.lock_account(user_id)
        forfeited = account.weekly_remaining
        if forfeited <= 0:
            return ForfeitResult(user_id=user_id, reason=reason, forfeited=0, entry_id=None)

        entry_id = self.ledger.append_entry(account, PoolType.WEEKLY, -forfeited, reason)
        logger.info(
            "weekly_credits_forfeited",
            extra={"user_id": user_id, "reason": reason.value, "forfeited": forfeited},
        )
        return ForfeitResult(
            user_id=user_id, reason=reason, forfeited=forfeited, entry_id=entry_id
        )

    # ------------------------------------------------------------------
    # Purchased pool and adjustments
    # ------------------------------------------------------------------

    def purchase(
        self,
        user_id: str,
        amount: int,
        max_purchased: int = DEFAULT_MAX_PURCHASED,
        require_subscription: bool = True,
    ) -> BalanceSnapshot:
        """Add ``amount`` to the purchased pool, up to ``max_purchased`` in total."""
        if amount <= 0:
            raise InvalidCreditAmountError(amount, "purchase amount must be positive")

        account = self.ledger.lock_account(user_id)

        if require_subscription:
            subscription = self.session.execute(
                select(Subscription).where(Subscription.user_id == user_id)
            ).scalar_one_or_none()
            if subscription is None or not subscription.is_active_at(self.clock.now()):
                raise SubscriptionRequiredError(user_id)

        if account.purchased_remaining + amount > max_purchased:
            raise PurchaseCapExceededError(
                user_id=user_id,
                current=account.purchased_remaining,
                amount=amount,
                cap=max_purchased,
            )

        self.ledger.append_entry(account, PoolType.PURCHASED, amount, LedgerReason.PURCHASE)
        logger.info("credits_purchased", extra={"user_id": user_id, "amount": amount})
        return snapshot(account)

    def admin_adjust(self, user_id: str, pool_type: PoolType, delta: int) -> BalanceSnapshot:
        """Signed manual correction of one pool."""
        pool_type = PoolType(pool_type)
        account = self.ledger.lock_account(user_id)
        if pool_type == PoolType.PURCHASED and account.purchased_remaining + delta < 0:
            raise InvalidCreditAmountError(
                delta, "adjustment would make the purchased pool negative"
            )
        self.ledger.append_entry(account, pool_type, delta, LedgerReason.ADMIN_ADJUST)
        logger.warning(
            "credits_admin_adjusted",
            extra={"user_id": user_id, "pool_type": pool_type.value, "delta": delta},
        )
        return snapshot(account)
