"""
LedgerStore -- append-only credit history plus cached balance.

Responsibility:
    The only code path that changes a CreditAccount balance.  Every change is
    an immutable LedgerEntry inserted in the same flush as the account update.

Architecture position:
    Kernel > Services.  Used by CreditAccountingEngine; never called by outer
    layers directly for balance changes.

Invariants enforced:
    - sum(delta) per (user, pool) == account field: append_entry inserts the
      entry and applies the delta in one flush.
    - Serialization per account: lock_account() takes SELECT ... FOR UPDATE
      on the account row; rows of other accounts are not touched.
    - Entries carry a gap-free per-user sequence from the locked account.

Failure modes:
    - AccountNotFoundError when the account row does not exist.
    - InvalidCreditAmountError on a zero delta.
    - RuntimeError if append_entry is given an account this session has not
      locked (programming error).
"""

from uuid import UUID

from sqlalchemy import event, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from credits_kernel.domain.types import LedgerReason, PoolType
from credits_kernel.exceptions import AccountNotFoundError, InvalidCreditAmountError
from credits_kernel.logging_config import get_logger
from credits_kernel.models.account import CreditAccount
from credits_kernel.models.ledger import LedgerEntry
from credits_kernel.services.base import BaseService

logger = get_logger("services.ledger_store")

_LOCKED_KEY = "credits_locked_accounts"


@event.listens_for(Session, "after_transaction_end")
def _forget_account_locks(session, transaction):
    # Row locks end with the outermost transaction
    if transaction.parent is None:
        session.info.pop(_LOCKED_KEY, None)


class LedgerStore(BaseService):
    """
    Durable, append-only ledger with a derived cached balance per account.

    Contract:
        Callers lock first, then append:

            account = store.lock_account(user_id)
            store.append_entry(account, PoolType.WEEKLY, -5, LedgerReason.GENERATION)

        The lock is held until the caller's transaction ends.
    """

    def lock_account(self, user_id: str) -> CreditAccount:
        """SELECT ... FOR UPDATE the account row, refreshing any cached state."""
        account = self.session.execute(
            select(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(user_id)
        self._locked_ids().add(account.id)
        return account

    def open_account(self, user_id: str) -> CreditAccount:
        """Create a zeroed account, or return the existing one."""
        existing = self.session.execute(
            select(CreditAccount).where(CreditAccount.user_id == user_id)
        ).scalar_one_or_none()
        if existing is not None:
            return existing

        savepoint = self.session.begin_nested()
        try:
            account = CreditAccount(
                user_id=user_id,
                weekly_remaining=0,
                purchased_remaining=0,
                entry_count=0,
                created_at=self.clock.now(),
            )
            self.session.add(account)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("account_open_race", extra={"user_id": user_id})
            return self.session.execute(
                select(CreditAccount).where(CreditAccount.user_id == user_id)
            ).scalar_one()

        logger.info("credit_account_opened", extra={"user_id": user_id})
        return account

    def append_entry(
        self,
        account: CreditAccount,
        pool_type: PoolType,
        delta: int,
        reason: LedgerReason,
        job_id: UUID | None = None,
    ) -> UUID:
        """Insert an immutable entry and apply ``delta`` to the matching pool."""
        if delta == 0:
            raise InvalidCreditAmountError(delta, "ledger entries must move a balance")
        if account.id not in self._locked_ids():
            raise RuntimeError(
                f"append_entry requires lock_account({account.user_id!r}) first"
            )

        account.entry_count += 1
        entry = LedgerEntry(
            user_id=account.user_id,
            sequence=account.entry_count,
            pool_type=PoolType(pool_type).value,
            delta=delta,
            reason=LedgerReason(reason).value,
            job_id=job_id,
            created_at=self.clock.now(),
        )
        if pool_type == PoolType.WEEKLY:
            account.weekly_remaining += delta
        else:
            account.purchased_remaining += delta

        self.session.add(entry)
        self.session.flush()

        logger.debug(
            "ledger_entry_appended",
            extra={
                "user_id": account.user_id,
                "entry_id": str(entry.id),
                "sequence": entry.sequence,
                "pool_type": entry.pool_type,
                "delta": delta,
                "reason": entry.reason,
                "job_id": str(job_id) if job_id else None,
            },
        )
        return entry.id

    def entries_for_job(self, user_id: str, job_id: UUID) -> list[LedgerEntry]:
        """All entries of ``user_id`` tied to ``job_id``, in write order."""
        return list(
            self.session.execute(
                select(LedgerEntry)
                .where(LedgerEntry.user_id == user_id, LedgerEntry.job_id == job_id)
                .order_by(LedgerEntry.sequence)
            ).scalars()
        )

    def _locked_ids(self) -> set:
        return self.session.info.setdefault(_LOCKED_KEY, set())
