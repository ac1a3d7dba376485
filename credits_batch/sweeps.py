"""
SweepRunner -- periodic reconciliation passes.

Contract:
    Each ``run_*`` method is a scheduler trigger.  It selects candidates
    with a read-only query, then processes every candidate in its own
    transaction and returns a SweepReport.

Architecture: credits_batch.  Uses kernel services only; nothing in the
    kernel imports from credits_batch.

Invariants enforced:
    - One transaction per account (or job).  A failure rolls back that item
      only and is counted in ``failed``.
    - Every item re-checks its condition under the account lock, so running
      a sweep twice, or two copies concurrently, changes nothing the second
      time.
    - Lock order matches the reconciler: account row, then subscription row.
    - An inconclusive verification is skipped and retried on the next run;
      it never forces an expiry.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Callable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from credits_kernel.db.engine import transaction_scope
from credits_kernel.domain.clock import Clock, SystemClock
from credits_kernel.domain.dtos import SweepReport
from credits_kernel.domain.policies import RefreshPolicy
from credits_kernel.domain.protocols import SubscriptionVerifier
from credits_kernel.domain.types import LedgerReason, ReconcileOutcome, SubscriptionStatus
from credits_kernel.exceptions import VerificationInconclusiveError
from credits_kernel.logging_config import LogContext, get_logger
from credits_kernel.models.account import CreditAccount
from credits_kernel.models.subscription import Subscription
from credits_kernel.services.credit_engine import CreditAccountingEngine
from credits_kernel.services.idempotency_guard import IdempotencyGuard
from credits_kernel.services.job_orchestrator import JobOrchestrator
from credits_kernel.services.subscription_reconciler import SubscriptionReconciler

logger = get_logger("batch.sweeps")

DEFAULT_STALLED_AFTER = timedelta(minutes=30)

_TERMINAL_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.EXPIRED.value,
    SubscriptionStatus.REVOKED.value,
)


class SweepRunner:
    """Scheduler triggers for refresh, cleanup and recovery.

    Non-goals:
        - Does NOT schedule itself; see ``credits_batch.scheduler``.
        - Does NOT hold a session between items.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        policy: RefreshPolicy | None = None,
        verifier: SubscriptionVerifier | None = None,
        orchestrator: JobOrchestrator | None = None,
        stalled_after: timedelta = DEFAULT_STALLED_AFTER,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._policy = policy or RefreshPolicy()
        self._verifier = verifier
        self._orchestrator = orchestrator
        self._stalled_after = stalled_after

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def run_weekly_refresh_sweep(self) -> SweepReport:
        """Refresh the weekly pool of every active subscriber whose cadence elapsed."""
        shortest = min(self._policy.refresh_interval, self._policy.sandbox_refresh_interval)
        cutoff = self._clock.now() - shortest
        user_ids = self._select(
            select(Subscription.user_id)
            .join(CreditAccount, CreditAccount.user_id == Subscription.user_id)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                or_(
                    CreditAccount.last_weekly_refresh_at.is_(None),
                    CreditAccount.last_weekly_refresh_at <= cutoff,
                ),
            )
            .order_by(Subscription.user_id)
        )
        return self._run("weekly_refresh", user_ids, self._refresh_active)

    def run_missed_refresh_safety_net(self) -> SweepReport:
        """Catch accounts a regular pass missed.

        Active subscribers whose refresh is overdue by more than a full
        interval get their refresh; expired or revoked subscribers still
        holding weekly credits get them forfeited.
        """
        shortest = min(self._policy.refresh_interval, self._policy.sandbox_refresh_interval)
        overdue = self._clock.now() - 2 * shortest
        refresh_ids = self._select(
            select(Subscription.user_id)
            .join(CreditAccount, CreditAccount.user_id == Subscription.user_id)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                or_(
                    CreditAccount.last_weekly_refresh_at.is_(None),
                    CreditAccount.last_weekly_refresh_at <= overdue,
                ),
            )
            .order_by(Subscription.user_id)
        )
        forfeit_ids = self._select(
            select(Subscription.user_id)
            .join(CreditAccount, CreditAccount.user_id == Subscription.user_id)
            .where(
                Subscription.status.in_(_TERMINAL_SUBSCRIPTION_STATUSES),
                CreditAccount.weekly_remaining > 0,
            )
            .order_by(Subscription.user_id)
        )

        report = self._run("missed_refresh", refresh_ids, self._refresh_overdue)
        forfeits = self._run("missed_forfeit", forfeit_ids, self._forfeit_terminal)
        return SweepReport(
            sweep="missed_refresh_safety_net",
            examined=report.examined + forfeits.examined,
            changed=report.changed + forfeits.changed,
            skipped=report.skipped + forfeits.skipped,
            failed=report.failed + forfeits.failed,
        )

    def run_subscription_cleanup_sweep(self) -> SweepReport:
        """Re-verify subscriptions still ``active`` past expiry plus grace."""
        if self._verifier is None:
            raise RuntimeError("SweepRunner has no verifier configured")
        cutoff = self._clock.now() - self._policy.expiry_grace
        subscription_ids = self._select(
            select(Subscription.id)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.expires_at.is_not(None),
                Subscription.expires_at < cutoff,
            )
            .order_by(Subscription.expires_at)
        )
        return self._run("subscription_cleanup", subscription_ids, self._reverify)

    def run_stalled_job_recovery(self) -> SweepReport:
        """Fail and refund jobs stuck outside a terminal state."""
        if self._orchestrator is None:
            raise RuntimeError("SweepRunner has no orchestrator configured")
        with transaction_scope(self._session_factory) as session:
            job_ids = self._orchestrator.stalled_job_ids(session, self._stalled_after)
        return self._run("stalled_jobs", job_ids, self._fail_stalled)

    def run_idempotency_purge(self) -> SweepReport:
        with LogContext.bind(sweep="idempotency_purge"):
            with transaction_scope(self._session_factory) as session:
                purged = IdempotencyGuard(session, self._clock).purge_expired()
            logger.info("sweep_completed", extra={"purged": purged})
        return SweepReport(sweep="idempotency_purge", examined=purged, changed=purged)

    # -------------------------------------------------------------------------
    # Per-item bodies (return True when something changed)
    # -------------------------------------------------------------------------

    def _locked_subscription(self, session: Session, user_id: str) -> Subscription | None:
        return session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _refresh_active(self, session: Session, user_id: str) -> bool:
        engine = CreditAccountingEngine(session, self._clock)
        engine.lock_account(user_id)
        subscription = self._locked_subscription(session, user_id)
        if subscription is None or subscription.status_enum != SubscriptionStatus.ACTIVE:
            return False
        result = engine.refresh_if_eligible(
            user_id,
            self._policy.weekly_allocation,
            self._policy.interval_for(subscription.environment_enum),
        )
        return result is not None

    def _refresh_overdue(self, session: Session, user_id: str) -> bool:
        engine = CreditAccountingEngine(session, self._clock)
        account = engine.lock_account(user_id)
        subscription = self._locked_subscription(session, user_id)
        if subscription is None or subscription.status_enum != SubscriptionStatus.ACTIVE:
            return False
        interval = self._policy.interval_for(subscription.environment_enum)
        last = account.last_weekly_refresh_at
        # Only a full interval past due; regular lateness is the weekly sweep's
        if last is not None and self._clock.now() - last < 2 * interval:
            return False
        changed = engine.refresh_if_eligible(
            user_id, self._policy.weekly_allocation, interval
        ) is not None
        if changed:
            logger.warning("missed_refresh_recovered", extra={"user_id": user_id})
        return changed

    def _forfeit_terminal(self, session: Session, user_id: str) -> bool:
        engine = CreditAccountingEngine(session, self._clock)
        engine.lock_account(user_id)
        subscription = self._locked_subscription(session, user_id)
        if subscription is None or subscription.status not in _TERMINAL_SUBSCRIPTION_STATUSES:
            return False
        reason = (
            LedgerReason.REVOCATION
            if subscription.status_enum == SubscriptionStatus.REVOKED
            else LedgerReason.EXPIRY
        )
        result = engine.forfeit_weekly(user_id, reason)
        if result.forfeited:
            logger.warning(
                "missed_forfeit_recovered",
                extra={"user_id": user_id, "forfeited": result.forfeited},
            )
        return result.forfeited > 0

    def _reverify(self, session: Session, subscription_id) -> bool:
        reconciler = SubscriptionReconciler(
            session, self._clock, verifier=self._verifier, policy=self._policy
        )
        result = reconciler.reverify(subscription_id)
        return result.outcome == ReconcileOutcome.APPLIED and result.status != result.previous_status

    def _fail_stalled(self, session: Session, job_id) -> bool:
        outcome = self._orchestrator.fail_job(
            session,
            job_id,
            LedgerReason.REFUND_FAILURE,
            "Job stalled without reaching a terminal state",
        )
        return outcome.refund is not None

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _select(self, statement) -> list:
        with transaction_scope(self._session_factory) as session:
            return list(session.execute(statement).scalars())

    def _run(
        self,
        sweep: str,
        items: list,
        body: Callable[[Session, object], bool],
    ) -> SweepReport:
        examined = changed = skipped = failed = 0
        with LogContext.bind(sweep=sweep):
            logger.info("sweep_started", extra={"candidates": len(items)})
            for item in items:
                examined += 1
                try:
                    with transaction_scope(self._session_factory) as session:
                        did_change = body(session, item)
                except VerificationInconclusiveError as exc:
                    skipped += 1
                    logger.warning(
                        "sweep_verification_inconclusive",
                        extra={"item": str(item), "reason": exc.reason},
                    )
                    continue
                except Exception:
                    failed += 1
                    logger.exception("sweep_item_failed", extra={"item": str(item)})
                    continue
                if did_change:
                    changed += 1
                else:
                    skipped += 1

            report = SweepReport(
                sweep=sweep,
                examined=examined,
                changed=changed,
                skipped=skipped,
                failed=failed,
            )
            logger.info(
                "sweep_completed",
                extra={
                    "examined": examined,
                    "changed": changed,
                    "skipped": skipped,
                    "failed": failed,
                },
            )
        return report
