"""
SweepRunner tests.

Tests cover:
- Weekly refresh selects due subscribers only and is idempotent
- Safety net recovers overdue refreshes and missed forfeits
- Cleanup re-verifies lapsed subscriptions; inconclusive answers are skipped
- Stalled jobs are failed and refunded once
- Expired idempotency records are purged
- One failing item does not stop the sweep
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from credits_batch.sweeps import SweepRunner
from credits_kernel.domain.types import (
    JobStatus,
    LedgerReason,
    SubscriptionEnvironment,
    SubscriptionStatus,
)
from credits_kernel.models.job import GenerationJob
from credits_kernel.models.subscription import Subscription
from credits_kernel.selectors.ledger_selector import LedgerSelector
from credits_kernel.services.credit_engine import CreditAccountingEngine
from credits_kernel.services.idempotency_guard import IdempotencyGuard


@pytest.fixture
def runner(session_factory, clock, refresh_policy, verifier, orchestrator):
    return SweepRunner(
        session_factory,
        clock=clock,
        policy=refresh_policy,
        verifier=verifier,
        orchestrator=orchestrator,
    )


@pytest.fixture
def last_reason(tx):
    def _read(user_id):
        with tx() as s:
            return LedgerSelector(s).history(user_id, limit=1)[0].reason

    return _read


class TestWeeklyRefresh:
    def test_refreshes_due_active_subscribers_only(
        self, runner, make_account, make_subscription, balance_of, clock
    ):
        never = make_account(weekly=0)
        make_subscription(never)
        recent = make_account(weekly=700)
        make_subscription(recent, last_weekly_refresh_at=clock.now() - timedelta(days=1))
        lapsed = make_account(weekly=10)
        make_subscription(lapsed, status=SubscriptionStatus.EXPIRED)

        report = runner.run_weekly_refresh_sweep()

        # The recently refreshed account is a candidate but not yet eligible
        assert (report.examined, report.changed, report.skipped) == (2, 1, 1)
        assert balance_of(never).weekly_remaining == 1500
        assert balance_of(recent).weekly_remaining == 700
        assert balance_of(lapsed).weekly_remaining == 10

    def test_second_run_changes_nothing(self, runner, make_account, make_subscription):
        user = make_account()
        make_subscription(user)
        runner.run_weekly_refresh_sweep()

        report = runner.run_weekly_refresh_sweep()

        assert report.changed == 0

    def test_refreshes_again_after_interval(
        self, runner, make_account, make_subscription, balance_of, tx, clock
    ):
        user = make_account()
        make_subscription(user, expires_at=clock.now() + timedelta(days=30))
        runner.run_weekly_refresh_sweep()
        with tx() as s:
            CreditAccountingEngine(s, clock).deduct(user, 400, None)

        clock.advance(timedelta(days=7).total_seconds())
        report = runner.run_weekly_refresh_sweep()

        assert report.changed == 1
        assert balance_of(user).weekly_remaining == 1500

    def test_production_candidate_not_yet_due_is_skipped(
        self, runner, make_account, make_subscription, clock
    ):
        user = make_account()
        make_subscription(user, last_weekly_refresh_at=clock.now() - timedelta(minutes=5))

        report = runner.run_weekly_refresh_sweep()

        assert (report.examined, report.skipped, report.changed) == (1, 1, 0)

    def test_sandbox_subscriber_refreshes_on_short_interval(
        self, runner, make_account, make_subscription, balance_of, clock
    ):
        user = make_account(weekly=3)
        make_subscription(
            user,
            environment=SubscriptionEnvironment.SANDBOX,
            last_weekly_refresh_at=clock.now() - timedelta(minutes=5),
        )

        report = runner.run_weekly_refresh_sweep()

        assert report.changed == 1
        assert balance_of(user).weekly_remaining == 1500

    def test_failing_item_does_not_stop_sweep(
        self, runner, make_account, make_subscription, balance_of, monkeypatch
    ):
        broken = make_account()
        make_subscription(broken)
        healthy = make_account()
        make_subscription(healthy)
        real = runner._refresh_active

        def body(session, user_id):
            if user_id == broken:
                raise RuntimeError("boom")
            return real(session, user_id)

        monkeypatch.setattr(runner, "_refresh_active", body)

        report = runner.run_weekly_refresh_sweep()

        assert (report.examined, report.changed, report.failed) == (2, 1, 1)
        assert balance_of(healthy).weekly_remaining == 1500
        assert balance_of(broken).weekly_remaining == 0


class TestSafetyNet:
    def test_recovers_refresh_overdue_by_full_interval(
        self, runner, make_account, make_subscription, balance_of, clock, captured_logs
    ):
        user = make_account(weekly=12)
        make_subscription(user, last_weekly_refresh_at=clock.now() - timedelta(days=15))

        report = runner.run_missed_refresh_safety_net()

        assert report.sweep == "missed_refresh_safety_net"
        assert report.changed == 1
        assert balance_of(user).weekly_remaining == 1500
        assert any(r["message"] == "missed_refresh_recovered" for r in captured_logs())

    def test_leaves_regular_lateness_to_weekly_sweep(
        self, runner, make_account, make_subscription, balance_of, clock
    ):
        user = make_account(weekly=12)
        make_subscription(user, last_weekly_refresh_at=clock.now() - timedelta(days=8))

        report = runner.run_missed_refresh_safety_net()

        assert report.changed == 0
        assert balance_of(user).weekly_remaining == 12

    @pytest.mark.parametrize(
        "status, reason",
        [
            (SubscriptionStatus.EXPIRED, LedgerReason.EXPIRY),
            (SubscriptionStatus.REVOKED, LedgerReason.REVOCATION),
        ],
    )
    def test_forfeits_missed_terminal_accounts(
        self, runner, make_account, make_subscription, balance_of, last_reason, status, reason
    ):
        user = make_account(weekly=300, purchased=25)
        make_subscription(user, status=status)

        first = runner.run_missed_refresh_safety_net()
        second = runner.run_missed_refresh_safety_net()

        assert first.changed == 1
        assert second.examined == 0
        balance = balance_of(user)
        assert (balance.weekly_remaining, balance.purchased_remaining) == (0, 25)
        assert last_reason(user) == reason


class TestSubscriptionCleanup:
    def test_lapsed_subscription_expired_by_verifier(
        self, runner, make_account, make_subscription, verifier, balance_of, tx, clock
    ):
        user = make_account(weekly=80)
        make_subscription(
            user, original_transaction_id="otid-1", expires_at=clock.now() - timedelta(hours=2)
        )
        verifier.set_answer(
            "otid-1", SubscriptionStatus.EXPIRED, expires_at=clock.now() - timedelta(hours=2)
        )

        report = runner.run_subscription_cleanup_sweep()

        assert report.changed == 1
        assert balance_of(user).weekly_remaining == 0
        with tx() as s:
            status = s.execute(
                select(Subscription.status).where(Subscription.user_id == user)
            ).scalar_one()
        assert status == SubscriptionStatus.EXPIRED.value

    def test_within_grace_not_examined(
        self, runner, make_account, make_subscription, clock
    ):
        user = make_account()
        make_subscription(user, expires_at=clock.now() - timedelta(minutes=30))

        report = runner.run_subscription_cleanup_sweep()

        assert report.examined == 0

    def test_inconclusive_skipped_and_unchanged(
        self, runner, make_account, make_subscription, verifier, balance_of, clock
    ):
        user = make_account(weekly=80)
        make_subscription(
            user, original_transaction_id="otid-1", expires_at=clock.now() - timedelta(hours=2)
        )
        verifier.inconclusive.add("otid-1")

        report = runner.run_subscription_cleanup_sweep()

        assert (report.examined, report.skipped, report.failed) == (1, 1, 0)
        assert balance_of(user).weekly_remaining == 80

    def test_requires_verifier(self, session_factory, clock):
        with pytest.raises(RuntimeError):
            SweepRunner(session_factory, clock=clock).run_subscription_cleanup_sweep()


class TestStalledJobs:
    def test_stalled_job_failed_and_refunded_once(
        self, runner, make_account, orchestrator, balance_of, tx, clock
    ):
        user = make_account(weekly=50)
        with tx() as s:
            ticket = orchestrator.create_job(s, user, {"media_type": "image"})
        clock.advance(timedelta(minutes=31).total_seconds())

        first = runner.run_stalled_job_recovery()
        second = runner.run_stalled_job_recovery()

        assert first.changed == 1
        assert second.examined == 0
        assert balance_of(user).weekly_remaining == 50
        with tx() as s:
            job = s.get(GenerationJob, ticket.job_id)
            assert job.status == JobStatus.FAILED.value
            assert "stalled" in job.error_message

    def test_recent_job_untouched(self, runner, make_account, orchestrator, tx):
        user = make_account(weekly=50)
        with tx() as s:
            orchestrator.create_job(s, user, {"media_type": "image"})

        report = runner.run_stalled_job_recovery()

        assert report.examined == 0


def test_idempotency_purge(runner, tx, clock):
    with tx() as s:
        IdempotencyGuard(s, clock).claim("k1", "alice", "jobs.create", "h" * 64)
    clock.advance(timedelta(hours=25).total_seconds())

    report = runner.run_idempotency_purge()

    assert (report.examined, report.changed) == (1, 1)
