"""
CreditAccountingEngine tests.

Tests cover:
- Deduction ordering: weekly first, purchased second, all or nothing
- Refunds reverse exactly the charges of a job, at most once
- Weekly refresh resets to the allocation with a signed delta
- Forfeiture zeroes weekly and never touches purchased
- Purchases respect the cap and the subscription requirement
- Administrative adjustments
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from credits_kernel.domain.types import LedgerReason, PoolType, SubscriptionStatus
from credits_kernel.exceptions import (
    InsufficientCreditsError,
    InvalidCreditAmountError,
    PurchaseCapExceededError,
    SubscriptionRequiredError,
)


def _reasons(selector, user_id):
    return [entry.reason for entry in reversed(selector.history(user_id))]


class TestDeduct:
    def test_weekly_consumed_first(self, make_account, credit_engine, selector):
        user = make_account(weekly=100, purchased=50)

        result = credit_engine.deduct(user, 30, uuid4())

        assert result.weekly_used == 30
        assert result.purchased_used == 0
        assert len(result.entry_ids) == 1
        balance = selector.balance(user)
        assert (balance.weekly_remaining, balance.purchased_remaining) == (70, 50)

    def test_split_across_pools_writes_one_entry_per_pool(
        self, make_account, credit_engine, selector
    ):
        user = make_account(weekly=5, purchased=10)
        job_id = uuid4()

        result = credit_engine.deduct(user, 12, job_id)

        assert (result.weekly_used, result.purchased_used) == (5, 7)
        assert len(result.entry_ids) == 2
        history = selector.history(user, limit=2)
        assert {(e.pool_type, e.delta) for e in history} == {
            (PoolType.WEEKLY, -5),
            (PoolType.PURCHASED, -7),
        }
        assert all(e.job_id == job_id for e in history)

    def test_insufficient_leaves_balances_unchanged(
        self, make_account, credit_engine, selector
    ):
        user = make_account(weekly=5, purchased=3)
        entries_before = len(selector.history(user))

        with pytest.raises(InsufficientCreditsError) as exc_info:
            credit_engine.deduct(user, 10, uuid4())

        assert exc_info.value.required == 10
        assert exc_info.value.available == 8
        balance = selector.balance(user)
        assert (balance.weekly_remaining, balance.purchased_remaining) == (5, 3)
        assert len(selector.history(user)) == entries_before

    def test_exact_total_drains_both_pools(self, make_account, credit_engine, selector):
        user = make_account(weekly=5, purchased=3)

        credit_engine.deduct(user, 8, uuid4())

        assert selector.balance(user).total == 0

    def test_zero_amount_writes_nothing(self, make_account, credit_engine):
        user = make_account(weekly=5)

        result = credit_engine.deduct(user, 0, uuid4())

        assert result.entry_ids == ()

    def test_negative_amount_refused(self, make_account, credit_engine):
        user = make_account(weekly=5)

        with pytest.raises(InvalidCreditAmountError):
            credit_engine.deduct(user, -1, uuid4())

    def test_deduct_logs_structured_event(self, make_account, credit_engine, captured_logs):
        user = make_account(weekly=5)

        credit_engine.deduct(user, 2, uuid4())

        records = [r for r in captured_logs() if r["message"] == "credits_deducted"]
        assert records
        assert records[-1]["amount"] == 2
        assert records[-1]["weekly_used"] == 2


class TestRefund:
    def test_refund_reverses_each_pool(self, make_account, credit_engine, selector):
        user = make_account(weekly=5, purchased=10)
        job_id = uuid4()
        credit_engine.deduct(user, 12, job_id)

        result = credit_engine.refund(user, job_id, LedgerReason.REFUND_TIMEOUT)

        assert (result.refunded_weekly, result.refunded_purchased) == (5, 7)
        assert result.total_refunded == 12
        balance = selector.balance(user)
        assert (balance.weekly_remaining, balance.purchased_remaining) == (5, 10)
        assert _reasons(selector, user)[-2:] == [
            LedgerReason.REFUND_TIMEOUT,
            LedgerReason.REFUND_TIMEOUT,
        ]

    def test_second_refund_is_noop(self, make_account, credit_engine, selector):
        user = make_account(weekly=50)
        job_id = uuid4()
        credit_engine.deduct(user, 20, job_id)
        credit_engine.refund(user, job_id, LedgerReason.REFUND_FAILURE)

        again = credit_engine.refund(user, job_id, LedgerReason.REFUND_TIMEOUT)

        assert again.already_refunded
        assert again.total_refunded == 0
        assert selector.balance(user).weekly_remaining == 50

    def test_refund_of_uncharged_job_writes_nothing(self, make_account, credit_engine):
        user = make_account(weekly=50)

        result = credit_engine.refund(user, uuid4(), LedgerReason.PROVIDER_ERROR)

        assert result.total_refunded == 0
        assert result.entry_ids == ()
        assert not result.already_refunded

    def test_non_refund_reason_refused(self, make_account, credit_engine):
        user = make_account(weekly=50)

        with pytest.raises(ValueError):
            credit_engine.refund(user, uuid4(), LedgerReason.EXPIRY)


class TestRefresh:
    def test_refresh_sets_allocation_with_delta(self, make_account, credit_engine, selector):
        user = make_account(weekly=20)

        result = credit_engine.refresh_weekly(user, 500)

        assert result.delta == 480
        assert selector.balance(user).weekly_remaining == 500
        assert selector.history(user, limit=1)[0].reason == LedgerReason.REFRESH

    def test_refresh_can_reduce_overfull_pool(self, make_account, credit_engine, selector):
        user = make_account(weekly=700)

        result = credit_engine.refresh_weekly(user, 500)

        assert result.delta == -200
        assert selector.balance(user).weekly_remaining == 500

    def test_refresh_at_allocation_writes_no_entry(self, make_account, credit_engine, clock):
        user = make_account(weekly=500)

        result = credit_engine.refresh_weekly(user, 500)

        assert result.delta == 0
        assert result.entry_id is None
        assert result.refreshed_at == clock.now()

    def test_eligibility_follows_interval(self, make_account, credit_engine, clock):
        user = make_account()
        interval = timedelta(days=7)

        assert credit_engine.is_eligible_for_refresh(user, interval)
        credit_engine.refresh_weekly(user, 100)
        assert not credit_engine.is_eligible_for_refresh(user, interval)

        clock.advance(timedelta(days=7).total_seconds())
        assert credit_engine.is_eligible_for_refresh(user, interval)

    def test_refresh_if_eligible_only_once_per_interval(
        self, make_account, credit_engine, selector
    ):
        user = make_account(weekly=10)
        interval = timedelta(days=7)

        first = credit_engine.refresh_if_eligible(user, 1500, interval)
        credit_engine.deduct(user, 100, uuid4())
        second = credit_engine.refresh_if_eligible(user, 1500, interval)

        assert first is not None and first.delta == 1490
        assert second is None
        assert selector.balance(user).weekly_remaining == 1400

    def test_negative_allocation_refused(self, make_account, credit_engine):
        user = make_account()

        with pytest.raises(InvalidCreditAmountError):
            credit_engine.refresh_weekly(user, -1)


class TestForfeit:
    def test_forfeit_zeroes_weekly_only(self, make_account, credit_engine, selector):
        user = make_account(weekly=320, purchased=40)

        result = credit_engine.forfeit_weekly(user, LedgerReason.EXPIRY)

        assert result.forfeited == 320
        balance = selector.balance(user)
        assert (balance.weekly_remaining, balance.purchased_remaining) == (0, 40)
        entry = selector.history(user, limit=1)[0]
        assert (entry.delta, entry.reason) == (-320, LedgerReason.EXPIRY)

    def test_forfeit_empty_pool_writes_nothing(self, make_account, credit_engine):
        user = make_account(purchased=40)

        result = credit_engine.forfeit_weekly(user, LedgerReason.REVOCATION)

        assert result.forfeited == 0
        assert result.entry_id is None

    def test_non_forfeit_reason_refused(self, make_account, credit_engine):
        user = make_account(weekly=10)

        with pytest.raises(ValueError):
            credit_engine.forfeit_weekly(user, LedgerReason.REFRESH)


class TestPurchase:
    def test_purchase_without_subscription_refused(self, make_account, credit_engine):
        user = make_account()

        with pytest.raises(SubscriptionRequiredError):
            credit_engine.purchase(user, 100)

    def test_purchase_with_active_subscription(
        self, make_account, make_subscription, credit_engine
    ):
        user = make_account()
        make_subscription(user, SubscriptionStatus.ACTIVE)

        balance = credit_engine.purchase(user, 100)

        assert balance.purchased_remaining == 100

    def test_purchase_with_expired_subscription_refused(
        self, make_account, make_subscription, credit_engine
    ):
        user = make_account()
        make_subscription(user, SubscriptionStatus.EXPIRED)

        with pytest.raises(SubscriptionRequiredError):
            credit_engine.purchase(user, 100)

    def test_purchase_cap(self, make_account, credit_engine):
        user = make_account(purchased=450)

        with pytest.raises(PurchaseCapExceededError) as exc_info:
            credit_engine.purchase(user, 100, max_purchased=500, require_subscription=False)

        assert exc_info.value.current == 450
        assert exc_info.value.cap == 500

    def test_purchase_up_to_cap(self, make_account, credit_engine):
        user = make_account(purchased=450)

        balance = credit_engine.purchase(user, 50, require_subscription=False)

        assert balance.purchased_remaining == 500

    def test_non_positive_purchase_refused(self, make_account, credit_engine):
        user = make_account()

        with pytest.raises(InvalidCreditAmountError):
            credit_engine.purchase(user, 0, require_subscription=False)


class TestAdminAdjust:
    def test_adjust_records_admin_entry(self, make_account, credit_engine, selector):
        user = make_account()

        balance = credit_engine.admin_adjust(user, PoolType.PURCHASED, 25)

        assert balance.purchased_remaining == 25
        assert selector.history(user, limit=1)[0].reason == LedgerReason.ADMIN_ADJUST

    def test_adjust_cannot_make_purchased_negative(self, make_account, credit_engine):
        user = make_account(purchased=10)

        with pytest.raises(InvalidCreditAmountError):
            credit_engine.admin_adjust(user, PoolType.PURCHASED, -11)
