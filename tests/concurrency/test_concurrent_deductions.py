"""
Concurrency tests: the account row lock serializes balance changes.

Each thread works in its own transaction_scope, as workers and request
handlers do.  On SQLite the BEGIN IMMEDIATE transactions serialize; on
PostgreSQL the SELECT ... FOR UPDATE row lock does.
"""

import threading
from uuid import uuid4

import pytest

from credits_kernel.db.engine import transaction_scope
from credits_kernel.domain.types import SubscriptionEnvironment, SubscriptionStatus
from credits_kernel.exceptions import InsufficientCreditsError
from credits_kernel.selectors.ledger_selector import LedgerSelector
from credits_kernel.services.credit_engine import CreditAccountingEngine
from credits_kernel.services.subscription_reconciler import SubscriptionReconciler


def _run_concurrently(targets):
    barrier = threading.Barrier(len(targets))
    results: list = [None] * len(targets)

    def wrap(index, target):
        barrier.wait()
        try:
            results[index] = target()
        except Exception as exc:
            results[index] = exc

    threads = [
        threading.Thread(target=wrap, args=(i, t)) for i, t in enumerate(targets)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results


@pytest.mark.slow_locks
def test_two_deductions_one_wins(session_factory, make_account, clock):
    user = make_account(weekly=5, purchased=10)

    def deduct():
        with transaction_scope(session_factory) as s:
            return CreditAccountingEngine(s, clock).deduct(user, 10, uuid4())

    results = _run_concurrently([deduct, deduct])

    failures = [r for r in results if isinstance(r, InsufficientCreditsError)]
    successes = [r for r in results if not isinstance(r, Exception)]
    assert len(failures) == 1
    assert len(successes) == 1
    with transaction_scope(session_factory) as s:
        selector = LedgerSelector(s)
        balance = selector.balance(user)
        invariant = selector.verify_invariant(user)
    assert (balance.weekly_remaining, balance.purchased_remaining) == (0, 5)
    assert invariant.holds


@pytest.mark.slow_locks
def test_many_small_deductions_never_overdraw(session_factory, make_account, clock):
    user = make_account(weekly=7, purchased=3)

    def deduct():
        with transaction_scope(session_factory) as s:
            return CreditAccountingEngine(s, clock).deduct(user, 1, uuid4())

    results = _run_concurrently([deduct] * 12)

    assert sum(1 for r in results if not isinstance(r, Exception)) == 10
    assert all(
        isinstance(r, InsufficientCreditsError) for r in results if isinstance(r, Exception)
    )
    with transaction_scope(session_factory) as s:
        assert LedgerSelector(s).balance(user).total == 0


@pytest.mark.slow_locks
def test_concurrent_verifications_refresh_once(session_factory, verifier, clock):
    def verify():
        with transaction_scope(session_factory) as s:
            return SubscriptionReconciler(s, clock, verifier=verifier).handle_client_verification(
                "hana", "otid-hana", SubscriptionEnvironment.PRODUCTION
            )

    results = _run_concurrently([verify, verify])

    refreshed = [r for r in results if not isinstance(r, Exception) and r.refresh is not None]
    assert len(refreshed) == 1
    with transaction_scope(session_factory) as s:
        selector = LedgerSelector(s)
        assert selector.balance("hana").weekly_remaining == 1500
        assert selector.verify_invariant("hana").holds
    assert all(
        r.status == SubscriptionStatus.ACTIVE for r in results if not isinstance(r, Exception)
    )
