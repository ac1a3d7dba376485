"""
DTOs -- Immutable results returned by kernel services and selectors.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Services convert ORM rows into these
    at the boundary; callers never receive live ORM entities from the engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from credits_kernel.domain.types import (
    IdempotencyOutcome,
    JobStatus,
    LedgerReason,
    PoolType,
    ReconcileOutcome,
    SubscriptionStatus,
)


@dataclass(frozen=True)
class BalanceSnapshot:
    """Cached balance of one account at a point in time."""

    user_id: str
    weekly_remaining: int
    purchased_remaining: int
    last_weekly_refresh_at: datetime | None

    @property
    def total(self) -> int:
        return max(self.weekly_remaining, 0) + self.purchased_remaining


@dataclass(frozen=True)
class LedgerEntryView:
    entry_id: UUID
    user_id: str
    pool_type: PoolType
    delta: int
    reason: LedgerReason
    job_id: UUID | None
    created_at: datetime


@dataclass(frozen=True)
class DeductionResult:
    """Split of a deduction across pools.  ``entry_ids`` holds one id per pool drawn."""

    user_id: str
    amount: int
    weekly_used: int
    purchased_used: int
    entry_ids: tuple[UUID, ...]
    balance: BalanceSnapshot


@dataclass(frozen=True)
class RefundResult:
    user_id: str
    job_id: UUID
    reason: LedgerReason
    refunded_weekly: int
    refunded_purchased: int
    entry_ids: tuple[UUID, ...]
    already_refunded: bool = False

    @property
    def total_refunded(self) -> int:
        return self.refunded_weekly + self.refunded_purchased


@dataclass(frozen=True)
class RefreshResult:
    user_id: str
    allocation: int
    delta: int
    entry_id: UUID | None
    refreshed_at: datetime


@dataclass(frozen=True)
class ForfeitResult:
    user_id: str
    reason: LedgerReason
    forfeited: int
    entry_id: UUID | None


@dataclass(frozen=True)
class PoolInvariantCheck:
    pool_type: PoolType
    cached_balance: int
    ledger_sum: int

    @property
    def holds(self) -> bool:
        return self.cached_balance == self.ledger_sum


@dataclass(frozen=True)
class InvariantReport:
    """Cached balance versus ledger sum, per pool."""

    user_id: str
    pools: tuple[PoolInvariantCheck, ...]

    @property
    def holds(self) -> bool:
        return all(p.holds for p in self.pools)


@dataclass(frozen=True)
class IdempotencyCheck:
    outcome: IdempotencyOutcome
    key: str
    job_id: UUID | None = None

    @property
    def is_replay(self) -> bool:
        return self.outcome == IdempotencyOutcome.REPLAY


@dataclass(frozen=True)
class JobTicket:
    """Returned by job creation.  ``replayed`` is True for an idempotent replay."""

    job_id: UUID
    user_id: str
    status: JobStatus
    estimated_cost: int
    replayed: bool = False


@dataclass(frozen=True)
class JobOutcome:
    """Final (or current) state of a job after a processing pass."""

    job_id: UUID
    status: JobStatus
    provider_job_id: str | None = None
    result_reference: str | None = None
    error_message: str | None = None
    refund: RefundResult | None = None


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    user_id: str | None = None
    previous_status: SubscriptionStatus | None = None
    status: SubscriptionStatus | None = None
    refresh: RefreshResult | None = None
    forfeit: ForfeitResult | None = None
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SweepReport:
    """Per-run counters for a scheduler-triggered sweep."""

    sweep: str
    examined: int = 0
    changed: int = 0
    skipped: int = 0
    failed: int = 0
