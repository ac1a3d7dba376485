"""
credits_batch -- periodic reconciliation and recovery.

SweepRunner exposes the scheduler triggers (weekly refresh, missed-refresh
safety net, subscription cleanup, stalled-job recovery, idempotency purge);
SweepScheduler runs them on a fixed cadence in-process.

Nothing in credits_kernel imports from credits_batch.
"""

from credits_batch.scheduler import SweepScheduler
from credits_batch.sweeps import SweepRunner

__all__ = ["SweepRunner", "SweepScheduler"]
