"""
Credits Kernel

Per-user credit accounting for paid generation jobs:
- Append-only credit ledger with a cached per-pool balance
- Weekly-first deduction, refunds, weekly refresh and forfeiture
- Generation job lifecycle with reservation and refund on failure
- Subscription reconciliation from push, client verification and sweeps
"""

__version__ = "0.1.0"
