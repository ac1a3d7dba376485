"""Read-only selectors over credit accounts, ledger and subscriptions."""

from credits_kernel.selectors.ledger_selector import LedgerSelector

__all__ = ["LedgerSelector"]
