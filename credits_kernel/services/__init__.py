"""Kernel services - the only code that writes credit, job and subscription state."""

from credits_kernel.services.credit_engine import CreditAccountingEngine
from credits_kernel.services.idempotency_guard import IdempotencyGuard
from credits_kernel.services.job_orchestrator import JobOrchestrator
from credits_kernel.services.ledger_store import LedgerStore
from credits_kernel.services.subscription_reconciler import SubscriptionReconciler
from credits_kernel.services.webhook_deduper import WebhookEventDeduper

__all__ = [
    "CreditAccountingEngine",
    "IdempotencyGuard",
    "JobOrchestrator",
    "LedgerStore",
    "SubscriptionReconciler",
    "WebhookEventDeduper",
]
