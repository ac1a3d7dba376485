"""Domain models for the credits kernel."""

from credits_kernel.models.account import CreditAccount
from credits_kernel.models.idempotency import IdempotencyRecord
from credits_kernel.models.job import VALID_TRANSITIONS, GenerationJob
from credits_kernel.models.ledger import LedgerEntry
from credits_kernel.models.subscription import Subscription
from credits_kernel.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "CreditAccount",
    "GenerationJob",
    "IdempotencyRecord",
    "LedgerEntry",
    "ProcessedWebhookEvent",
    "Subscription",
    "VALID_TRANSITIONS",
]
