"""
Enumerations shared by the credits kernel.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Models store these as their string
    values; services compare against the enum members.
"""

from enum import Enum


class PoolType(str, Enum):
    """The two independent credit buckets of an account."""

    WEEKLY = "weekly"          # Subscription-granted, reset weekly, forfeited on expiry
    PURCHASED = "purchased"    # Bought, never expires, capped


class LedgerReason(str, Enum):
    """Why a ledger entry was written."""

    GENERATION = "generation"
    PURCHASE = "purchase"
    REFRESH = "refresh"
    REFUND_TIMEOUT = "refund_timeout"
    REFUND_FAILURE = "refund_failure"
    PROVIDER_ERROR = "provider_error"
    EXPIRY = "expiry"
    REVOCATION = "revocation"
    ADMIN_ADJUST = "admin_adjust"


# Reasons that reverse a generation charge
REFUND_REASONS: frozenset[LedgerReason] = frozenset({
    LedgerReason.REFUND_TIMEOUT,
    LedgerReason.REFUND_FAILURE,
    LedgerReason.PROVIDER_ERROR,
})

# Reasons that zero the weekly pool
FORFEIT_REASONS: frozenset[LedgerReason] = frozenset({
    LedgerReason.EXPIRY,
    LedgerReason.REVOCATION,
})


class JobStatus(str, Enum):
    """
    Generation job status.

    State machine:
        CREATED -> QUEUED | FAILED
        QUEUED -> PROCESSING | FAILED
        PROCESSING -> PROCESSING | COMPLETED | FAILED
        COMPLETED: terminal
        FAILED: terminal
    """

    CREATED = "created"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class ProviderJobStatus(str, Enum):
    """Status reported by a generation provider for a submitted job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class SubscriptionEnvironment(str, Enum):
    """Billing environment an event or verification came from."""

    PRODUCTION = "production"
    SANDBOX = "sandbox"

    @classmethod
    def parse(cls, value: str | None) -> "SubscriptionEnvironment":
        """Accept the billing authority's spelling ("Sandbox", "Production")."""
        if value and value.strip().lower() == cls.SANDBOX.value:
            return cls.SANDBOX
        return cls.PRODUCTION


class NotificationType(str, Enum):
    """Normalized subscription notification types."""

    RENEW = "renew"
    INITIAL = "initial"
    SUBSCRIBED = "subscribed"
    INTERACTIVE_RENEWAL = "interactive_renewal"
    FAIL_TO_RENEW = "fail_to_renew"
    EXPIRED = "expired"
    CHANGE_RENEWAL_STATUS = "change_renewal_status"
    REFUND = "refund"
    REVOKE = "revoke"


class SubscriptionSource(str, Enum):
    """Channel a subscription signal arrived through."""

    PUSH = "push"
    CLIENT = "client"
    SWEEP = "sweep"


class IdempotencyOutcome(str, Enum):
    NEW = "new"                  # No live record; caller proceeds
    REPLAY = "replay"            # Same request already produced a job


class ReconcileOutcome(str, Enum):
    """What the reconciler did with a subscription signal."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"          # Webhook hash already recorded
    STALE = "stale"                  # Older than the state already stored
    IGNORED = "ignored"              # Unknown notification type
    UNMATCHED = "unmatched"          # No subscription for the transaction id
