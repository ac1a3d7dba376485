"""
Typed Exception Hierarchy for the Credits Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers branch on the kind of failure (refuse the request, retry the
submission, absorb a duplicate webhook). Matching on message text is fragile,
so every failure the kernel can surface has:
  1. A TYPED exception class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured attributes (user_id, job_id, amounts) instead of parsed text
  4. A RETRYABLE flag telling the caller whether the same call may succeed later

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    CreditsKernelError (base)
    |
    +-- CreditError
    |   +-- InsufficientCreditsError
    |   +-- AccountNotFoundError
    |   +-- InvalidCreditAmountError
    |   +-- PurchaseCapExceededError
    |   +-- SubscriptionRequiredError
    |
    +-- IdempotencyError
    |   +-- IdempotencyConflictError
    |   +-- IdempotencyInProgressError
    |
    +-- JobError
    |   +-- JobNotFoundError
    |   +-- InvalidJobTransitionError
    |
    +-- ProviderError
    |   +-- ProviderSubmissionError      (retryable)
    |   +-- ProviderStatusError          (retryable)
    |   +-- ProviderTimeoutError
    |
    +-- SubscriptionError
    |   +-- VerificationInconclusiveError (retryable)
    |   +-- UnverifiedNotificationError
    |   +-- SubscriptionOwnershipError
    |   +-- DuplicateEventError           (absorbed, never surfaced)
    |
    +-- ConfigurationError
    +-- ImmutabilityViolationError

===============================================================================
HANDLING PATTERNS
===============================================================================

1. NO SIDE EFFECT ON REFUSAL:

    try:
        engine.deduct(session, user_id, amount, job_id)
    except InsufficientCreditsError as e:
        return {"error": e.code, "required": e.required, "available": e.available}

2. DUPLICATES ARE SUCCESS:

    DuplicateEventError is raised by WebhookEventDeduper and caught by the
    reconciler; callers only see an outcome of ``duplicate``.

3. VERIFICATION NEVER FORFEITS:

    VerificationInconclusiveError is logged by the sweep and retried next run.
    It must never be mapped to an expiry.
"""


class CreditsKernelError(Exception):
    """
    Base exception for all credits kernel errors.

    All subclasses carry a `code` class attribute for machine-readable
    identification and a `retryable` flag.
    """

    code: str = "CREDITS_KERNEL_ERROR"
    retryable: bool = False


# Credit accounting


class CreditError(CreditsKernelError):
    """Base exception for balance-affecting refusals."""

    code: str = "CREDIT_ERROR"


class InsufficientCreditsError(CreditError):
    """Weekly plus purchased balance cannot cover the requested amount."""

    code: str = "INSUFFICIENT_CREDITS"

    def __init__(self, user_id: str, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits for user {user_id}: "
            f"required {required}, available {available}"
        )


class AccountNotFoundError(CreditError):
    """No credit account exists for the user."""

    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Credit account not found for user {user_id}")


class InvalidCreditAmountError(CreditError):
    """Amount is not acceptable for the requested operation."""

    code: str = "INVALID_CREDIT_AMOUNT"

    def __init__(self, amount: int, reason: str):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid credit amount {amount}: {reason}")


class PurchaseCapExceededError(CreditError):
    """A purchase would push the purchased pool over its cap."""

    code: str = "PURCHASE_CAP_EXCEEDED"

    def __init__(self, user_id: str, current: int, amount: int, cap: int):
        self.user_id = user_id
        self.current = current
        self.amount = amount
        self.cap = cap
        super().__init__(
            f"Purchase of {amount} would exceed cap {cap} "
            f"(current purchased balance {current}) for user {user_id}"
        )


class SubscriptionRequiredError(CreditError):
    """The operation needs an active subscription."""

    code: str = "SUBSCRIPTION_REQUIRED"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Active subscription required for user {user_id}")


# Idempotency


class IdempotencyError(CreditsKernelError):
    """Base exception for idempotency key handling."""

    code: str = "IDEMPOTENCY_ERROR"


class IdempotencyConflictError(IdempotencyError):
    """
    Key was already used with a different payload.

    The key is bound to its first request hash forever (until expiry).
    """

    code: str = "IDEMPOTENCY_CONFLICT"

    def __init__(self, key: str, expected_hash: str, received_hash: str):
        self.key = key
        self.expected_hash = expected_hash
        self.received_hash = received_hash
        super().__init__(
            f"Idempotency key {key} was used with a different request "
            f"(expected {expected_hash}, received {received_hash})"
        )


class IdempotencyInProgressError(IdempotencyError):
    """Key is claimed by a request that has not produced a result yet."""

    code: str = "IDEMPOTENCY_IN_PROGRESS"
    retryable: bool = True

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Request with idempotency key {key} is still in progress")


# Jobs


class JobError(CreditsKernelError):
    """Base exception for generation job errors."""

    code: str = "JOB_ERROR"


class JobNotFoundError(JobError):
    code: str = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Generation job not found: {job_id}")


class InvalidJobTransitionError(JobError):
    """Requested status change is not an edge of the job state machine."""

    code: str = "INVALID_JOB_TRANSITION"

    def __init__(self, job_id: str, from_status: str, to_status: str):
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid job transition for {job_id}: {from_status} -> {to_status}"
        )


# Provider


class ProviderError(CreditsKernelError):
    """Base exception for generation provider failures."""

    code: str = "PROVIDER_ERROR"


class ProviderSubmissionError(ProviderError):
    """Provider rejected or failed to accept a submission."""

    code: str = "PROVIDER_SUBMISSION_ERROR"
    retryable: bool = True

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"Submission to {provider} failed: {reason}")


class ProviderStatusError(ProviderError):
    """A status poll failed. The next poll attempt may succeed."""

    code: str = "PROVIDER_STATUS_ERROR"
    retryable: bool = True

    def __init__(self, provider: str, provider_job_id: str, reason: str):
        self.provider = provider
        self.provider_job_id = provider_job_id
        self.reason = reason
        super().__init__(
            f"Status poll for {provider_job_id} on {provider} failed: {reason}"
        )


class ProviderTimeoutError(ProviderError):
    """Poll budget exhausted before the provider reported a terminal state."""

    code: str = "PROVIDER_TIMEOUT"

    def __init__(self, job_id: str, attempts: int):
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(
            f"Timeout waiting for provider on job {job_id} after {attempts} polls"
        )


# Subscriptions and webhooks


class SubscriptionError(CreditsKernelError):
    """Base exception for subscription reconciliation."""

    code: str = "SUBSCRIPTION_ERROR"


class VerificationInconclusiveError(SubscriptionError):
    """
    External verification did not produce a usable answer.

    Never treated as confirmation of expiry.
    """

    code: str = "VERIFICATION_INCONCLUSIVE"
    retryable: bool = True

    def __init__(self, original_transaction_id: str, reason: str):
        self.original_transaction_id = original_transaction_id
        self.reason = reason
        super().__init__(
            f"Verification of {original_transaction_id} inconclusive: {reason}"
        )


class UnverifiedNotificationError(SubscriptionError):
    """Push notification reached the core without a confirmed signature check."""

    code: str = "UNVERIFIED_NOTIFICATION"

    def __init__(self, source: str):
        self.source = source
        super().__init__(f"Refusing unverified notification from {source}")


class SubscriptionOwnershipError(SubscriptionError):
    """Renewal chain is already bound to a different user."""

    code: str = "SUBSCRIPTION_OWNERSHIP_CONFLICT"

    def __init__(self, original_transaction_id: str, user_id: str, owner_id: str):
        self.original_transaction_id = original_transaction_id
        self.user_id = user_id
        self.owner_id = owner_id
        super().__init__(
            f"Transaction {original_transaction_id} belongs to another user"
        )


class DuplicateEventError(SubscriptionError):
    """Webhook payload hash was already recorded."""

    code: str = "DUPLICATE_EVENT"

    def __init__(self, event_hash: str):
        self.event_hash = event_hash
        super().__init__(f"Webhook event already processed: {event_hash}")


# Configuration


class ConfigurationError(CreditsKernelError):
    """
    Required configuration or credential is missing.

    Raised at wiring time so the operation is refused instead of running
    against an unsafe default.
    """

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, setting: str, reason: str):
        self.setting = setting
        self.reason = reason
        super().__init__(f"Configuration error for {setting}: {reason}")


# Persistence


class ImmutabilityViolationError(CreditsKernelError):
    """Attempt to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )
