"""
Protocols for the external collaborators of the kernel.

Contract:
    ``GenerationProvider`` -- exactly three capabilities: estimate, submit, poll.
    ``SubscriptionVerifier`` -- pull verification of a renewal chain.
    ``WorkQueue`` -- hands a created job to the execution channel.
    ``SubmissionThrottle`` -- policy gate in front of provider submission.

Architecture position:
    Kernel > Domain.  Concrete implementations live in credits_services and
    are selected by configuration.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Protocol, runtime_checkable
from uuid import UUID

from credits_kernel.domain.types import (
    ProviderJobStatus,
    SubscriptionEnvironment,
    SubscriptionStatus,
)


# =============================================================================
# Supporting DTOs
# =============================================================================


@dataclass(frozen=True)
class ProviderStatus:
    """Provider-reported state of a submitted job."""

    status: ProviderJobStatus
    result_reference: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class VerificationResult:
    """Answer of the billing authority for one renewal chain."""

    status: SubscriptionStatus | str
    expires_at: datetime | None
    product_id: str | None = None
    auto_renew: bool | None = None


@dataclass(frozen=True)
class WorkItem:
    """Queue payload.  Carries only the job id; workers reload the row."""

    job_id: UUID
    user_id: str
    attempt: int = 1


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class GenerationProvider(Protocol):
    """Capability interface of a generation backend.

    Contract:
        - ``estimate_cost()`` is pure and deterministic for a given spec.
        - ``submit()`` returns the provider's job id or raises
          ProviderSubmissionError.
        - ``get_status()`` returns a ProviderStatus or raises
          ProviderStatusError.
    """

    name: str

    def estimate_cost(self, job_spec: Mapping[str, Any]) -> int: ...

    def submit(self, job_spec: Mapping[str, Any]) -> str: ...

    def get_status(self, provider_job_id: str) -> ProviderStatus: ...


@runtime_checkable
class SubscriptionVerifier(Protocol):
    """Pull verification against the external billing authority.

    Raises VerificationInconclusiveError on network or verification failure.
    """

    def verify(
        self,
        original_transaction_id: str,
        environment: SubscriptionEnvironment,
    ) -> VerificationResult: ...


@runtime_checkable
class WorkQueue(Protocol):
    def enqueue(self, item: WorkItem) -> None: ...


@runtime_checkable
class SubmissionThrottle(Protocol):
    """Blocks until a provider submission is allowed by policy."""

    def acquire(self) -> None: ...
