"""
Provider and verifier implementations, and the registry that selects them.

Contract:
    ``ProviderRegistry`` maps a configured name to a factory.  Factories
    receive the CollaboratorSettings of their section and return a
    GenerationProvider or SubscriptionVerifier.
    ``default_provider_registry()`` / ``default_verifier_registry()`` return
    registries with the built-in implementations registered.

Architecture position:
    Services.  Implements the kernel's collaborator protocols; the kernel
    only sees the protocol.

Invariants enforced:
    - One factory per name.
    - A factory registered with ``requires_credential=True`` is never
      invoked without a credential; ConfigurationError refuses the build.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from credits_config.schema import CollaboratorSettings
from credits_kernel.domain.clock import Clock, SystemClock
from credits_kernel.domain.protocols import ProviderStatus, VerificationResult
from credits_kernel.domain.types import (
    ProviderJobStatus,
    SubscriptionEnvironment,
    SubscriptionStatus,
)
from credits_kernel.exceptions import (
    ConfigurationError,
    ProviderStatusError,
    ProviderSubmissionError,
    VerificationInconclusiveError,
)
from credits_kernel.logging_config import get_logger

logger = get_logger("services.providers")


# =============================================================================
# Registry
# =============================================================================


@dataclass(frozen=True)
class _Registration:
    factory: Callable[[CollaboratorSettings], Any]
    requires_credential: bool


class ProviderRegistry:
    """Registry mapping configured names to collaborator factories.

    Contract:
        - ``register()`` adds a factory; raises ValueError on duplicate.
        - ``build()`` constructs the collaborator named by the settings;
          raises KeyError if missing, ConfigurationError if a required
          credential is absent.
    """

    def __init__(self, kind: str = "provider") -> None:
        self.kind = kind
        self._factories: dict[str, _Registration] = {}

    def register(
        self,
        name: str,
        factory: Callable[[CollaboratorSettings], Any],
        requires_credential: bool = False,
    ) -> None:
        if name in self._factories:
            raise ValueError(f"{self.kind} '{name}' is already registered")
        self._factories[name] = _Registration(factory, requires_credential)

    def build(self, settings: CollaboratorSettings) -> Any:
        try:
            registration = self._factories[settings.name]
        except KeyError:
            raise KeyError(
                f"No {self.kind} registered as '{settings.name}'. "
                f"Available: {sorted(self._factories)}"
            ) from None

        if registration.requires_credential and not settings.credential:
            raise ConfigurationError(
                f"{self.kind}.{settings.name}",
                f"credential missing (environment variable "
                f"{settings.credential_env or '<unset>'})",
            )

        logger.info(
            "collaborator_built",
            extra={"kind": self.kind, "collaborator": settings.name},
        )
        return registration.factory(settings)

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._factories))

    def __contains__(self, name: str) -> bool:
        return name in self._factories


# =============================================================================
# Mock generation provider
# =============================================================================


MEDIA_COSTS: dict[str, int] = {"video": 100, "image": 10}
DEFAULT_COST = 1


class MockGenerationProvider:
    """In-process provider with deterministic costs and scripted outcomes.

    ``fail_submissions`` makes the next N submissions raise
    ProviderSubmissionError.  ``pending_polls`` is the number of status
    polls that report ``processing`` before a job completes.  Provider job ids
    listed in ``failing_jobs`` report ``failed``.
    """

    name = "mock"

    def __init__(
        self,
        pending_polls: int = 0,
        fail_submissions: int = 0,
        result_base_url: str = "https://mock.invalid/result",
    ):
        self.pending_polls = pending_polls
        self.fail_submissions = fail_submissions
        self.result_base_url = result_base_url
        self.failing_jobs: set[str] = set()
        self.never_complete = False
        self.submissions: list[str] = []
        self._polls: dict[str, int] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: CollaboratorSettings) -> MockGenerationProvider:
        options = settings.options
        return cls(
            pending_polls=int(options.get("pending_polls", 0)),
            fail_submissions=int(options.get("fail_submissions", 0)),
            result_base_url=options.get("result_base_url", "https://mock.invalid/result"),
        )

    def estimate_cost(self, job_spec: Mapping[str, Any]) -> int:
        return MEDIA_COSTS.get(job_spec.get("media_type"), DEFAULT_COST)

    def submit(self, job_spec: Mapping[str, Any]) -> str:
        with self._lock:
            if self.fail_submissions > 0:
                self.fail_submissions -= 1
                raise ProviderSubmissionError(self.name, "simulated submission failure")
            provider_job_id = f"mock-{uuid.uuid4()}"
            self.submissions.append(provider_job_id)
            self._polls[provider_job_id] = 0
            return provider_job_id

    def get_status(self, provider_job_id: str) -> ProviderStatus:
        with self._lock:
            if provider_job_id not in self._polls:
                raise ProviderStatusError(self.name, provider_job_id, "unknown job")
            self._polls[provider_job_id] += 1
            polls = self._polls[provider_job_id]

        if provider_job_id in self.failing_jobs:
            return ProviderStatus(ProviderJobStatus.FAILED, error="simulated provider failure")
        if self.never_complete or polls <= self.pending_polls:
            return ProviderStatus(ProviderJobStatus.PROCESSING)
        return ProviderStatus(
            ProviderJobStatus.COMPLETED,
            result_reference=f"{self.result_base_url}/{provider_job_id}",
        )

    def poll_count(self, provider_job_id: str) -> int:
        with self._lock:
            return self._polls.get(provider_job_id, 0)


# =============================================================================
# Static subscription verifier
# =============================================================================


INCONCLUSIVE = "inconclusive"


class StaticSubscriptionVerifier:
    """Verifier answering from a fixed table.

    Unknown transactions get ``default_status`` with an expiry
    ``valid_for`` after the clock's now; a ``default_status`` of None makes
    them inconclusive, so nothing is granted without a scripted answer.
    Transactions listed in ``inconclusive`` raise
    VerificationInconclusiveError.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        default_status: SubscriptionStatus | None = SubscriptionStatus.ACTIVE,
        valid_for: timedelta = timedelta(days=7),
    ):
        self.clock = clock or SystemClock()
        self.default_status = (
            None if default_status is None else SubscriptionStatus(default_status)
        )
        self.valid_for = valid_for
        self.inconclusive: set[str] = set()
        self._answers: dict[str, VerificationResult] = {}
        self.calls: list[tuple[str, SubscriptionEnvironment]] = []

    @classmethod
    def from_settings(
        cls, settings: CollaboratorSettings, clock: Clock | None = None
    ) -> StaticSubscriptionVerifier:
        options = settings.options
        status = options.get("status", INCONCLUSIVE)
        return cls(
            clock=clock,
            default_status=None if status == INCONCLUSIVE else SubscriptionStatus(status),
            valid_for=timedelta(days=float(options.get("valid_for_days", 7))),
        )

    def set_answer(
        self,
        original_transaction_id: str,
        status: SubscriptionStatus | str,
        expires_at: datetime | None = None,
        product_id: str | None = None,
        auto_renew: bool | None = None,
    ) -> None:
        self._answers[original_transaction_id] = VerificationResult(
            status=status,
            expires_at=expires_at,
            product_id=product_id,
            auto_renew=auto_renew,
        )

    def verify(
        self,
        original_transaction_id: str,
        environment: SubscriptionEnvironment,
    ) -> VerificationResult:
        self.calls.append((original_transaction_id, environment))
        if original_transaction_id in self.inconclusive:
            raise VerificationInconclusiveError(
                original_transaction_id, "verification service unavailable"
            )
        answer = self._answers.get(original_transaction_id)
        if answer is not None:
            return answer
        if self.default_status is None:
            raise VerificationInconclusiveError(
                original_transaction_id, "no answer configured"
            )
        return VerificationResult(
            status=self.default_status,
            expires_at=self.clock.now() + self.valid_for,
            auto_renew=self.default_status == SubscriptionStatus.ACTIVE,
        )


def default_provider_registry() -> ProviderRegistry:
    registry = ProviderRegistry("provider")
    registry.register("mock", MockGenerationProvider.from_settings)
    return registry


def default_verifier_registry(clock: Clock | None = None) -> ProviderRegistry:
    registry = ProviderRegistry("verifier")
    registry.register(
        "static", lambda settings: StaticSubscriptionVerifier.from_settings(settings, clock)
    )
    return registry
