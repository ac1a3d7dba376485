"""
credits_services -- wiring and execution for the credits kernel.

CreditsContainer builds the provider, verifier, throttle, work queue,
orchestrator, worker pool and sweep runner from a loaded configuration.
"""

from credits_services.container import CreditsContainer
from credits_services.providers import (
    MockGenerationProvider,
    ProviderRegistry,
    StaticSubscriptionVerifier,
    default_provider_registry,
    default_verifier_registry,
)
from credits_services.worker_pool import (
    InProcessWorkQueue,
    JobWorkerPool,
    WindowedSubmissionThrottle,
)

__all__ = [
    "CreditsContainer",
    "InProcessWorkQueue",
    "JobWorkerPool",
    "MockGenerationProvider",
    "ProviderRegistry",
    "StaticSubscriptionVerifier",
    "WindowedSubmissionThrottle",
    "default_provider_registry",
    "default_verifier_registry",
]
