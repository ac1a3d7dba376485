"""
credits_services.container -- central wiring of the credits system.

Responsibility:
    Creates every long-lived component exactly once from a CreditsConfig
    and hands out session-bound kernel services on request.  No kernel
    service constructs collaborators from configuration itself.

Architecture position:
    Services.  Sits above credits_kernel, credits_config and credits_batch
    and is the only place where they are composed.

Invariants enforced:
    - Single instance of provider, verifier, throttle, work queue,
      orchestrator, worker pool and sweep runner per container.
    - Missing collaborator credentials fail at construction
      (ConfigurationError), never at first use.

Usage:
    container = CreditsContainer.from_active_config(session_factory)
    with transaction_scope(session_factory) as session:
        ticket = container.orchestrator.create_job(session, user_id, spec, key)
    container.worker_pool.start()
"""

from __future__ import annotations

import time
from datetime import timedelta
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from credits_batch.scheduler import SweepScheduler
from credits_batch.sweeps import SweepRunner
from credits_config import get_active_config
from credits_config.bridges import (
    build_job_policy,
    build_refresh_policy,
    idempotency_ttl,
    stalled_job_threshold,
)
from credits_config.schema import CreditsConfig
from credits_kernel.domain.clock import Clock, SystemClock
from credits_kernel.logging_config import get_logger
from credits_kernel.selectors.ledger_selector import LedgerSelector
from credits_kernel.services.credit_engine import CreditAccountingEngine
from credits_kernel.services.idempotency_guard import IdempotencyGuard
from credits_kernel.services.job_orchestrator import JobOrchestrator
from credits_kernel.services.subscription_reconciler import SubscriptionReconciler
from credits_services.providers import (
    ProviderRegistry,
    default_provider_registry,
    default_verifier_registry,
)
from credits_services.worker_pool import (
    InProcessWorkQueue,
    JobWorkerPool,
    WindowedSubmissionThrottle,
)

logger = get_logger("services.container")

# Cadence of the in-process sweep scheduler
SWEEP_INTERVALS: dict[str, timedelta] = {
    "weekly_refresh": timedelta(days=1),
    "missed_refresh_safety_net": timedelta(hours=6),
    "subscription_cleanup": timedelta(days=1),
    "stalled_job_recovery": timedelta(minutes=5),
    "idempotency_purge": timedelta(hours=1),
}


class CreditsContainer:
    """Factory and owner of credits components.

    Contract:
        Receives a session factory and a loaded CreditsConfig.  Long-lived
        components are public attributes; session-bound services come from
        the ``*_for()`` methods and share the container's Clock and policies.

    Non-goals:
        - Does NOT manage transaction boundaries (caller's responsibility).
        - Does NOT start background threads on construction.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: CreditsConfig,
        clock: Clock | None = None,
        provider_registry: ProviderRegistry | None = None,
        verifier_registry: ProviderRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.clock = clock or SystemClock()

        self.refresh_policy = build_refresh_policy(config)
        self.job_policy = build_job_policy(config)
        self.idempotency_ttl = idempotency_ttl(config)

        providers = provider_registry or default_provider_registry()
        verifiers = verifier_registry or default_verifier_registry(self.clock)
        self.provider = providers.build(config.provider)
        self.verifier = verifiers.build(config.subscriptions.verifier)

        jobs = config.jobs
        self.throttle = WindowedSubmissionThrottle(
            jobs.max_submissions_per_window,
            jobs.submission_window_seconds,
            sleep=sleep,
        )
        self.work_queue = InProcessWorkQueue()
        self.orchestrator = JobOrchestrator(
            session_factory,
            self.provider,
            self.work_queue,
            clock=self.clock,
            policy=self.job_policy,
            throttle=self.throttle,
            sleep=sleep,
            idempotency_ttl=self.idempotency_ttl,
        )
        self.worker_pool = JobWorkerPool(
            self.work_queue,
            self.orchestrator,
            max_workers=jobs.max_concurrent_jobs,
            max_attempts=jobs.max_queue_attempts,
            backoff_seconds=jobs.queue_backoff_seconds,
            sleep=sleep,
        )
        self.sweeps = SweepRunner(
            session_factory,
            clock=self.clock,
            policy=self.refresh_policy,
            verifier=self.verifier,
            orchestrator=self.orchestrator,
            stalled_after=stalled_job_threshold(config),
        )

        logger.info(
            "credits_container_built",
            extra={
                "config_set_id": config.config_id,
                "provider": config.provider.name,
                "verifier": config.subscriptions.verifier.name,
                "max_concurrent_jobs": jobs.max_concurrent_jobs,
            },
        )

    @classmethod
    def from_active_config(
        cls,
        session_factory: sessionmaker[Session],
        name: str = "default",
        clock: Clock | None = None,
        **kwargs,
    ) -> CreditsContainer:
        return cls(session_factory, get_active_config(name), clock=clock, **kwargs)

    # ------------------------------------------------------------------
    # Session-bound services
    # ------------------------------------------------------------------

    def credit_engine_for(self, session: Session) -> CreditAccountingEngine:
        return CreditAccountingEngine(session, self.clock)

    def reconciler_for(self, session: Session) -> SubscriptionReconciler:
        return SubscriptionReconciler(
            session,
            self.clock,
            verifier=self.verifier,
            policy=self.refresh_policy,
        )

    def idempotency_guard_for(self, session: Session) -> IdempotencyGuard:
        return IdempotencyGuard(session, self.clock, self.idempotency_ttl)

    def ledger_selector_for(self, session: Session) -> LedgerSelector:
        return LedgerSelector(session)

    def purchase(self, session: Session, user_id: str, amount: int):
        """Top up the purchased pool under the configured cap."""
        return self.credit_engine_for(session).purchase(
            user_id,
            amount,
            max_purchased=self.config.credits.max_purchased_credits,
            require_subscription=self.config.credits.purchase_requires_subscription,
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def build_scheduler(self, tick_interval_seconds: float = 60) -> SweepScheduler:
        scheduler = SweepScheduler(self.clock, tick_interval_seconds)
        scheduler.register(
            "weekly_refresh",
            self.sweeps.run_weekly_refresh_sweep,
            SWEEP_INTERVALS["weekly_refresh"],
        )
        scheduler.register(
            "missed_refresh_safety_net",
            self.sweeps.run_missed_refresh_safety_net,
            SWEEP_INTERVALS["missed_refresh_safety_net"],
        )
        scheduler.register(
            "subscription_cleanup",
            self.sweeps.run_subscription_cleanup_sweep,
            SWEEP_INTERVALS["subscription_cleanup"],
        )
        scheduler.register(
            "stalled_job_recovery",
            self.sweeps.run_stalled_job_recovery,
            SWEEP_INTERVALS["stalled_job_recovery"],
        )
        scheduler.register(
            "idempotency_purge",
            self.sweeps.run_idempotency_purge,
            SWEEP_INTERVALS["idempotency_purge"],
        )
        return scheduler
