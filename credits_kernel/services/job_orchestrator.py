"""
JobOrchestrator -- reservation, dispatch, completion and refund of generation jobs.

Responsibility:
    Owns the job state machine.  Creating a job reserves its estimated cost;
    every path into ``failed`` returns that reservation through a refund.

Architecture position:
    Kernel > Services.  Long-lived component, constructed once with a
    session factory and its collaborators.  Request-path methods take the
    caller's Session; the worker entry point process_job() opens its own
    short transaction scopes so no row lock is held across provider I/O.

Invariants enforced:
    - create_job: idempotency claim, job insert, deduction, enqueue and the
      ``queued`` transition happen in the caller's transaction.
    - Submission is keyed by provider_job_id.  A job that already has one is
      polled on re-entry, never submitted again.
    - Before each status poll the job row is re-read; a push signal that
      already finalized the job stops the loop.
    - fail_job() refunds unconditionally with a reason naming the cause
      (refund_timeout, refund_failure, provider_error).
    - Terminal jobs are never transitioned again.

Failure modes:
    - InsufficientCreditsError, IdempotencyConflictError and
      IdempotencyInProgressError propagate from create_job() with nothing
      written once the caller rolls back.
    - JobNotFoundError from process_job() when the work item outlived its
      job row (see create_job note on the enqueue boundary).

Open design points:
    - The enqueue in create_job() targets an external channel.  If the
      caller's commit fails after a successful enqueue, the work item
      references a job that does not exist.  Workers drop such items after
      their retries; the stalled-job sweep fails and refunds jobs that stay
      ``queued``.
    - A provider completion that arrives after a timeout refund leaves the
      job ``failed`` and is logged as late_provider_completion.  The result
      is not delivered and no charge is re-applied.
"""

import time
from datetime import timedelta
from typing import Any, Callable, Mapping
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from credits_kernel.db.engine import transaction_scope
from credits_kernel.domain.clock import Clock, SystemClock
from credits_kernel.domain.dtos import JobOutcome, JobTicket, RefundResult
from credits_kernel.domain.policies import JobPolicy
from credits_kernel.domain.protocols import (
    GenerationProvider,
    SubmissionThrottle,
    WorkItem,
    WorkQueue,
)
from credits_kernel.domain.types import JobStatus, LedgerReason, ProviderJobStatus
from credits_kernel.exceptions import (
    JobNotFoundError,
    ProviderStatusError,
    ProviderSubmissionError,
    ProviderTimeoutError,
)
from credits_kernel.logging_config import LogContext, get_logger
from credits_kernel.models.job import GenerationJob
from credits_kernel.services.credit_engine import CreditAccountingEngine
from credits_kernel.services.idempotency_guard import DEFAULT_TTL, IdempotencyGuard
from credits_kernel.utils.hashing import hash_payload

logger = get_logger("services.job_orchestrator")

DEFAULT_MEDIA_TYPE = "image"


def _outcome(job: GenerationJob, refund: RefundResult | None = None) -> JobOutcome:
    return JobOutcome(
        job_id=job.id,
        status=job.status_enum,
        provider_job_id=job.provider_job_id,
        result_reference=job.result_reference,
        error_message=job.error_message,
        refund=refund,
    )


class JobOrchestrator:
    """
    Drives a generation job from creation to a terminal state.

    Contract:
        - ``create_job()`` runs in the caller's transaction and returns a
          JobTicket; the caller commits.
        - ``process_job()`` is the worker entry point and manages its own
          transactions.
        - ``complete_job()``, ``fail_job()`` and ``handle_provider_signal()``
          run in the caller's transaction.

    Non-goals:
        - Does NOT cancel in-flight provider work.  A timeout stops polling
          and refunds.
        - Does NOT compute submission rate limits; the injected
          SubmissionThrottle decides.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        provider: GenerationProvider,
        queue: WorkQueue,
        clock: Clock | None = None,
        policy: JobPolicy | None = None,
        throttle: SubmissionThrottle | None = None,
        sleep: Callable[[float], None] = time.sleep,
        idempotency_ttl: timedelta = DEFAULT_TTL,
    ):
        self._session_factory = session_factory
        self._provider = provider
        self._queue = queue
        self._clock = clock or SystemClock()
        self._policy = policy or JobPolicy()
        self._throttle = throttle
        self._sleep = sleep
        self._idempotency_ttl = idempotency_ttl

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def create_job(
        self,
        session: Session,
        user_id: str,
        job_spec: Mapping[str, Any],
        idempotency_key: str | None = None,
    ) -> JobTicket:
        """Reserve credits for and enqueue a new job."""
        guard = IdempotencyGuard(session, self._clock, self._idempotency_ttl)
        if idempotency_key is not None:
            check = guard.claim(
                idempotency_key,
                user_id,
                self._policy.endpoint,
                hash_payload(dict(job_spec)),
            )
            if check.is_replay:
                job = self._get_job(session, check.job_id)
                return JobTicket(
                    job_id=job.id,
                    user_id=job.user_id,
                    status=job.status_enum,
                    estimated_cost=job.estimated_cost,
                    replayed=True,
                )

        cost = self._provider.estimate_cost(job_spec)
        now = self._clock.now()
        job = GenerationJob(
            user_id=user_id,
            status=JobStatus.CREATED.value,
            media_type=str(job_spec.get("media_type", DEFAULT_MEDIA_TYPE)),
            provider_name=self._provider.name,
            job_spec=dict(job_spec),
            estimated_cost=cost,
            attempt_count=0,
            created_at=now,
            updated_at=now,
        )
        session.add(job)
        session.flush()

        with LogContext.bind(user_id=user_id, job_id=job.id):
            CreditAccountingEngine(session, self._clock).deduct(
                user_id, cost, job.id, LedgerReason.GENERATION
            )

            self._queue.enqueue(WorkItem(job_id=job.id, user_id=user_id))
            job.transition_to(JobStatus.QUEUED, self._clock.now())
            if idempotency_key is not None:
                guard.attach_job(idempotency_key, job.id)
            session.flush()

            logger.info(
                "job_created",
                extra={
                    "estimated_cost": cost,
                    "provider": self._provider.name,
                    "media_type": job.media_type,
                },
            )

        return JobTicket(
            job_id=job.id,
            user_id=user_id,
            status=JobStatus.QUEUED,
            estimated_cost=cost,
        )

    # ------------------------------------------------------------------
    # Resolution (caller's transaction)
    # ------------------------------------------------------------------

    def complete_job(
        self,
        session: Session,
        job_id: UUID,
        result_reference: str | None,
    ) -> JobOutcome:
        """Mark the job completed and store its result."""
        job = self._lock_job(session, job_id)
        status = job.status_enum

        if status == JobStatus.COMPLETED:
            return _outcome(job)
        if status == JobStatus.FAILED:
            logger.warning(
                "late_provider_completion",
                extra={
                    "job_id": str(job.id),
                    "user_id": job.user_id,
                    "provider_job_id": job.provider_job_id,
                    "result_reference": result_reference,
                },
            )
            return _outcome(job)

        now = self._clock.now()
        job.transition_to(JobStatus.COMPLETED, now)
        job.result_reference = result_reference
        job.completed_at = now
        session.flush()
        logger.info(
            "job_completed",
            extra={"job_id": str(job.id), "user_id": job.user_id},
        )
        return _outcome(job)

    def fail_job(
        self,
        session: Session,
        job_id: UUID,
        reason: LedgerReason,
        error_message: str | None = None,
    ) -> JobOutcome:
        """Mark the job failed and refund its reservation."""
        job = self._lock_job(session, job_id)
        if job.status_enum.is_terminal:
            logger.debug(
                "job_already_terminal",
                extra={"job_id": str(job.id), "status": job.status},
            )
            return _outcome(job)

        job.transition_to(JobStatus.FAILED, self._clock.now())
        job.error_message = error_message
        session.flush()

        refund = CreditAccountingEngine(session, self._clock).refund(
            job.user_id, job.id, reason
        )
        logger.warning(
            "job_failed",
            extra={
                "job_id": str(job.id),
                "user_id": job.user_id,
                "reason": LedgerReason(reason).value,
                "error_message": error_message,
                "refunded": refund.total_refunded,
            },
        )
        return _outcome(job, refund)

    def handle_provider_signal(
        self,
        session: Session,
        provider_job_id: str,
        status: ProviderJobStatus,
        result_reference: str | None = None,
        error: str | None = None,
    ) -> JobOutcome | None:
        """Apply an asynchronous push from the provider.  None if unmatched."""
        job = session.execute(
            select(GenerationJob).where(GenerationJob.provider_job_id == provider_job_id)
        ).scalar_one_or_none()
        if job is None:
            logger.warning(
                "provider_signal_unmatched",
                extra={"provider_job_id": provider_job_id, "status": str(status)},
            )
            return None

        status = ProviderJobStatus(status)
        if status == ProviderJobStatus.COMPLETED:
            return self.complete_job(session, job.id, result_reference)
        if status == ProviderJobStatus.FAILED:
            return self.fail_job(session, job.id, LedgerReason.PROVIDER_ERROR, error)
        return _outcome(job)

    def stalled_job_ids(self, session: Session, older_than: timedelta) -> list[UUID]:
        """Non-terminal jobs whose last update is older than ``older_than``."""
        cutoff = self._clock.now() - older_than
        return list(
            session.execute(
                select(GenerationJob.id)
                .where(
                    GenerationJob.status.in_([
                        JobStatus.CREATED.value,
                        JobStatus.QUEUED.value,
                        JobStatus.PROCESSING.value,
                    ]),
                    GenerationJob.updated_at < cutoff,
                )
                .order_by(GenerationJob.updated_at)
            ).scalars()
        )

    # ------------------------------------------------------------------
    # Worker path (own transactions)
    # ------------------------------------------------------------------

    def process_job(self, job_id: UUID) -> JobOutcome:
        """Submit (if needed) and poll until the job reaches a terminal state."""
        with LogContext.bind(job_id=job_id):
            with transaction_scope(self._session_factory) as session:
                job = self._lock_job(session, job_id)
                if job.status_enum.is_terminal:
                    logger.info("job_already_terminal", extra={"status": job.status})
                    return _outcome(job)
                job.transition_to(JobStatus.PROCESSING, self._clock.now())
                provider_job_id = job.provider_job_id
                job_spec = dict(job.job_spec)
                if provider_job_id is None:
                    job.attempt_count += 1
                session.flush()

            if provider_job_id is None:
                provider_job_id = self._submit(job_id, job_spec)
                if provider_job_id is None:
                    return self._fail_in_scope(
                        job_id, LedgerReason.REFUND_FAILURE, "Provider submission failed"
                    )
                with transaction_scope(self._session_factory) as session:
                    job = self._lock_job(session, job_id)
                    if job.status_enum.is_terminal:
                        logger.warning(
                            "job_finalized_during_submission",
                            extra={"status": job.status, "provider_job_id": provider_job_id},
                        )
                        return _outcome(job)
                    job.provider_job_id = provider_job_id
                    job.updated_at = self._clock.now()
                    session.flush()
                logger.info("job_submitted", extra={"provider_job_id": provider_job_id})
            else:
                logger.info(
                    "job_resumed_polling", extra={"provider_job_id": provider_job_id}
                )

            return self._poll(job_id, provider_job_id)

    def _submit(self, job_id: UUID, job_spec: dict) -> str | None:
        attempts = self._policy.max_submit_attempts
        for attempt in range(1, attempts + 1):
            if self._throttle is not None:
                self._throttle.acquire()
            try:
                return self._provider.submit(job_spec)
            except ProviderSubmissionError as exc:
                logger.warning(
                    "provider_submission_failed",
                    extra={"attempt": attempt, "max_attempts": attempts},
                    exc_info=True,
                )
                if attempt < attempts and exc.retryable:
                    self._sleep(self._policy.submit_backoff(attempt))
                else:
                    break
        return None

    def _poll(self, job_id: UUID, provider_job_id: str) -> JobOutcome:
        max_attempts = self._policy.max_poll_attempts
        for attempt in range(1, max_attempts + 1):
            with transaction_scope(self._session_factory) as session:
                job = self._get_job(session, job_id)
                if job.status_enum.is_terminal:
                    logger.info(
                        "job_finalized_by_signal",
                        extra={"status": job.status, "poll_attempt": attempt},
                    )
                    return _outcome(job)

            try:
                status = self._provider.get_status(provider_job_id)
            except ProviderStatusError:
                logger.warning(
                    "provider_status_poll_failed",
                    extra={"poll_attempt": attempt},
                    exc_info=True,
                )
                status = None

            if status is not None and status.status == ProviderJobStatus.COMPLETED:
                with transaction_scope(self._session_factory) as session:
                    return self.complete_job(session, job_id, status.result_reference)
            if status is not None and status.status == ProviderJobStatus.FAILED:
                return self._fail_in_scope(
                    job_id, LedgerReason.PROVIDER_ERROR, status.error or "Provider reported failure"
                )

            if attempt < max_attempts:
                self._sleep(self._policy.poll_interval_seconds)

        timeout = ProviderTimeoutError(str(job_id), max_attempts)
        logger.warning("provider_timeout", extra={"poll_attempts": max_attempts})
        return self._fail_in_scope(job_id, LedgerReason.REFUND_TIMEOUT, str(timeout))

    def _fail_in_scope(
        self, job_id: UUID, reason: LedgerReason, error_message: str
    ) -> JobOutcome:
        with transaction_scope(self._session_factory) as session:
            return self.fail_job(session, job_id, reason, error_message)

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------

    def _get_job(self, session: Session, job_id: UUID) -> GenerationJob:
        job = session.execute(
            select(GenerationJob)
            .where(GenerationJob.id == job_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(str(job_id))
        return job

    def _lock_job(self, session: Session, job_id: UUID) -> GenerationJob:
        job = session.execute(
            select(GenerationJob)
            .where(GenerationJob.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(str(job_id))
        return job
