"""
IdempotencyGuard -- deduplicates mutating client requests by key + payload hash.

Responsibility:
    Binds a client-supplied idempotency key to the first request that used
    it.  A retry with the same payload replays the original result; a reuse
    with a different payload is refused.

Architecture position:
    Kernel > Services.  Called by JobOrchestrator.create_job() before any
    side effect, inside the same transaction.

Invariants enforced:
    - First writer wins through the UNIQUE constraint on key.  The claim is
      an INSERT inside a savepoint; a concurrent claimant loses on
      IntegrityError and re-reads the winner.  No read-then-write race.
    - request_hash, user and endpoint never change after the claim.
    - Expired records count as absent and are replaced on the next claim.

Failure modes:
    - IdempotencyConflictError: key reused with a different payload, user
      or endpoint.
    - IdempotencyInProgressError: key claimed by a request that has not
      attached its job yet.
"""

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from credits_kernel.domain.dtos import IdempotencyCheck
from credits_kernel.domain.types import IdempotencyOutcome
from credits_kernel.exceptions import (
    IdempotencyConflictError,
    IdempotencyInProgressError,
)
from credits_kernel.logging_config import get_logger
from credits_kernel.models.idempotency import IdempotencyRecord
from credits_kernel.services.base import BaseService

logger = get_logger("services.idempotency")

DEFAULT_TTL = timedelta(hours=24)


class IdempotencyGuard(BaseService):
    """
    Key + payload hash deduplication.

    Usage:
        check = guard.claim(key, user_id, "jobs.create", payload_hash)
        if check.is_replay:
            return load(check.job_id)
        job = create(...)
        guard.attach_job(key, job.id)
    """

    def __init__(self, session, clock=None, ttl: timedelta = DEFAULT_TTL):
        super().__init__(session, clock)
        self.ttl = ttl

    def _load(self, key: str) -> IdempotencyRecord | None:
        return self.session.execute(
            select(IdempotencyRecord)
            .where(IdempotencyRecord.key == key)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _is_expired(self, record: IdempotencyRecord, now: datetime) -> bool:
        return record.expires_at <= now

    def _evaluate(
        self,
        record: IdempotencyRecord,
        user_id: str,
        endpoint: str,
        payload_hash: str,
    ) -> IdempotencyCheck:
        if (
            record.request_hash != payload_hash
            or record.user_id != user_id
            or record.endpoint != endpoint
        ):
            logger.warning(
                "idempotency_conflict",
                extra={
                    "key": record.key,
                    "user_id": user_id,
                    "endpoint": endpoint,
                    "expected_hash": record.request_hash,
                    "received_hash": payload_hash,
                },
            )
            raise IdempotencyConflictError(
                key=record.key,
                expected_hash=record.request_hash,
                received_hash=payload_hash,
            )
        if record.job_id is None:
            raise IdempotencyInProgressError(record.key)
        logger.info(
            "idempotency_replay",
            extra={"key": record.key, "job_id": str(record.job_id)},
        )
        return IdempotencyCheck(
            outcome=IdempotencyOutcome.REPLAY, key=record.key, job_id=record.job_id
        )

    def check(
        self,
        key: str,
        user_id: str,
        endpoint: str,
        payload_hash: str,
    ) -> IdempotencyCheck:
        """Read-only classification of a request.  Does not claim the key."""
        record = self._load(key)
        if record is None or self._is_expired(record, self.clock.now()):
            return IdempotencyCheck(outcome=IdempotencyOutcome.NEW, key=key)
        return self._evaluate(record, user_id, endpoint, payload_hash)

    def claim(
        self,
        key: str,
        user_id: str,
        endpoint: str,
        payload_hash: str,
    ) -> IdempotencyCheck:
        """Claim ``key`` for this request, or classify the existing claim.

        Returns NEW when this call inserted the record, REPLAY when the same
        request already produced a job.
        """
        now = self.clock.now()
        existing = self._load(key)
        if existing is not None:
            if not self._is_expired(existing, now):
                return self._evaluate(existing, user_id, endpoint, payload_hash)
            logger.info("idempotency_record_expired", extra={"key": key})
            self.session.delete(existing)
            self.session.flush()

        savepoint = self.session.begin_nested()
        try:
            self.session.add(
                IdempotencyRecord(
                    key=key,
                    user_id=user_id,
                    endpoint=endpoint,
                    request_hash=payload_hash,
                    job_id=None,
                    created_at=now,
                    expires_at=now + self.ttl,
                )
            )
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.info("idempotency_claim_race", extra={"key": key})
            winner = self._load(key)
            if winner is None:
                raise
            return self._evaluate(winner, user_id, endpoint, payload_hash)

        logger.debug("idempotency_key_claimed", extra={"key": key, "user_id": user_id})
        return IdempotencyCheck(outcome=IdempotencyOutcome.NEW, key=key)

    def attach_job(self, key: str, job_id: UUID) -> None:
        """Bind the claimed key to the job it produced."""
        record = self._load(key)
        if record is None:
            raise RuntimeError(f"idempotency key {key!r} was not claimed")
        record.job_id = job_id
        self.session.flush()

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete expired records.  Returns the number removed."""
        cutoff = now or self.clock.now()
        result = self.session.execute(
            delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= cutoff)
        )
        removed = result.rowcount or 0
        logger.info("idempotency_records_purged", extra={"removed": removed})
        return removed
