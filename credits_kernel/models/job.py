"""
Module: credits_kernel.models.job
Responsibility: ORM persistence for generation jobs and their state machine.
Architecture position: Kernel > Models.  May import from db/, domain/ and
    exceptions.py only.

Invariants enforced:
    - Status changes follow VALID_TRANSITIONS (transition_to()).
    - provider_job_id is unique; its presence means the job was submitted,
      so a re-entered job is polled rather than submitted again.
    - completed and failed are terminal.

Failure modes:
    - InvalidJobTransitionError on an edge outside VALID_TRANSITIONS.
    - IntegrityError on a duplicate provider_job_id.
"""

from datetime import datetime

from sqlalchemy import JSON, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from credits_kernel.db.base import Base
from credits_kernel.domain.types import JobStatus
from credits_kernel.exceptions import InvalidJobTransitionError

# Allowed state transitions (from -> set of valid targets)
VALID_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.CREATED: frozenset({JobStatus.QUEUED, JobStatus.FAILED}),
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({
        JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED,
    }),
    # Terminal states -- no transitions allowed
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class GenerationJob(Base):
    """
    A paid, asynchronous generation request.

    Contract:
        Created by JobOrchestrator in status ``created`` in the same
        transaction as the credit deduction for estimated_cost.

    Guarantees:
        - attempt_count counts submission passes, not polls.
        - result_reference is set only on completion.
    """

    __tablename__ = "generation_jobs"

    __table_args__ = (
        UniqueConstraint("provider_job_id", name="uq_generation_job_provider_id"),
        Index("idx_generation_job_user_created", "user_id", "created_at"),
        Index("idx_generation_job_status_updated", "status", "updated_at"),
    )

    user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=JobStatus.CREATED.value,
    )

    media_type: Mapped[str] = mapped_column(String(32), nullable=False)

    provider_name: Mapped[str] = mapped_column(String(64), nullable=False)

    job_spec: Mapped[dict] = mapped_column(JSON, nullable=False)

    estimated_cost: Mapped[int] = mapped_column(nullable=False)

    provider_job_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    result_reference: Mapped[str | None] = mapped_column(Text, nullable=True)

    attempt_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def status_enum(self) -> JobStatus:
        """Return status as JobStatus (normalizes raw DB strings)."""
        return JobStatus(self.status)

    def transition_to(self, target: JobStatus, now: datetime) -> None:
        """Move along a VALID_TRANSITIONS edge or raise."""
        current = self.status_enum
        if target not in VALID_TRANSITIONS[current]:
            raise InvalidJobTransitionError(
                job_id=str(self.id),
                from_status=current.value,
                to_status=target.value,
            )
        self.status = target.value
        self.updated_at = now

    def __repr__(self) -> str:
        return f"<GenerationJob {self.id} {self.status}>"
