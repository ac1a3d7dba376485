"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Common constructor and session-handling contract for every service in
    the kernel layer.  Concrete services receive a SQLAlchemy ``Session`` and
    persist through ``session.flush()`` -- never ``session.commit()``.

Invariants enforced:
    - Transaction boundaries belong to the caller.  A service flushes inside
      the caller's transaction so multi-step operations (insert job, deduct,
      record idempotency key) commit or roll back together.
"""

from abc import ABC

from sqlalchemy.orm import Session

from credits_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.  Savepoints (``begin_nested``) are used
          only to contain an expected IntegrityError.

    Non-goals:
        - Does NOT provide read-only query methods -- those belong in
          ``credits_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
