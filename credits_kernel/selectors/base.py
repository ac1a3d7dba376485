"""
Module: credits_kernel.selectors.base
Responsibility: Base class for read-only query selectors.
Architecture position: Kernel > Selectors.  May import from db/, domain/ and
    models/.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only: selectors never add, delete, flush or commit.
    - Selectors return frozen DTOs, never live ORM instances.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):

    def __init__(self, session: Session):
        self.session = session
