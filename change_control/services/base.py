"""
BaseService -- common constructor for kernel services.

Responsibility:
    Every service receives the caller's SQLAlchemy ``Session`` and an
    optional ``Clock``.  Services persist with ``session.flush()`` and
    never commit or roll back: the request pipeline (or the test harness)
    owns the transaction, so gate, apply, status update and audit insert
    land atomically or not at all.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
"""

from abc import ABC

from sqlalchemy.orm import Session

from change_control.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Contract:
        Accepts a ``Session`` and flushes within its active transaction.

    Non-goals:
        - Does NOT call ``session.commit()`` or ``session.rollback()``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
