"""
ORM-Level Immutability Enforcement.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                  | When Immutable          | Why
------------------------|-------------------------|------------------------------
LedgerEntry             | ALWAYS (from creation)  | Ledger is the balance truth
ProcessedWebhookEvent   | ALWAYS (from creation)  | Dedup record of applied event
IdempotencyRecord       | key/user/endpoint/hash  | Key stays bound to 1st request

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners below raise ImmutabilityViolationError and the flush
is aborted.  Bulk statements issued with session.execute(update(...)) bypass
mapper events; the kernel never issues them against protected tables.

===============================================================================
USAGE
===============================================================================

    from credits_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup (create_tables does it)

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from credits_kernel.exceptions import ImmutabilityViolationError
from credits_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_IDEMPOTENCY_BOUND_FIELDS = ("key", "user_id", "endpoint", "request_hash")


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "reason": reason,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_ledger_entry_update(mapper, connection, target):
    _block("LedgerEntry", target, "UPDATE", "ledger entries are append-only")


def _check_ledger_entry_delete(mapper, connection, target):
    _block("LedgerEntry", target, "DELETE", "ledger entries are append-only")


def _check_webhook_event_update(mapper, connection, target):
    _block(
        "ProcessedWebhookEvent", target, "UPDATE",
        "processed webhook events are append-only",
    )


def _check_webhook_event_delete(mapper, connection, target):
    _block(
        "ProcessedWebhookEvent", target, "DELETE",
        "processed webhook events are append-only",
    )


def _check_idempotency_record_update(mapper, connection, target):
    for field in _IDEMPOTENCY_BOUND_FIELDS:
        if get_history(target, field).deleted:
            _block(
                "IdempotencyRecord", target, "UPDATE",
                f"{field} is bound at first use",
            )


def _listener_table():
    from credits_kernel.models.idempotency import IdempotencyRecord
    from credits_kernel.models.ledger import LedgerEntry
    from credits_kernel.models.webhook_event import ProcessedWebhookEvent

    return [
        (LedgerEntry, "before_update", _check_ledger_entry_update),
        (LedgerEntry, "before_delete", _check_ledger_entry_delete),
        (ProcessedWebhookEvent, "before_update", _check_webhook_event_update),
        (ProcessedWebhookEvent, "before_delete", _check_webhook_event_delete),
        (IdempotencyRecord, "before_update", _check_idempotency_record_update),
    ]


def register_immutability_listeners() -> None:
    """Register all immutability listeners.  Safe to call more than once."""
    for target, identifier, fn in _listener_table():
        if not event.contains(target, identifier, fn):
            event.listen(target, identifier, fn)


def unregister_immutability_listeners() -> None:
    """Remove all immutability listeners.  FOR TESTING ONLY."""
    for target, identifier, fn in _listener_table():
        if event.contains(target, identifier, fn):
            event.remove(target, identifier, fn)
