"""
WebhookEventDeduper -- deduplicates inbound push notifications by content hash.

Responsibility:
    Records the hash of each verified notification payload exactly once.

Architecture position:
    Kernel > Services.  Called by SubscriptionReconciler.handle_push() as the
    first write of the transaction that applies the notification.

Invariants enforced:
    - The hash row is inserted in the caller's transaction, so it commits
      with the side effects of the event or not at all.  A crash between the
      two cannot leave the event recorded but unapplied, or applied twice.
    - Concurrent deliveries of the same payload race on the UNIQUE constraint;
      exactly one proceeds.

Failure modes:
    - DuplicateEventError when the hash already exists.  The reconciler
      absorbs it; it never reaches the notification sender as an error.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from credits_kernel.exceptions import DuplicateEventError
from credits_kernel.logging_config import get_logger
from credits_kernel.models.webhook_event import ProcessedWebhookEvent
from credits_kernel.services.base import BaseService
from credits_kernel.utils.hashing import hash_bytes

logger = get_logger("services.webhook_deduper")


def compute_event_hash(raw_payload: bytes) -> str:
    """Stable hash over the exact verified payload bytes."""
    return hash_bytes(raw_payload)


class WebhookEventDeduper(BaseService):

    def is_processed(self, event_hash: str) -> bool:
        return (
            self.session.execute(
                select(ProcessedWebhookEvent.id).where(
                    ProcessedWebhookEvent.event_hash == event_hash
                )
            ).first()
            is not None
        )

    def record(
        self,
        event_hash: str,
        source: str,
        notification_type: str,
        user_id: str | None,
    ) -> ProcessedWebhookEvent:
        """Insert the processed marker or raise DuplicateEventError."""
        if self.is_processed(event_hash):
            raise DuplicateEventError(event_hash)

        savepoint = self.session.begin_nested()
        try:
            marker = ProcessedWebhookEvent(
                event_hash=event_hash,
                source=source,
                notification_type=notification_type,
                user_id=user_id,
                processed_at=self.clock.now(),
            )
            self.session.add(marker)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.info("webhook_event_race", extra={"event_hash": event_hash})
            raise DuplicateEventError(event_hash) from None

        logger.debug(
            "webhook_event_recorded",
            extra={
                "event_hash": event_hash,
                "source": source,
                "notification_type": notification_type,
            },
        )
        return marker
