"""
SubscriptionReconciler -- merges subscription signals and drives weekly credits.

Responsibility:
    Consumes subscription signals from three uncoordinated channels (push
    notifications, client-initiated verification, the cleanup sweep),
    resolves the target state through the deterministic mapping table and
    applies the credit effect of the transition.

Architecture position:
    Kernel > Services.  Uses WebhookEventDeduper and CreditAccountingEngine
    in the caller's transaction.

Invariants enforced:
    - Lock order is account row, then subscription row.  The subscription
      update and any refresh/forfeit entries commit together, so concurrent
      push and client verification for one user serialize completely.
    - Push notifications are refused unless transport verification is
      confirmed, and are recorded by hash before any side effect.
    - Client verification never trusts a client-asserted status; the status
      comes from the SubscriptionVerifier and passes the same table.
    - Into active: refresh if eligible (checked under the lock).
      Into expired/revoked: unconditional weekly forfeiture.
      Auto-renew switched off within the configured window before expiry:
      weekly forfeiture now.
    - An inconclusive verification never changes state.
    - Only pushes can be stale; a verified answer always applies.

Failure modes:
    - UnverifiedNotificationError for unverified pushes.
    - VerificationInconclusiveError from the verifier, propagated unchanged.
    - SubscriptionOwnershipError when a renewal chain belongs to another user.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select

from credits_kernel.domain.dtos import ReconcileResult
from credits_kernel.domain.policies import RefreshPolicy
from credits_kernel.domain.protocols import SubscriptionVerifier
from credits_kernel.domain.subscription_mapping import (
    StoredSubscription,
    SubscriptionSignal,
    Transition,
    WebhookNotification,
    notification_type_for_verified_status,
    resolve_transition,
)
from credits_kernel.domain.types import (
    LedgerReason,
    ReconcileOutcome,
    SubscriptionEnvironment,
    SubscriptionSource,
    SubscriptionStatus,
)
from credits_kernel.exceptions import (
    AccountNotFoundError,
    DuplicateEventError,
    SubscriptionOwnershipError,
    UnverifiedNotificationError,
)
from credits_kernel.logging_config import LogContext, get_logger
from credits_kernel.models.subscription import Subscription
from credits_kernel.services.base import BaseService
from credits_kernel.services.credit_engine import CreditAccountingEngine
from credits_kernel.services.webhook_deduper import (
    WebhookEventDeduper,
    compute_event_hash,
)

logger = get_logger("services.subscription_reconciler")

DEFAULT_WEBHOOK_SOURCE = "app_store"


class SubscriptionReconciler(BaseService):
    """
    Applies subscription signals inside the caller's transaction.

    Contract:
        - ``handle_push()`` -- verified push notification.
        - ``handle_client_verification()`` -- client asks for a re-check.
        - ``reverify()`` -- sweep re-check of one stored subscription.

    Non-goals:
        - Does NOT verify transport signatures; it only refuses events whose
          verification was not confirmed upstream.
    """

    def __init__(
        self,
        session,
        clock=None,
        verifier: SubscriptionVerifier | None = None,
        policy: RefreshPolicy | None = None,
        engine: CreditAccountingEngine | None = None,
        deduper: WebhookEventDeduper | None = None,
    ):
        super().__init__(session, clock)
        self.verifier = verifier
        self.policy = policy or RefreshPolicy()
        self.engine = engine or CreditAccountingEngine(session, self.clock)
        self.deduper = deduper or WebhookEventDeduper(session, self.clock)

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def handle_push(
        self,
        notification: WebhookNotification,
        source: str = DEFAULT_WEBHOOK_SOURCE,
    ) -> ReconcileResult:
        """Apply a push notification exactly once."""
        if not notification.signature_verified:
            logger.error(
                "webhook_unverified_rejected",
                extra={"source": source, "notification_type": notification.notification_type},
            )
            raise UnverifiedNotificationError(source)

        event_hash = compute_event_hash(notification.raw_payload)
        with LogContext.bind(event_hash=event_hash):
            user_id = self._owner_of(notification.original_transaction_id)
            try:
                self.deduper.record(
                    event_hash, source, notification.notification_type, user_id
                )
            except DuplicateEventError:
                logger.info("webhook_duplicate", extra={"source": source})
                return ReconcileResult(outcome=ReconcileOutcome.DUPLICATE, user_id=user_id)

            signal = notification.to_signal()
            if signal is None:
                logger.info(
                    "subscription_notification_ignored",
                    extra={"notification_type": notification.notification_type},
                )
                return ReconcileResult(outcome=ReconcileOutcome.IGNORED, user_id=user_id)

            if user_id is None:
                logger.warning(
                    "subscription_notification_unmatched",
                    extra={
                        "notification_type": signal.notification_type.value,
                        "original_transaction_id": signal.original_transaction_id,
                    },
                )
                return ReconcileResult(outcome=ReconcileOutcome.UNMATCHED)

            return self._apply(user_id, signal, SubscriptionSource.PUSH)

    def handle_client_verification(
        self,
        user_id: str,
        original_transaction_id: str,
        environment: SubscriptionEnvironment | str = SubscriptionEnvironment.PRODUCTION,
    ) -> ReconcileResult:
        """Pull the authoritative status for a client-reported renewal chain."""
        if not isinstance(environment, SubscriptionEnvironment):
            environment = SubscriptionEnvironment.parse(environment)
        owner = self._owner_of(original_transaction_id)
        if owner is not None and owner != user_id:
            raise SubscriptionOwnershipError(original_transaction_id, user_id, owner)

        signal = self._verify(original_transaction_id, environment)
        return self._apply(user_id, signal, SubscriptionSource.CLIENT)

    def reverify(self, subscription_id: UUID) -> ReconcileResult:
        """Sweep re-check of a stored subscription."""
        subscription = self.session.get(Subscription, subscription_id)
        if subscription is None:
            return ReconcileResult(outcome=ReconcileOutcome.UNMATCHED)
        signal = self._verify(
            subscription.original_transaction_id, subscription.environment_enum
        )
        return self._apply(subscription.user_id, signal, SubscriptionSource.SWEEP)

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    def _verify(
        self,
        original_transaction_id: str,
        environment: SubscriptionEnvironment,
    ) -> SubscriptionSignal:
        if self.verifier is None:
            raise RuntimeError("SubscriptionReconciler has no verifier configured")
        # Network I/O happens before any row lock is taken
        result = self.verifier.verify(original_transaction_id, environment)
        notification_type = notification_type_for_verified_status(
            result.status, original_transaction_id
        )
        return SubscriptionSignal(
            notification_type=notification_type,
            original_transaction_id=original_transaction_id,
            environment=environment,
            expires_at=result.expires_at,
            auto_renew=result.auto_renew,
            product_id=result.product_id,
        )

    def _apply(
        self,
        user_id: str,
        signal: SubscriptionSignal,
        source: SubscriptionSource,
    ) -> ReconcileResult:
        with LogContext.bind(user_id=user_id):
            self._lock_or_open_account(user_id)
            subscription = self._lock_subscription(user_id)

            current = None
            previous_status = None
            if subscription is not None:
                previous_status = subscription.status_enum
                current = StoredSubscription(
                    status=previous_status,
                    auto_renew=subscription.auto_renew,
                    expires_at=subscription.expires_at,
                )

            transition = resolve_transition(current, signal, source)
            now = self.clock.now()

            if transition.stale:
                logger.info(
                    "subscription_signal_stale",
                    extra={
                        "source": source.value,
                        "notification_type": signal.notification_type.value,
                        "signal_expires_at": signal.expires_at,
                        "stored_expires_at": current.expires_at if current else None,
                    },
                )
                return ReconcileResult(
                    outcome=ReconcileOutcome.STALE,
                    user_id=user_id,
                    previous_status=previous_status,
                    status=previous_status,
                )

            if subscription is None:
                subscription = Subscription(
                    user_id=user_id,
                    original_transaction_id=signal.original_transaction_id,
                    created_at=now,
                )
                self.session.add(subscription)
            elif subscription.original_transaction_id != signal.original_transaction_id:
                logger.info(
                    "subscription_chain_replaced",
                    extra={
                        "previous_transaction_id": subscription.original_transaction_id,
                        "original_transaction_id": signal.original_transaction_id,
                    },
                )
                subscription.original_transaction_id = signal.original_transaction_id

            subscription.status = transition.status.value
            subscription.auto_renew = transition.auto_renew
            subscription.expires_at = transition.expires_at
            subscription.environment = signal.environment.value
            if signal.product_id:
                subscription.product_id = signal.product_id
            if source != SubscriptionSource.PUSH:
                subscription.last_verified_at = now
            subscription.updated_at = now
            self.session.flush()

            refresh = None
            forfeit = None
            if transition.enters_active:
                refresh = self.engine.refresh_if_eligible(
                    user_id,
                    self.policy.weekly_allocation,
                    self.policy.interval_for(signal.environment),
                )
            elif transition.enters_terminal:
                reason = (
                    LedgerReason.REVOCATION
                    if transition.status == SubscriptionStatus.REVOKED
                    else LedgerReason.EXPIRY
                )
                forfeit = self.engine.forfeit_weekly(user_id, reason)
            elif self._renewal_off_near_expiry(transition, now):
                forfeit = self.engine.forfeit_weekly(user_id, LedgerReason.EXPIRY)

            logger.info(
                "subscription_reconciled",
                extra={
                    "source": source.value,
                    "notification_type": signal.notification_type.value,
                    "previous_status": previous_status.value if previous_status else None,
                    "status": transition.status.value,
                    "auto_renew": transition.auto_renew,
                    "refreshed": refresh is not None,
                    "forfeited": forfeit.forfeited if forfeit else 0,
                },
            )
            return ReconcileResult(
                outcome=ReconcileOutcome.APPLIED,
                user_id=user_id,
                previous_status=previous_status,
                status=transition.status,
                refresh=refresh,
                forfeit=forfeit,
            )

    def _renewal_off_near_expiry(self, transition: Transition, now: datetime) -> bool:
        """Auto-renew switched off on an active period that ends within the window."""
        return (
            not transition.sets_status
            and not transition.auto_renew
            and transition.status == SubscriptionStatus.ACTIVE
            and transition.expires_at is not None
            and transition.expires_at - now < self.policy.renewal_off_forfeit_window
        )

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------

    def _owner_of(self, original_transaction_id: str | None) -> str | None:
        if not original_transaction_id:
            return None
        return self.session.execute(
            select(Subscription.user_id).where(
                Subscription.original_transaction_id == original_transaction_id
            )
        ).scalar_one_or_none()

    def _lock_or_open_account(self, user_id: str) -> None:
        try:
            self.engine.lock_account(user_id)
        except AccountNotFoundError:
            self.engine.ledger.open_account(user_id)
            self.engine.lock_account(user_id)

    def _lock_subscription(self, user_id: str) -> Subscription | None:
        return self.session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
