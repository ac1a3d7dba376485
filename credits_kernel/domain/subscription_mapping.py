"""
Subscription status mapping -- table-driven and deterministic.

Responsibility:
    Turns a notification (push, client verification or sweep) into a target
    subscription state.  The target depends only on the notification type
    and the state already stored; a client never asserts status directly.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Mapping is keyed by normalized notification type only.
    - Push expiry signals older than a stored active period are stale.
    - Push activation signals for a period that already ended are stale
      once the subscription is expired or revoked.
    - Activation signals never move expires_at backwards.
    - Verified results (client and sweep) describe current state and
      always apply.
    - Refund and revoke always apply.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from credits_kernel.domain.types import (
    NotificationType,
    SubscriptionEnvironment,
    SubscriptionSource,
    SubscriptionStatus,
)
from credits_kernel.exceptions import VerificationInconclusiveError

# External notification names -> normalized type
EXTERNAL_NOTIFICATION_TYPES: dict[str, NotificationType] = {
    "DID_RENEW": NotificationType.RENEW,
    "INITIAL_BUY": NotificationType.INITIAL,
    "SUBSCRIBED": NotificationType.SUBSCRIBED,
    "INTERACTIVE_RENEWAL": NotificationType.INTERACTIVE_RENEWAL,
    "DID_FAIL_TO_RENEW": NotificationType.FAIL_TO_RENEW,
    "EXPIRED": NotificationType.EXPIRED,
    "DID_CHANGE_RENEWAL_STATUS": NotificationType.CHANGE_RENEWAL_STATUS,
    "REFUND": NotificationType.REFUND,
    "REVOKE": NotificationType.REVOKE,
}

AUTO_RENEW_ENABLED = "AUTO_RENEW_ENABLED"
AUTO_RENEW_DISABLED = "AUTO_RENEW_DISABLED"


@dataclass(frozen=True)
class StatusRule:
    """One row of the mapping table.  ``target`` None leaves status unchanged."""

    target: SubscriptionStatus | None
    auto_renew: bool | None


_ACTIVATE = StatusRule(SubscriptionStatus.ACTIVE, True)
_EXPIRE = StatusRule(SubscriptionStatus.EXPIRED, False)
_REVOKE = StatusRule(SubscriptionStatus.REVOKED, False)

STATUS_RULES: dict[NotificationType, StatusRule] = {
    NotificationType.RENEW: _ACTIVATE,
    NotificationType.INITIAL: _ACTIVATE,
    NotificationType.SUBSCRIBED: _ACTIVATE,
    NotificationType.INTERACTIVE_RENEWAL: _ACTIVATE,
    NotificationType.FAIL_TO_RENEW: _EXPIRE,
    NotificationType.EXPIRED: _EXPIRE,
    NotificationType.CHANGE_RENEWAL_STATUS: StatusRule(None, None),
    NotificationType.REFUND: _REVOKE,
    NotificationType.REVOKE: _REVOKE,
}

# Verified status (pull channels) -> notification type
VERIFIED_STATUS_TYPES: dict[SubscriptionStatus, NotificationType] = {
    SubscriptionStatus.ACTIVE: NotificationType.SUBSCRIBED,
    SubscriptionStatus.EXPIRED: NotificationType.EXPIRED,
    SubscriptionStatus.REVOKED: NotificationType.REVOKE,
}


def normalize_notification_type(raw: str | None) -> NotificationType | None:
    """Map an external or normalized name to NotificationType; None if unknown."""
    if not raw:
        return None
    key = raw.strip()
    if key.upper() in EXTERNAL_NOTIFICATION_TYPES:
        return EXTERNAL_NOTIFICATION_TYPES[key.upper()]
    try:
        return NotificationType(key.lower().replace("-", "_"))
    except ValueError:
        return None


def notification_type_for_verified_status(
    status: SubscriptionStatus | str,
    original_transaction_id: str,
) -> NotificationType:
    """Deterministic mapping for the pull channels.

    Raises:
        VerificationInconclusiveError: status is not one the table knows.
    """
    try:
        normalized = SubscriptionStatus(status)
    except ValueError:
        raise VerificationInconclusiveError(
            original_transaction_id, f"unrecognized verified status {status!r}"
        ) from None
    return VERIFIED_STATUS_TYPES[normalized]


@dataclass(frozen=True)
class SubscriptionSignal:
    """Normalized subscription event, whatever channel it came from."""

    notification_type: NotificationType
    original_transaction_id: str
    environment: SubscriptionEnvironment = SubscriptionEnvironment.PRODUCTION
    subtype: str | None = None
    expires_at: datetime | None = None
    auto_renew: bool | None = None
    product_id: str | None = None


@dataclass(frozen=True)
class StoredSubscription:
    """The part of the stored row the resolver needs."""

    status: SubscriptionStatus
    auto_renew: bool
    expires_at: datetime | None


@dataclass(frozen=True)
class Transition:
    """Resolved target state.  ``stale`` means nothing should change."""

    status: SubscriptionStatus
    auto_renew: bool
    expires_at: datetime | None
    stale: bool = False
    # False when the rule leaves status untouched (change_renewal_status)
    sets_status: bool = True

    @property
    def enters_active(self) -> bool:
        return (
            self.sets_status
            and not self.stale
            and self.status == SubscriptionStatus.ACTIVE
        )

    @property
    def enters_terminal(self) -> bool:
        return (
            self.sets_status
            and not self.stale
            and self.status in (SubscriptionStatus.EXPIRED, SubscriptionStatus.REVOKED)
        )


def _later(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _unchanged(current: StoredSubscription) -> Transition:
    return Transition(
        status=current.status,
        auto_renew=current.auto_renew,
        expires_at=current.expires_at,
        stale=True,
    )


def _is_late_activation(current: StoredSubscription | None, signal: SubscriptionSignal) -> bool:
    """An activation for a period no later than the one already closed."""
    if current is None or current.status not in (
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.REVOKED,
    ):
        return False
    if signal.expires_at is None:
        return True
    return current.expires_at is not None and signal.expires_at <= current.expires_at


def _is_late_expiry(current: StoredSubscription | None, signal: SubscriptionSignal) -> bool:
    return (
        current is not None
        and current.status == SubscriptionStatus.ACTIVE
        and current.expires_at is not None
        and signal.expires_at is not None
        and signal.expires_at < current.expires_at
    )


def resolve_transition(
    current: StoredSubscription | None,
    signal: SubscriptionSignal,
    source: SubscriptionSource = SubscriptionSource.PUSH,
) -> Transition:
    """Apply the mapping table to the stored state.

    ``current`` is None when no subscription row exists yet.  Only push
    signals can be stale: they may arrive late or out of order, while
    client and sweep signals carry the verifier's current answer.
    """
    rule = STATUS_RULES[signal.notification_type]
    pushed = SubscriptionSource(source) == SubscriptionSource.PUSH

    if rule.target is None:
        # change_renewal_status: status untouched, auto_renew from subtype
        auto_renew = current.auto_renew if current else False
        if signal.subtype == AUTO_RENEW_ENABLED:
            auto_renew = True
        elif signal.subtype == AUTO_RENEW_DISABLED:
            auto_renew = False
        elif signal.auto_renew is not None:
            auto_renew = signal.auto_renew
        return Transition(
            status=current.status if current else SubscriptionStatus.EXPIRED,
            auto_renew=auto_renew,
            expires_at=current.expires_at if current else signal.expires_at,
            sets_status=False,
        )

    if rule.target == SubscriptionStatus.ACTIVE:
        if pushed and _is_late_activation(current, signal):
            return _unchanged(current)
        auto_renew = rule.auto_renew if signal.auto_renew is None else signal.auto_renew
        return Transition(
            status=SubscriptionStatus.ACTIVE,
            auto_renew=bool(auto_renew),
            expires_at=_later(current.expires_at if current else None, signal.expires_at),
        )

    if rule.target == SubscriptionStatus.EXPIRED:
        if pushed and _is_late_expiry(current, signal):
            return _unchanged(current)
        return Transition(
            status=SubscriptionStatus.EXPIRED,
            auto_renew=False,
            expires_at=signal.expires_at or (current.expires_at if current else None),
        )

    return Transition(
        status=SubscriptionStatus.REVOKED,
        auto_renew=False,
        expires_at=signal.expires_at or (current.expires_at if current else None),
    )


# =============================================================================
# Webhook ingestion
# =============================================================================


def _parse_epoch_millis(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and not value.isdigit():
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off"})


def _parse_auto_renew(value: Any) -> bool | None:
    """Accept 0/1, booleans and their common spellings; anything else is unknown."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    word = str(value).strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    return None


@dataclass(frozen=True)
class WebhookNotification:
    """
    A push notification after transport-level signature verification.

    ``raw_payload`` is the exact verified byte string; its hash is the
    deduplication key.  ``signature_verified`` must be set by the collaborator
    that checked the signature.
    """

    raw_payload: bytes
    notification_type: str
    original_transaction_id: str | None
    signature_verified: bool
    subtype: str | None = None
    product_id: str | None = None
    expires_at: datetime | None = None
    auto_renew: bool | None = None
    environment: SubscriptionEnvironment = SubscriptionEnvironment.PRODUCTION

    @classmethod
    def from_payload(
        cls, raw_payload: bytes, *, signature_verified: bool
    ) -> "WebhookNotification":
        """Parse ``{notificationType, subtype?, data:{...}}`` JSON bytes."""
        body = json.loads(raw_payload)
        data = body.get("data") or {}
        return cls(
            raw_payload=raw_payload,
            notification_type=body.get("notificationType", ""),
            subtype=body.get("subtype"),
            original_transaction_id=data.get("originalTransactionId"),
            product_id=data.get("productId"),
            expires_at=_parse_epoch_millis(data.get("expiresAt")),
            auto_renew=_parse_auto_renew(data.get("autoRenewStatus")),
            environment=SubscriptionEnvironment.parse(data.get("environment")),
            signature_verified=signature_verified,
        )

    def to_signal(self) -> SubscriptionSignal | None:
        """Normalize; None when the notification type is unknown."""
        notification_type = normalize_notification_type(self.notification_type)
        if notification_type is None or not self.original_transaction_id:
            return None
        return SubscriptionSignal(
            notification_type=notification_type,
            original_transaction_id=self.original_transaction_id,
            environment=self.environment,
            subtype=self.subtype,
            expires_at=self.expires_at,
            auto_renew=self.auto_renew,
            product_id=self.product_id,
        )
