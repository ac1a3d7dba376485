"""
Subscription status mapping tests (pure, no database).

Tests cover:
- External notification names normalize to the table's types
- Each table row targets the documented status and auto-renew flag
- Out-of-order pushes are stale in both directions; activation never moves
  expiry back
- Verified answers from the pull channels always apply
- Webhook payload parsing
"""

import json
from datetime import UTC, datetime, timedelta

import pytest

from credits_kernel.domain.subscription_mapping import (
    AUTO_RENEW_DISABLED,
    AUTO_RENEW_ENABLED,
    StoredSubscription,
    SubscriptionSignal,
    WebhookNotification,
    normalize_notification_type,
    notification_type_for_verified_status,
    resolve_transition,
)
from credits_kernel.domain.types import (
    NotificationType,
    SubscriptionEnvironment,
    SubscriptionSource,
    SubscriptionStatus,
)
from credits_kernel.exceptions import VerificationInconclusiveError

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


def _signal(notification_type, expires_at=None, subtype=None, auto_renew=None):
    return SubscriptionSignal(
        notification_type=notification_type,
        original_transaction_id="otid-1",
        expires_at=expires_at,
        subtype=subtype,
        auto_renew=auto_renew,
    )


def _active(expires_at=NOW + timedelta(days=7), auto_renew=True):
    return StoredSubscription(
        status=SubscriptionStatus.ACTIVE, auto_renew=auto_renew, expires_at=expires_at
    )


class TestNormalization:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("DID_RENEW", NotificationType.RENEW),
            ("INITIAL_BUY", NotificationType.INITIAL),
            ("SUBSCRIBED", NotificationType.SUBSCRIBED),
            ("INTERACTIVE_RENEWAL", NotificationType.INTERACTIVE_RENEWAL),
            ("DID_FAIL_TO_RENEW", NotificationType.FAIL_TO_RENEW),
            ("EXPIRED", NotificationType.EXPIRED),
            ("DID_CHANGE_RENEWAL_STATUS", NotificationType.CHANGE_RENEWAL_STATUS),
            ("REFUND", NotificationType.REFUND),
            ("REVOKE", NotificationType.REVOKE),
            ("renew", NotificationType.RENEW),
            ("fail-to-renew", NotificationType.FAIL_TO_RENEW),
        ],
    )
    def test_known_names(self, raw, expected):
        assert normalize_notification_type(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "PRICE_INCREASE", "TEST"])
    def test_unknown_names(self, raw):
        assert normalize_notification_type(raw) is None

    def test_verified_status_mapping(self):
        assert notification_type_for_verified_status("active", "x") == NotificationType.SUBSCRIBED
        assert notification_type_for_verified_status("expired", "x") == NotificationType.EXPIRED
        assert notification_type_for_verified_status("revoked", "x") == NotificationType.REVOKE

    def test_unknown_verified_status_is_inconclusive(self):
        with pytest.raises(VerificationInconclusiveError) as exc_info:
            notification_type_for_verified_status("grace_period", "otid-9")
        assert exc_info.value.original_transaction_id == "otid-9"


class TestResolveTransition:
    @pytest.mark.parametrize(
        "notification_type",
        [
            NotificationType.RENEW,
            NotificationType.INITIAL,
            NotificationType.SUBSCRIBED,
            NotificationType.INTERACTIVE_RENEWAL,
        ],
    )
    def test_activation_from_nothing(self, notification_type):
        transition = resolve_transition(None, _signal(notification_type, NOW))

        assert transition.status == SubscriptionStatus.ACTIVE
        assert transition.auto_renew is True
        assert transition.enters_active

    def test_activation_respects_renewal_info(self):
        transition = resolve_transition(None, _signal(NotificationType.RENEW, NOW, auto_renew=False))

        assert transition.auto_renew is False

    def test_activation_never_moves_expiry_back(self):
        stored = _active(expires_at=NOW + timedelta(days=7))

        transition = resolve_transition(stored, _signal(NotificationType.RENEW, NOW))

        assert transition.expires_at == NOW + timedelta(days=7)

    def test_activation_extends_expiry(self):
        stored = _active(expires_at=NOW)

        transition = resolve_transition(
            stored, _signal(NotificationType.RENEW, NOW + timedelta(days=7))
        )

        assert transition.expires_at == NOW + timedelta(days=7)

    @pytest.mark.parametrize(
        "notification_type", [NotificationType.EXPIRED, NotificationType.FAIL_TO_RENEW]
    )
    def test_expiry(self, notification_type):
        stored = _active(expires_at=NOW)

        transition = resolve_transition(stored, _signal(notification_type, NOW))

        assert transition.status == SubscriptionStatus.EXPIRED
        assert transition.auto_renew is False
        assert transition.enters_terminal

    def test_expiry_older_than_active_period_is_stale(self):
        stored = _active(expires_at=NOW + timedelta(days=7))

        transition = resolve_transition(stored, _signal(NotificationType.EXPIRED, NOW))

        assert transition.stale
        assert transition.status == SubscriptionStatus.ACTIVE
        assert not transition.enters_terminal

    @pytest.mark.parametrize(
        "source", [SubscriptionSource.CLIENT, SubscriptionSource.SWEEP]
    )
    def test_verified_expiry_applies_despite_later_stored_period(self, source):
        stored = _active(expires_at=NOW + timedelta(days=7))

        transition = resolve_transition(stored, _signal(NotificationType.EXPIRED, NOW), source)

        assert not transition.stale
        assert transition.status == SubscriptionStatus.EXPIRED
        assert transition.expires_at == NOW
        assert transition.enters_terminal

    @pytest.mark.parametrize(
        "status", [SubscriptionStatus.EXPIRED, SubscriptionStatus.REVOKED]
    )
    @pytest.mark.parametrize(
        "signal_expires_at", [None, NOW - timedelta(days=1), NOW - timedelta(days=3)]
    )
    def test_late_activation_after_close_is_stale(self, status, signal_expires_at):
        stored = StoredSubscription(
            status=status, auto_renew=False, expires_at=NOW - timedelta(days=1)
        )

        transition = resolve_transition(
            stored, _signal(NotificationType.RENEW, signal_expires_at)
        )

        assert transition.stale
        assert transition.status == status
        assert not transition.enters_active

    def test_activation_for_new_period_after_close_applies(self):
        stored = StoredSubscription(
            status=SubscriptionStatus.EXPIRED,
            auto_renew=False,
            expires_at=NOW - timedelta(days=1),
        )

        transition = resolve_transition(
            stored, _signal(NotificationType.SUBSCRIBED, NOW + timedelta(days=7))
        )

        assert transition.enters_active
        assert transition.expires_at == NOW + timedelta(days=7)

    def test_verified_activation_after_close_applies(self):
        stored = StoredSubscription(
            status=SubscriptionStatus.REVOKED,
            auto_renew=False,
            expires_at=NOW + timedelta(days=1),
        )

        transition = resolve_transition(
            stored, _signal(NotificationType.SUBSCRIBED, NOW), SubscriptionSource.CLIENT
        )

        assert transition.enters_active

    @pytest.mark.parametrize("notification_type", [NotificationType.REFUND, NotificationType.REVOKE])
    def test_revocation_always_applies(self, notification_type):
        stored = _active(expires_at=NOW + timedelta(days=30))

        transition = resolve_transition(stored, _signal(notification_type, NOW))

        assert transition.status == SubscriptionStatus.REVOKED
        assert not transition.stale
        assert transition.enters_terminal

    @pytest.mark.parametrize(
        "subtype, expected", [(AUTO_RENEW_DISABLED, False), (AUTO_RENEW_ENABLED, True)]
    )
    def test_change_renewal_status(self, subtype, expected):
        stored = _active(auto_renew=not expected)

        transition = resolve_transition(
            stored, _signal(NotificationType.CHANGE_RENEWAL_STATUS, subtype=subtype)
        )

        assert transition.status == SubscriptionStatus.ACTIVE
        assert transition.auto_renew is expected
        assert not transition.enters_active
        assert not transition.enters_terminal


class TestWebhookNotification:
    def _payload(self, **data):
        body = {
            "notificationType": "DID_RENEW",
            "data": {
                "originalTransactionId": "otid-1",
                "productId": "pro.weekly",
                "expiresAt": 1704196800000,
                "environment": "Sandbox",
                **data,
            },
        }
        return json.dumps(body).encode()

    def test_from_payload(self):
        raw = self._payload()

        notification = WebhookNotification.from_payload(raw, signature_verified=True)

        assert notification.raw_payload == raw
        assert notification.notification_type == "DID_RENEW"
        assert notification.original_transaction_id == "otid-1"
        assert notification.product_id == "pro.weekly"
        assert notification.expires_at == datetime(2024, 1, 2, 12, 0, tzinfo=UTC)
        assert notification.environment == SubscriptionEnvironment.SANDBOX

    def test_to_signal(self):
        notification = WebhookNotification.from_payload(self._payload(), signature_verified=True)

        signal = notification.to_signal()

        assert signal.notification_type == NotificationType.RENEW
        assert signal.environment == SubscriptionEnvironment.SANDBOX

    def test_unknown_type_has_no_signal(self):
        body = json.dumps({"notificationType": "PRICE_INCREASE", "data": {}}).encode()

        notification = WebhookNotification.from_payload(body, signature_verified=True)

        assert notification.to_signal() is None

    def test_environment_defaults_to_production(self):
        notification = WebhookNotification.from_payload(
            self._payload(environment=None), signature_verified=True
        )

        assert notification.environment == SubscriptionEnvironment.PRODUCTION

    @pytest.mark.parametrize(
        "raw, expected",
        [
            (1, True),
            (0, False),
            ("1", True),
            ("0", False),
            (True, True),
            ("true", True),
            ("False", False),
            ("maybe", None),
            (None, None),
        ],
    )
    def test_auto_renew_status_parsed_leniently(self, raw, expected):
        notification = WebhookNotification.from_payload(
            self._payload(autoRenewStatus=raw), signature_verified=True
        )

        assert notification.auto_renew is expected
