"""
Configuration tests.

Tests cover:
- Shipped sets load with the documented values
- Custom sets directories and missing sets
- Parse-time validation
- Credentials resolved from the supplied environment only
- Bridges to kernel policies
- CREDITS_CONFIG_TRACE audit log entry
"""

from datetime import timedelta

import pytest
import yaml

from credits_config import get_active_config
from credits_config.bridges import (
    build_job_policy,
    build_refresh_policy,
    idempotency_ttl,
    stalled_job_threshold,
)
from credits_config.loader import compute_checksum, parse_config
from credits_kernel.domain.types import SubscriptionEnvironment


def _write_set(directory, name, document):
    path = directory / f"{name}.yaml"
    path.write_text(yaml.safe_dump(document))
    return path


MINIMAL = {"config_id": "custom", "provider": {"name": "mock"}}


class TestShippedSets:
    def test_default_set(self, default_config):
        assert default_config.config_id == "default"
        assert default_config.credits.weekly_allocation == 1500
        assert default_config.credits.max_purchased_credits == 500
        assert default_config.credits.purchase_requires_subscription is True
        assert default_config.jobs.max_poll_attempts == 30
        assert default_config.jobs.poll_interval_seconds == 2.0
        assert default_config.jobs.max_submit_attempts == 3
        assert default_config.idempotency.ttl_hours == 24
        assert default_config.provider.name == "mock"
        assert default_config.subscriptions.verifier.name == "static"
        assert default_config.subscriptions.verifier.options["status"] == "inconclusive"
        assert default_config.subscriptions.renewal_off_forfeit_hours == 24
        assert len(default_config.checksum) == 64

    def test_sandbox_set(self):
        config = get_active_config("sandbox", environ={})

        assert config.config_id == "sandbox"
        assert config.credits.purchase_requires_subscription is False
        assert config.jobs.max_poll_attempts == 5
        assert config.jobs.poll_interval_seconds == 0.5
        assert config.idempotency.ttl_hours == 1

    def test_missing_set(self):
        with pytest.raises(FileNotFoundError):
            get_active_config("does-not-exist", environ={})


class TestCustomSets:
    def test_minimal_set_uses_defaults(self, tmp_path):
        _write_set(tmp_path, "custom", MINIMAL)

        config = get_active_config("custom", config_dir=tmp_path, environ={})

        assert config.version == 1
        assert config.credits.weekly_allocation == 1500
        assert config.jobs.max_concurrent_jobs == 4
        assert config.subscriptions.verifier.name == "static"

    @pytest.mark.parametrize(
        "section, key, value",
        [
            ("jobs", "max_poll_attempts", 0),
            ("jobs", "max_submit_attempts", -1),
            ("jobs", "submission_window_seconds", 0),
            ("credits", "refresh_interval_seconds", 0),
            ("credits", "weekly_allocation", -10),
            ("idempotency", "ttl_hours", 0),
            ("subscriptions", "renewal_off_forfeit_hours", -1),
        ],
    )
    def test_invalid_values_rejected(self, section, key, value):
        document = {**MINIMAL, section: {key: value}}

        with pytest.raises(ValueError, match=f"{section}.{key}"):
            parse_config(document, environ={})

    def test_missing_provider_raises(self):
        with pytest.raises(KeyError):
            parse_config({"config_id": "x"}, environ={})

    def test_credential_read_from_named_variable(self):
        document = {
            **MINIMAL,
            "provider": {"name": "mock", "credential_env": "GEN_API_KEY"},
        }

        config = parse_config(document, environ={"GEN_API_KEY": "s3cret"})

        assert config.provider.credential == "s3cret"
        assert "s3cret" not in repr(config.provider)

    def test_missing_credential_variable_leaves_none(self):
        document = {
            **MINIMAL,
            "provider": {"name": "mock", "credential_env": "GEN_API_KEY"},
        }

        config = parse_config(document, environ={})

        assert config.provider.credential is None

    def test_checksum_is_order_independent(self):
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})
        assert compute_checksum({"a": 1}) != compute_checksum({"a": 2})


class TestBridges:
    def test_refresh_policy(self, default_config):
        policy = build_refresh_policy(default_config)

        assert policy.weekly_allocation == 1500
        assert policy.interval_for(SubscriptionEnvironment.PRODUCTION) == timedelta(days=7)
        assert policy.interval_for(SubscriptionEnvironment.SANDBOX) == timedelta(seconds=120)
        assert policy.expiry_grace == timedelta(hours=1)
        assert policy.renewal_off_forfeit_window == timedelta(hours=24)

    def test_job_policy(self, default_config):
        policy = build_job_policy(default_config)

        assert policy.max_poll_attempts == 30
        assert policy.submit_backoff(2) == 2.0

    def test_durations(self, default_config):
        assert idempotency_ttl(default_config) == timedelta(hours=24)
        assert stalled_job_threshold(default_config) == timedelta(minutes=30)


def test_config_trace_logged(captured_logs):
    get_active_config("default", environ={})

    traces = [r for r in captured_logs() if r["message"] == "CREDITS_CONFIG_TRACE"]
    assert traces
    assert traces[-1]["config_set_id"] == "default"
    assert traces[-1]["trace_type"] == "CREDITS_CONFIG_TRACE"
    assert len(traces[-1]["checksum"]) == 64
