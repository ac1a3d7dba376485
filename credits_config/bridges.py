"""
Bridges from configuration to kernel policy objects.

The kernel never imports credits_config; these functions translate a loaded
CreditsConfig into the frozen policy values kernel services accept.
"""

from __future__ import annotations

from datetime import timedelta

from credits_config.schema import CreditsConfig
from credits_kernel.domain.policies import JobPolicy, RefreshPolicy


def build_refresh_policy(config: CreditsConfig) -> RefreshPolicy:
    return RefreshPolicy(
        weekly_allocation=config.credits.weekly_allocation,
        refresh_interval=timedelta(seconds=config.credits.refresh_interval_seconds),
        sandbox_refresh_interval=timedelta(
            seconds=config.credits.sandbox_refresh_interval_seconds
        ),
        expiry_grace=timedelta(seconds=config.subscriptions.expiry_grace_seconds),
        renewal_off_forfeit_window=timedelta(
            hours=config.subscriptions.renewal_off_forfeit_hours
        ),
    )


def build_job_policy(config: CreditsConfig) -> JobPolicy:
    return JobPolicy(
        max_poll_attempts=config.jobs.max_poll_attempts,
        poll_interval_seconds=config.jobs.poll_interval_seconds,
        max_submit_attempts=config.jobs.max_submit_attempts,
        submit_backoff_seconds=config.jobs.submit_backoff_seconds,
    )


def idempotency_ttl(config: CreditsConfig) -> timedelta:
    return timedelta(hours=config.idempotency.ttl_hours)


def stalled_job_threshold(config: CreditsConfig) -> timedelta:
    return timedelta(minutes=config.jobs.stalled_job_minutes)
