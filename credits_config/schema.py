"""
Credits configuration schema.

Frozen dataclasses parsed from a YAML configuration set by the loader.
Durations are stored as seconds in YAML and exposed as ``timedelta`` through
the bridges, never as raw numbers inside the kernel.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class CreditSettings:
    weekly_allocation: int = 1500
    refresh_interval_seconds: int = 7 * 24 * 3600
    sandbox_refresh_interval_seconds: int = 120
    max_purchased_credits: int = 500
    purchase_requires_subscription: bool = True


@dataclass(frozen=True)
class JobSettings:
    max_poll_attempts: int = 30
    poll_interval_seconds: float = 2.0
    max_submit_attempts: int = 3
    submit_backoff_seconds: float = 1.0
    max_concurrent_jobs: int = 4
    max_submissions_per_window: int = 10
    submission_window_seconds: float = 1.0
    max_queue_attempts: int = 3
    queue_backoff_seconds: float = 1.0
    stalled_job_minutes: int = 30


@dataclass(frozen=True)
class IdempotencySettings:
    ttl_hours: int = 24


@dataclass(frozen=True)
class CollaboratorSettings:
    """A configured external collaborator (provider or verifier).

    ``credential`` is resolved from the environment variable named by
    ``credential_env`` at load time and is never included in repr.
    """

    name: str
    credential_env: str | None = None
    credential: str | None = field(default=None, repr=False)
    options: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionSettings:
    expiry_grace_seconds: int = 3600
    renewal_off_forfeit_hours: float = 24
    verifier: CollaboratorSettings = field(
        default_factory=lambda: CollaboratorSettings(name="static")
    )


@dataclass(frozen=True)
class CreditsConfig:
    """A loaded configuration set.  ``checksum`` identifies the source document."""

    config_id: str
    version: int
    credits: CreditSettings
    jobs: JobSettings
    idempotency: IdempotencySettings
    subscriptions: SubscriptionSettings
    provider: CollaboratorSettings
    checksum: str
