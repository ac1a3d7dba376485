"""
Policy values handed to kernel services by the configuration layer.

The kernel never reads configuration itself; credits_config builds these
frozen objects and credits_services passes them in.
"""

from dataclasses import dataclass
from datetime import timedelta

from credits_kernel.domain.types import SubscriptionEnvironment


@dataclass(frozen=True)
class JobPolicy:
    """Submission retry and completion polling bounds."""

    max_poll_attempts: int = 30
    poll_interval_seconds: float = 2.0
    max_submit_attempts: int = 3
    submit_backoff_seconds: float = 1.0
    endpoint: str = "jobs.create"

    def submit_backoff(self, attempt: int) -> float:
        """Exponential backoff before retry number ``attempt`` (1-based)."""
        return self.submit_backoff_seconds * (2 ** (attempt - 1))


@dataclass(frozen=True)
class RefreshPolicy:
    """Weekly pool allocation and refresh cadence per billing environment."""

    weekly_allocation: int = 1500
    refresh_interval: timedelta = timedelta(days=7)
    sandbox_refresh_interval: timedelta = timedelta(minutes=2)
    expiry_grace: timedelta = timedelta(hours=1)
    # Auto-renew switched off this close to expiry forfeits weekly credits now
    renewal_off_forfeit_window: timedelta = timedelta(hours=24)

    def interval_for(self, environment: SubscriptionEnvironment) -> timedelta:
        if environment == SubscriptionEnvironment.SANDBOX:
            return self.sandbox_refresh_interval
        return self.refresh_interval
