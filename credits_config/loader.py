"""
Configuration Loader (``credits_config.loader``).

Responsibility
--------------
Loads a YAML configuration set and parses it into the frozen dataclasses of
``credits_config.schema``.  Runtime callers use
``credits_config.get_active_config()``; this module is its implementation.

Invariants enforced
-------------------
* Numeric limits are validated at parse time (``ValueError`` on a
  non-positive attempt count, interval or allocation).
* Credentials are read only here, from the environment variables the set
  names.  A missing variable leaves ``credential`` as None; the wiring layer
  refuses to build a collaborator that requires one.
* ``compute_checksum`` produces a deterministic SHA-256 of the document.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from credits_config.schema import (
    CollaboratorSettings,
    CreditSettings,
    CreditsConfig,
    IdempotencySettings,
    JobSettings,
    SubscriptionSettings,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file; an empty file yields an empty dict."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _positive(section: str, data: Mapping[str, Any], key: str, default, cast=int):
    value = cast(data.get(key, default))
    if value <= 0:
        raise ValueError(f"{section}.{key} must be positive, got {value!r}")
    return value


def _non_negative(section: str, data: Mapping[str, Any], key: str, default, cast=int):
    value = cast(data.get(key, default))
    if value < 0:
        raise ValueError(f"{section}.{key} must not be negative, got {value!r}")
    return value


def parse_credits(data: Mapping[str, Any]) -> CreditSettings:
    d = CreditSettings()
    return CreditSettings(
        weekly_allocation=_non_negative("credits", data, "weekly_allocation", d.weekly_allocation),
        refresh_interval_seconds=_positive(
            "credits", data, "refresh_interval_seconds", d.refresh_interval_seconds
        ),
        sandbox_refresh_interval_seconds=_positive(
            "credits", data, "sandbox_refresh_interval_seconds",
            d.sandbox_refresh_interval_seconds,
        ),
        max_purchased_credits=_non_negative(
            "credits", data, "max_purchased_credits", d.max_purchased_credits
        ),
        purchase_requires_subscription=bool(
            data.get("purchase_requires_subscription", d.purchase_requires_subscription)
        ),
    )


def parse_jobs(data: Mapping[str, Any]) -> JobSettings:
    d = JobSettings()
    return JobSettings(
        max_poll_attempts=_positive("jobs", data, "max_poll_attempts", d.max_poll_attempts),
        poll_interval_seconds=_non_negative(
            "jobs", data, "poll_interval_seconds", d.poll_interval_seconds, float
        ),
        max_submit_attempts=_positive("jobs", data, "max_submit_attempts", d.max_submit_attempts),
        submit_backoff_seconds=_non_negative(
            "jobs", data, "submit_backoff_seconds", d.submit_backoff_seconds, float
        ),
        max_concurrent_jobs=_positive("jobs", data, "max_concurrent_jobs", d.max_concurrent_jobs),
        max_submissions_per_window=_positive(
            "jobs", data, "max_submissions_per_window", d.max_submissions_per_window
        ),
        submission_window_seconds=_positive(
            "jobs", data, "submission_window_seconds", d.submission_window_seconds, float
        ),
        max_queue_attempts=_positive("jobs", data, "max_queue_attempts", d.max_queue_attempts),
        queue_backoff_seconds=_non_negative(
            "jobs", data, "queue_backoff_seconds", d.queue_backoff_seconds, float
        ),
        stalled_job_minutes=_positive("jobs", data, "stalled_job_minutes", d.stalled_job_minutes),
    )


def parse_idempotency(data: Mapping[str, Any]) -> IdempotencySettings:
    return IdempotencySettings(
        ttl_hours=_positive("idempotency", data, "ttl_hours", IdempotencySettings().ttl_hours),
    )


def parse_collaborator(
    data: Mapping[str, Any],
    environ: Mapping[str, str],
) -> CollaboratorSettings:
    credential_env = data.get("credential_env")
    return CollaboratorSettings(
        name=data["name"],
        credential_env=credential_env,
        credential=environ.get(credential_env) if credential_env else None,
        options=dict(data.get("options") or {}),
    )


def parse_subscriptions(
    data: Mapping[str, Any],
    environ: Mapping[str, str],
) -> SubscriptionSettings:
    d = SubscriptionSettings()
    verifier = data.get("verifier")
    return SubscriptionSettings(
        expiry_grace_seconds=_non_negative(
            "subscriptions", data, "expiry_grace_seconds", d.expiry_grace_seconds
        ),
        renewal_off_forfeit_hours=_non_negative(
            "subscriptions", data, "renewal_off_forfeit_hours",
            d.renewal_off_forfeit_hours, cast=float,
        ),
        verifier=parse_collaborator(verifier, environ) if verifier else d.verifier,
    )


def parse_config(
    data: Mapping[str, Any],
    environ: Mapping[str, str] | None = None,
) -> CreditsConfig:
    """Parse a whole configuration document."""
    env = os.environ if environ is None else environ
    return CreditsConfig(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        credits=parse_credits(data.get("credits") or {}),
        jobs=parse_jobs(data.get("jobs") or {}),
        idempotency=parse_idempotency(data.get("idempotency") or {}),
        subscriptions=parse_subscriptions(data.get("subscriptions") or {}, env),
        provider=parse_collaborator(data["provider"], env),
        checksum=compute_checksum(data),
    )


def load_config_file(
    path: Path,
    environ: Mapping[str, str] | None = None,
) -> CreditsConfig:
    return parse_config(load_yaml_file(path), environ)


def compute_checksum(data: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
