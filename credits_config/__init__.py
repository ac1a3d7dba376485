"""
credits_config -- single public entrypoint for credits configuration.

Responsibility:
    ``get_active_config()`` is the only way to obtain configuration at
    runtime.  No other component reads configuration files or credential
    environment variables directly.

Architecture position:
    Configuration.  Sits above ``credits_kernel`` and below
    ``credits_services``.  The kernel MUST NEVER import from
    ``credits_config``; ``credits_config.bridges`` translates settings into
    kernel policy objects.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``CREDITS_CONFIG_TRACE`` log entry with the config id, version and
    checksum of the source document.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

from credits_config.loader import load_config_file
from credits_config.schema import CreditsConfig

_logger = logging.getLogger("credits_kernel.config")

# Default configuration sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"

DEFAULT_CONFIG_NAME = "default"


def get_active_config(
    name: str = DEFAULT_CONFIG_NAME,
    config_dir: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> CreditsConfig:
    """The ONLY public configuration entrypoint.

    Args:
        name: Configuration set name; ``<config_dir>/<name>.yaml`` is loaded.
        config_dir: Override path to the configuration sets directory.
        environ: Mapping credentials are resolved from (defaults to os.environ).

    Raises:
        FileNotFoundError: If no configuration set has that name.
        ValueError: If a setting fails validation.
    """
    sets_dir = config_dir or _DEFAULT_CONFIG_DIR
    path = sets_dir / f"{name}.yaml"
    if not path.is_file():
        raise FileNotFoundError(f"Configuration set not found: {path}")

    config = load_config_file(path, environ)

    _logger.info(
        "CREDITS_CONFIG_TRACE",
        extra={
            "trace_type": "CREDITS_CONFIG_TRACE",
            "config_set_id": config.config_id,
            "config_set_version": config.version,
            "checksum": config.checksum,
            "provider": config.provider.name,
            "verifier": config.subscriptions.verifier.name,
        },
    )
    return config


__all__ = ["CreditsConfig", "get_active_config"]
