"""
einvoice_config -- single public entrypoint for runtime settings.

Responsibility:
    ``get_active_settings()`` is the only way components obtain settings.
    It reads ``defaults.yaml`` (or a given file), applies
    ``EINVOICE_<SECTION>__<KEY>`` environment overrides, and returns a
    frozen ``Settings`` tree.

Architecture position:
    Configuration -- sits above ``einvoice_kernel``.  The kernel never
    imports from this package; outer layers pass the values in.

Failure modes:
    - ``FileNotFoundError`` -- the given settings file does not exist.
    - ``yaml.YAMLError`` -- the file is not valid YAML.
    - ``ConfigurationError`` -- unknown key or a value of the wrong type.
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from einvoice_config.loader import build_settings, load_yaml_file
from einvoice_config.schema import (
    DatabaseSettings,
    FbrSettings,
    IngestionSettings,
    RetrySettings,
    Settings,
    WorkerSettings,
)

_logger = logging.getLogger("einvoice.config")

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_settings(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """
    Load settings from ``path`` (default: the packaged defaults.yaml) with
    overrides from ``environ`` (default: ``os.environ``).
    """
    source = Path(path) if path is not None else DEFAULTS_PATH
    data = load_yaml_file(source)
    settings = build_settings(data, os.environ if environ is None else environ)

    _logger.info(
        "settings_loaded",
        extra={
            "source": str(source),
            "pool_size": settings.workers.pool_size,
            "max_attempts": settings.retry.max_attempts,
            "fbr_base_url": settings.fbr.base_url,
        },
    )
    return settings


__all__ = [
    "DatabaseSettings",
    "FbrSettings",
    "IngestionSettings",
    "RetrySettings",
    "Settings",
    "WorkerSettings",
    "get_active_settings",
]
