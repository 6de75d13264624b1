"""
vending_config -- single public entrypoint for engine settings.

Responsibility:
    Provides ``get_engine_settings()``, the one way services obtain the
    thresholds and budgets the engines run with.  YAML loading lives in
    ``vending_config.loader``.

Architecture position:
    Configuration -- sits above ``vending_kernel`` and below
    ``vending_services``.  Engines MUST NOT import this package; services
    pass the relevant values into engine constructors.

Audit relevance:
    Every call emits a ``VENDING_CONFIG_TRACE`` log record with the source
    path and settings checksum, tying each report to the settings that
    produced it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from vending_config.loader import compute_checksum, load_settings, parse_settings
from vending_config.schema import AggregationSettings, EngineSettings

_logger = logging.getLogger("vending_kernel.config")

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "defaults.yaml"


def get_engine_settings(path: Path | str | None = None) -> EngineSettings:
    """Load engine settings from ``path``, or the packaged defaults when omitted.

    Raises:
        FileNotFoundError: ``path`` does not exist.
        ConfigurationError: the YAML contains unknown keys or invalid values.
    """
    source = Path(path) if path is not None else DEFAULT_SETTINGS_PATH
    settings = load_settings(source)

    _logger.info(
        "VENDING_CONFIG_TRACE",
        extra={
            "trace_type": "VENDING_CONFIG_TRACE",
            "source": str(source),
            "checksum": compute_checksum(settings),
            "variance_flag_threshold_cents": settings.variance_flag_threshold_cents,
            "reference_month_days": settings.reference_month_days,
        },
    )
    return settings


__all__ = [
    "AggregationSettings",
    "DEFAULT_SETTINGS_PATH",
    "EngineSettings",
    "compute_checksum",
    "get_engine_settings",
    "parse_settings",
]
