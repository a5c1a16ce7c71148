"""Utility to load freshness settings overrides from a YAML file"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from freshwatch.models.freshness_settings import FreshnessSettings

logger = logging.getLogger(__name__)


def load_settings_overrides(settings_path: str | Path = "freshness.yaml") -> dict[str, Any]:
    """
    Load freshness settings overrides from YAML file

    The file is optional; a missing file yields no overrides. Keys must be
    recognized FreshnessSettings options.

    Args:
        settings_path: Path to the YAML file (default: freshness.yaml in project root)

    Returns:
        Mapping of option name to override value

    Raises:
        ValueError: If the file is not valid YAML or names unknown options
    """
    settings_path = Path(settings_path)
    overrides: dict[str, Any] = {}

    if settings_path.exists():
        try:
            with open(settings_path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in freshness settings: {e}") from e

        if data is not None:
            if not isinstance(data, dict):
                raise ValueError("Freshness settings file must contain a mapping")
            # Allow a top-level "freshness:" section or bare keys
            overrides = dict(data.get("freshness", data))

        unknown = set(overrides) - set(FreshnessSettings.model_fields)
        if unknown:
            raise ValueError(f"Unknown freshness settings: {sorted(unknown)}")

        logger.info(f"Loaded {len(overrides)} freshness setting override(s) from {settings_path}")
    else:
        logger.info(f"No freshness settings file at {settings_path}, using defaults")

    # Allow environment variable to override enable_auto_refresh
    auto_refresh_env = os.getenv("FRESHNESS_AUTO_REFRESH")
    if auto_refresh_env is not None:
        auto_refresh = auto_refresh_env.lower() in ("true", "1", "yes")
        logger.info(f"Overriding enable_auto_refresh from env: {auto_refresh}")
        overrides["enable_auto_refresh"] = auto_refresh

    return overrides
