"""
Configuration Loading

YAML configuration shared by the ledger components. Files live in the
repository's config/ directory unless PMIS_CONFIG_DIR points elsewhere.
"""

import copy
import logging
import os
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

THRESHOLDS_FILE = "budget_thresholds.yaml"

DEFAULT_THRESHOLDS = {
    "alerts": {
        "listing_threshold": 75,
        "bands": {
            "warning": 75,
            "high": 90,
            "critical": 100,
        },
    },
    "forecast": {
        "risk_bands": {
            "medium": 50,
            "high": 75,
            "critical": 90,
        },
    },
    "ledger": {
        "default_alert_threshold_percent": 90,
    },
    "transactions": {
        "max_attempts": 25,
        "approval_control_threshold": 50000,
    },
}


def default_config_dir() -> Path:
    """Get the configuration directory."""
    env_dir = os.getenv("PMIS_CONFIG_DIR")
    if env_dir:
        return Path(env_dir)
    return Path(__file__).parent.parent.parent / "config"


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_yaml_config(config_dir: Path | str | None, filename: str, defaults: dict) -> dict:
    """Load a YAML file layered over built-in defaults.

    Args:
        config_dir: Directory to look in (None for the default directory)
        filename: File name inside the directory
        defaults: Values used for any key the file does not set

    Returns:
        Merged configuration dictionary
    """
    config_path = Path(config_dir) if config_dir else default_config_dir()
    config_file = config_path / filename

    if not config_file.exists():
        logger.debug(f"Config file not found, using defaults: {config_file}")
        return copy.deepcopy(defaults)

    with open(config_file) as f:
        loaded = yaml.safe_load(f) or {}

    return _merge(defaults, loaded)


def load_thresholds(config_dir: Path | str | None = None) -> dict:
    return load_yaml_config(config_dir, THRESHOLDS_FILE, DEFAULT_THRESHOLDS)
