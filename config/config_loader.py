"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All modules access configuration through this; thresholds are never hardcoded.
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to config/ relative to this file.

    Returns:
        Full config dictionary.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.path.join(os.path.dirname(__file__), "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def get_run_config() -> Dict[str, Any]:
    """Returns the run block (asof_month, lookback_months)."""
    return load_config()["run"]


def get_reconciliation_config() -> Dict[str, Any]:
    """Returns the reconciliation block."""
    return load_config()["reconciliation"]


def get_plan_coverage_config() -> Dict[str, Any]:
    """Returns the plan_coverage block."""
    return load_config()["plan_coverage"]


def get_history_stats_config() -> Dict[str, Any]:
    """Returns the history_stats block."""
    return load_config()["history_stats"]


def get_confidence_config() -> Dict[str, Any]:
    """Returns the confidence block."""
    return load_config()["confidence"]


def get_anomaly_severity_table() -> list[Dict[str, Any]]:
    """Returns the anomaly severity table."""
    return load_config()["anomaly_severity"]


def get_drift_monitoring_config() -> Dict[str, Any]:
    """Returns drift monitoring config."""
    return load_config()["drift_monitoring"]


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
