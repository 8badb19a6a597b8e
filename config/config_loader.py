"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All modules access configuration through this, never hardcoded values.
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


def get_engine_config() -> Dict[str, Any]:
    """Returns the engine block (temporal scale, sample limit, noise gate)."""
    return load_config()["engine"]


def get_dataset_profiles() -> Dict[str, Dict[str, Any]]:
    """Returns the dataset profiles keyed by profile name."""
    return load_config()["dataset_profiles"]


def get_rule_quality_config() -> Dict[str, Any]:
    """Returns the rule_quality block (check weights and thresholds)."""
    return load_config()["rule_quality"]


def get_severity_weights() -> Dict[str, float]:
    """Returns per-severity weights used by the compliance score."""
    return load_config()["severity_weights"]


def get_compliance_score_config() -> Dict[str, float]:
    """Returns score status boundaries for the compliance score."""
    return load_config()["compliance_score"]


def get_confidence_config() -> Dict[str, Any]:
    """Returns the violation confidence scoring block."""
    return load_config()["confidence"]


def get_rule_pack(pack_name: str) -> list[Dict[str, Any]]:
    """
    Returns the raw rule definitions of a prebuilt rule pack.

    Raises:
        KeyError: If pack_name is not in the config.
    """
    packs = load_config()["rule_packs"]
    if pack_name not in packs:
        raise KeyError(
            f"No rule pack named '{pack_name}'. "
            f"Available: {list(packs.keys())}"
        )
    return packs[pack_name]


def get_all_rule_packs() -> list[str]:
    """Returns all configured rule pack names."""
    return list(load_config()["rule_packs"].keys())


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
