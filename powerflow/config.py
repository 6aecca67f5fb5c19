"""Configuration management for Powerflow."""

import copy
import os
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG: dict[str, Any] = {
    "sampling": {
        "interval": 2.0,  # Foreground interval, clamped to >= 1.5s
        "background_interval": 10.0,
        "warmup_samples": 12,
        "warmup_duration": 60,
    },
    "display": {
        "status_bar_item": "system",  # system | screen | heatpipe
        "status_bar_format": "{power} | {battery}",
        "show_charging_power": True,
        "visible": False,
    },
    "consistency": {
        "absolute_floor": 1.0,  # W
        "relative_tolerance": 0.3,
        "rate_noise": 0.05,  # W, polarity learning threshold
        "battery_power_noise": 0.01,  # W
        "max_attempts": 3,
        "retry_interval": 0.4,  # s between resample requests while holding
    },
    "calibration": {
        "store": "data/powerflow/calibration.yaml",
        "model_id": None,  # None = detect from DMI
    },
    "sources": {
        "registers": {
            "kind": "static",  # static | none
            "path": None,  # YAML register dump for the static transport
        },
        "properties": {
            "kind": "sysfs",  # sysfs | static | none
            "root": "/sys/class/power_supply",
            "path": None,  # YAML property bag for the static source
        },
        "generic_temperature": True,
        "thermal_pressure": None,  # Cooling device dir, e.g. /sys/class/thermal/cooling_device0
        "time_remaining": True,
    },
    "history": {
        "capacity": 600,
    },
    "metrics": {
        "enabled": False,
        "folder": "data/powerflow/metrics",
    },
    "logging": {
        "level": "INFO",
    },
}


def load_config(config_path: str | None = None) -> dict[str, Any]:
    """Load configuration from file or environment."""
    if config_path is None:
        config_path = os.environ.get("POWERFLOW_CONFIG")
        if config_path is None:
            for candidate in ["config.yaml", "config.local.yaml", "config.template.yaml"]:
                if Path(candidate).exists():
                    config_path = candidate
                    break
            else:
                config_path = "config.yaml"

    config_file = Path(config_path)
    user_config = {}

    if config_file.exists():
        with open(config_file) as f:
            user_config = yaml.safe_load(f) or {}

    return _deep_merge(copy.deepcopy(DEFAULT_CONFIG), user_config)


def save_config(config: dict[str, Any], config_path: str = "config.yaml") -> None:
    """Save configuration to YAML file."""
    with open(config_path, "w") as f:
        yaml.dump(config, f, default_flow_style=False, indent=2)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
