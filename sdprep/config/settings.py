"""Settings storage for application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sdprep.domain.models import GIB, TIB, RiskPolicy


SETTINGS_PATH = Path(
    os.environ.get(
        "SDPREP_SETTINGS_PATH",
        Path.home() / ".config" / "sdprep" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_LABEL = "MICROPYTHON"
DEFAULT_RESERVED_MIB = 32
DEFAULT_MINIMUM_USABLE_MIB = 64
DEFAULT_UNMOUNT_ATTEMPTS = 3
DEFAULT_UNMOUNT_DELAY_SECONDS = 0.25
DEFAULT_NODE_WAIT_ATTEMPTS = 20
DEFAULT_NODE_WAIT_INTERVAL_SECONDS = 0.25

DEFAULT_SETTINGS: dict[str, Any] = {
    "default_label": DEFAULT_LABEL,
    "safe_threshold": 5,
    "plausible_media_ceiling_bytes": 512 * GIB,
    "restrict_mode": True,
    "large_capacity_cutoff_bytes": TIB,
    "sd_only": False,
    "require_retype_for_caution": True,
    "minimum_usable_mib": DEFAULT_MINIMUM_USABLE_MIB,
    "reserved_mib": DEFAULT_RESERVED_MIB,
    "unmount_attempts": DEFAULT_UNMOUNT_ATTEMPTS,
    "unmount_delay_seconds": DEFAULT_UNMOUNT_DELAY_SECONDS,
    "node_wait_attempts": DEFAULT_NODE_WAIT_ATTEMPTS,
    "node_wait_interval_seconds": DEFAULT_NODE_WAIT_INTERVAL_SECONDS,
}

POLICY_KEYS = (
    "safe_threshold",
    "plausible_media_ceiling_bytes",
    "restrict_mode",
    "large_capacity_cutoff_bytes",
    "sd_only",
    "require_retype_for_caution",
    "minimum_usable_mib",
    "reserved_mib",
)


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings(path: Path | None = None) -> None:
    path = path or SETTINGS_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    try:
        return float(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def load_risk_policy(**overrides: Any) -> RiskPolicy:
    """Build a RiskPolicy from settings; ``None`` overrides are ignored."""
    values: dict[str, Any] = {}
    for key in POLICY_KEYS:
        default = DEFAULT_SETTINGS[key]
        if isinstance(default, bool):
            values[key] = get_bool(key, default)
        else:
            values[key] = get_int(key, default)
    for key, value in overrides.items():
        if key not in POLICY_KEYS:
            raise KeyError(f"Unknown policy setting: {key}")
        if value is not None:
            values[key] = value
    return RiskPolicy(**values)


load_settings()
