"""Configuration management for LotSync.

This module handles loading and saving application configuration to/from
a JSON file. The config directory can be customized via CLI argument.

CRITICAL: This module must have NO Textual/Flask dependencies.
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

from .conflicts import DEFAULT_SKIP_FIELDS
from .retry import RetryPolicy
from .validation import ValidationError

logger = logging.getLogger(__name__)

__all__ = ["Config"]

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "lotsync"

STORE_BACKENDS = ("sqlite", "json", "memory")
INTERFACES = ("tui", "cli", "web")

DEFAULT_SYNC_CONFIG: Dict[str, Any] = {
    "interval_seconds": 30,
    "max_attempts": 3,
    "base_delay_seconds": 1.0,
    "max_delay_seconds": 30.0,
    "jitter": 0.25,
}

DEFAULT_TUI_COLORS: Dict[str, str] = {
    "focused": "#00ff00",
    "unfocused": "blue",
    "local": "green",
    "server": "cyan",
}


class Config:
    """Manages application configuration stored in JSON format.

    Attributes:
        config_dir: Path to the configuration directory
        config_file: Path to config.json
        config_data: Loaded configuration
    """

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom config directory path. If None, uses ~/.config/lotsync/
        """
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / "config.json"
        self.config_data = self.load_config()

    def _default_config(self) -> Dict[str, Any]:
        return {
            "database_file": str(self.config_dir / "lotsync.db"),
            "store_backend": "sqlite",
            "backend_url": None,
            "backend_api_key": None,
            "device_name": "lotsync",
            "default_interface": None,
            "skip_fields": sorted(DEFAULT_SKIP_FIELDS),
            "sync": copy.deepcopy(DEFAULT_SYNC_CONFIG),
            "tui_colors": dict(DEFAULT_TUI_COLORS),
        }

    def load_config(self) -> Dict[str, Any]:
        """Load configuration from file, creating it with defaults if missing.

        Unknown keys are kept; missing keys take their defaults. Invalid JSON
        falls back to the default configuration.
        """
        defaults = self._default_config()

        if not self.config_file.exists():
            self.save_config(defaults)
            return defaults

        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                loaded = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Could not read {self.config_file}: {e}. Using defaults.")
            return defaults

        if not isinstance(loaded, dict):
            logger.warning(f"{self.config_file} does not contain an object. Using defaults.")
            return defaults

        merged = defaults
        for key, value in loaded.items():
            if key in ("sync", "tui_colors") and isinstance(value, dict):
                merged[key].update(value)
            else:
                merged[key] = value
        return merged

    def save_config(self, config: Dict[str, Any]) -> None:
        """Write configuration to config.json."""
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2, ensure_ascii=False)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        value = self.config_data.get(key)
        return value if value is not None else default

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value and save to file."""
        if key == "store_backend" and value not in STORE_BACKENDS:
            raise ValidationError(key, f"must be one of {', '.join(STORE_BACKENDS)}")
        if key == "default_interface" and value is not None and value not in INTERFACES:
            raise ValidationError(key, f"must be one of {', '.join(INTERFACES)}")
        self.config_data[key] = value
        self.save_config(self.config_data)

    def get_config_dir(self) -> Path:
        """Get the configuration directory path."""
        return self.config_dir

    def get_device_name(self) -> str:
        """Get the human-readable device name."""
        return self.get("device_name", "lotsync")

    # ===== Sync Configuration Methods =====

    def get_sync_config(self) -> Dict[str, Any]:
        """Get sync configuration."""
        return dict(self.config_data.get("sync") or DEFAULT_SYNC_CONFIG)

    def set_sync_value(self, key: str, value: Any) -> None:
        """Set a single sync setting."""
        if key not in DEFAULT_SYNC_CONFIG:
            raise ValidationError(key, "unknown sync setting")
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ValidationError(key, "must be a non-negative number")
        sync = self.get_sync_config()
        sync[key] = value
        self.set("sync", sync)

    def get_retry_policy(self) -> RetryPolicy:
        """Build the retry policy from sync configuration."""
        sync = self.get_sync_config()
        return RetryPolicy(
            max_retries=int(sync.get("max_attempts", 3)),
            base_delay=float(sync.get("base_delay_seconds", 1.0)),
            max_delay=float(sync.get("max_delay_seconds", 30.0)),
            jitter=float(sync.get("jitter", 0.25)),
        )

    def get_skip_fields(self) -> FrozenSet[str]:
        """Metadata fields excluded from conflict detection."""
        fields = self.get("skip_fields")
        if not isinstance(fields, list):
            return DEFAULT_SKIP_FIELDS
        return frozenset(str(f) for f in fields)

    def get_backend_url(self) -> Optional[str]:
        """Get the backend base URL, or None if not configured."""
        url = self.get("backend_url")
        return url.rstrip("/") if url else None

    def get_tui_colors(self) -> Dict[str, str]:
        """Get TUI colors from config."""
        colors = dict(DEFAULT_TUI_COLORS)
        configured = self.config_data.get("tui_colors")
        if isinstance(configured, dict):
            colors.update({k: str(v) for k, v in configured.items()})
        return colors
