"""
Configuration management for the dithering tools.
Handles loading, saving, and managing default dither settings.
"""

import copy
import json
import logging
import os
from typing import Any, Optional, Dict
from pathlib import Path

__all__ = [
    'ConfigManager',
]

logger = logging.getLogger(__name__)


class ConfigManager:
    """Manages dither defaults, last used paths and recent files."""

    DEFAULT_CONFIG = {
        # Default dither settings
        "defaults": {
            "algorithm": "floyd-steinberg",
            "palette": "monochrome",
            "strength": 1.0,
            "serpentine": True,
            "gamma": 1.0,
            "contrast": 1.0,
            "brightness": 0.0,
            "saturation": 1.0,
            "seed": 42,
            "bayer_size": None  # None means the size named by the Bayer variant
        },

        # Last used paths
        "paths": {
            "last_input_dir": None,
            "last_save_dir": None
        },

        # Recent files (keep last 10)
        "recent_files": []
    }

    def __init__(self, config_file: str = "config.json"):
        """
        Initialize config manager. Nothing is written until save() is called.

        Args:
            config_file: Path to config file
        """
        self.config_file = config_file
        self.config = self._load_config()

    def _load_config(self) -> Dict:
        """Load config from file merged over the defaults."""
        defaults = copy.deepcopy(self.DEFAULT_CONFIG)
        if not os.path.exists(self.config_file):
            return defaults

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Error loading config {self.config_file}: {e}; using defaults")
            return defaults

        if not isinstance(loaded, dict):
            logger.warning(f"Config {self.config_file} is not a JSON object; using defaults")
            return defaults
        # Merge with defaults to handle new settings
        return self._merge_configs(defaults, loaded)

    def _merge_configs(self, default: Dict, loaded: Dict) -> Dict:
        """
        Recursively merge loaded config with defaults.
        Ensures all default keys exist even if not in loaded config.
        """
        for key, value in default.items():
            if key in loaded:
                if isinstance(value, dict) and isinstance(loaded[key], dict):
                    default[key] = self._merge_configs(value, loaded[key])
                else:
                    default[key] = loaded[key]
        return default

    def save(self) -> bool:
        """Save current config to file."""
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=4)
            return True
        except OSError as e:
            logger.warning(f"Error saving config {self.config_file}: {e}")
            return False

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Get config value by nested keys.

        Example:
            config.get("defaults", "algorithm")  # "floyd-steinberg"
        """
        value = self.config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, *keys: str, value: Any):
        """
        Set config value by nested keys.

        Example:
            config.set("defaults", "strength", value=0.8)
        """
        if len(keys) == 0:
            return

        current = self.config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def get_defaults(self) -> Dict:
        return dict(self.get("defaults", default={}))

    def update_last_path(self, path_type: str, filepath: str):
        """
        Update last used directory for a path type.

        Args:
            path_type: "input" or "save"
            filepath: File path to extract directory from
        """
        if filepath:
            directory = str(Path(filepath).parent)
            self.set("paths", f"last_{path_type}_dir", value=directory)

    def get_last_path(self, path_type: str) -> Optional[str]:
        return self.get("paths", f"last_{path_type}_dir")

    def add_recent_file(self, filepath: str, max_recent: int = 10):
        recent = list(self.get("recent_files", default=[]))

        if filepath in recent:
            recent.remove(filepath)
        recent.insert(0, filepath)

        self.set("recent_files", value=recent[:max_recent])

    def get_recent_files(self, max_count: int = 10) -> list:
        """Recent files that still exist on disk, newest first."""
        recent = self.get("recent_files", default=[])
        existing = [f for f in recent if os.path.exists(f)]
        return existing[:max_count]

    def clear_recent_files(self):
        self.set("recent_files", value=[])
