"""
WADM - Configuration Manager
============================
Handles loading and saving of host configuration from config.yaml.

The file carries three sections:

1. web       - Bind address and port for the console
2. system    - Host-level flags; ``developer_mode`` gates the terminal
3. terminal  - Shell command and PTY parameters for terminal sessions

Environment variables (optionally loaded from .env by app.py) override
file values: WADM_HOST, WADM_PORT, WADM_SHELL.

Usage:
    config = ConfigManager(project_dir="/opt/wadm")
    settings = config.load()                 # Returns merged config dict
    config.update({"terminal": {...}})       # Updates config.yaml
    config.set_developer_mode(True)          # Administrative toggle
"""

import os
import yaml


# Default configuration values used when config.yaml is missing or incomplete.
DEFAULTS = {
    "web": {
        "port": 8080,
        "host": "0.0.0.0",
    },
    "system": {
        "developer_mode": False,
    },
    "terminal": {
        "shell": "/bin/bash",
        "args": ["--login"],
        "term": "xterm-256color",
        "read_size": 4096,
        "max_message_size": 2 * 1024 * 1024,
    },
}

# Sections persisted to config.yaml. Anything else is dropped on save.
SECTIONS = ("web", "system", "terminal")

# Environment overrides: variable name -> (section, key, converter)
ENV_OVERRIDES = {
    "WADM_HOST": ("web", "host", str),
    "WADM_PORT": ("web", "port", int),
    "WADM_SHELL": ("terminal", "shell", str),
}


class ConfigManager:
    """
    Configuration manager for the WADM host.

    The file is re-read on every ``load()``. The developer mode flag is
    owned by the host and may be changed by an administrator at any time,
    so callers must never cache it across terminal handshakes.

    Attributes:
        project_dir: Root directory of the WADM installation.
        config_path: Full path to config.yaml.
    """

    def __init__(self, project_dir: str):
        """
        Initialize the config manager.

        Args:
            project_dir: Absolute path to the WADM project root directory.
        """
        self.project_dir = project_dir
        self.config_path = os.path.join(project_dir, "config.yaml")

    def load(self) -> dict:
        """
        Load and merge configuration from config.yaml with defaults.

        Missing values are filled from DEFAULTS, then environment overrides
        are applied on top.

        Returns:
            A dictionary containing the full configuration. If the file
            could not be parsed, the defaults are returned and the error
            is recorded under ``_config_error``.
        """
        config = _deep_copy(DEFAULTS)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    user_config = yaml.safe_load(f) or {}
                if not isinstance(user_config, dict):
                    raise yaml.YAMLError("top-level value must be a mapping")
                _deep_merge(config, user_config)
            except (yaml.YAMLError, OSError) as e:
                config = _deep_copy(DEFAULTS)
                config["_config_error"] = str(e)

        _apply_env_overrides(config)
        return config

    def save(self, config: dict) -> None:
        """
        Save configuration back to config.yaml.

        Only the known sections are written. Internal keys (prefixed
        with '_') are stripped before writing.

        Args:
            config: Configuration dictionary to save.
        """
        clean = {}
        for section in SECTIONS:
            if section in config:
                clean[section] = config[section]

        os.makedirs(os.path.dirname(self.config_path) or ".", exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.dump(
                clean,
                f,
                default_flow_style=False,
                allow_unicode=True,
                sort_keys=False,
            )

    def update(self, updates: dict) -> dict:
        """
        Partially update configuration and save.

        Args:
            updates: Dictionary of settings to update (can be partial).

        Returns:
            The full updated configuration.
        """
        config = self.load()
        config.pop("_config_error", None)
        _deep_merge(config, updates)
        self.save(config)
        return config

    # -- Developer mode ---------------------------------------------------------

    def is_developer_mode(self) -> bool:
        """
        Read the developer mode flag fresh from disk.

        A corrupted configuration file yields False: terminal access is
        only ever granted on an explicit, readable ``true``.
        """
        config = self.load()
        if "_config_error" in config:
            return False
        return config["system"].get("developer_mode") is True

    def set_developer_mode(self, enabled: bool) -> dict:
        """Enable or disable developer mode. Returns the updated config."""
        return self.update({"system": {"developer_mode": bool(enabled)}})


# -- Helper Functions ---------------------------------------------------------

def _deep_copy(d: dict) -> dict:
    """Create a deep copy of a nested dictionary."""
    result = {}
    for key, value in d.items():
        if isinstance(value, dict):
            result[key] = _deep_copy(value)
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _deep_merge(base: dict, override: dict) -> None:
    """
    Recursively merge 'override' into 'base' (in-place).

    For nested dicts, values are merged recursively.
    For all other types, override replaces base.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _apply_env_overrides(config: dict) -> None:
    """Apply WADM_* environment variables on top of the loaded config."""
    for var, (section, key, convert) in ENV_OVERRIDES.items():
        raw = os.environ.get(var)
        if not raw:
            continue
        try:
            config.setdefault(section, {})[key] = convert(raw)
        except ValueError:
            config["_env_error"] = f"{var}={raw!r} is not a valid value"
