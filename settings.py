import copy
import os
from typing import Any, Dict, Optional

import tomli
import tomli_w

CONFIG_PATH = "config.toml"

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    "bot": {
        "discord_token": "YOUR_DISCORD_TOKEN",
        "presence": "Keeping an eye on your links.",
        "debug_mode": False,
        "scan_workers": 3,
        "check_cooldown_seconds": 30,
    },
    "urlscan": {
        "api_key": "YOUR_URLSCAN_API_KEY",
        "visibility": "public",
        "poll_interval_seconds": 10,
        "max_polls": 12,
    },
    "virustotal": {
        "api_key": "YOUR_VIRUSTOTAL_API_KEY",
        "poll_interval_seconds": 15,
        "max_polls": 6,
    },
    "cache": {
        "path": "scanned_urls.json",
        "max_age_hours": 24,
    },
    "shortener": {
        "history_path": "shortened_urls.json",
    },
    "structure": {
        "allowlist_path": "allowlist.json",
        "logging_dir": "logs",
        "max_log_lines": 5000,
    },
}


class ConfigError(Exception):
    """Raised when config.toml is missing or cannot be parsed."""


def _merge_defaults(defaults: Dict[str, Any], loaded: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in loaded.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def write_default_config(path: str = CONFIG_PATH):
    with open(path, "wb") as f:
        tomli_w.dump(DEFAULT_CONFIG, f)


def load_config(path: str = CONFIG_PATH) -> Dict[str, Any]:
    """Read config.toml, filling any missing keys from DEFAULT_CONFIG.

    A missing file is replaced by the defaults and reported as a ConfigError
    so the operator fills in the tokens before the bot starts.
    """
    if not os.path.exists(path):
        write_default_config(path)
        raise ConfigError(f"Default {path} created. Please edit it with your settings and restart the bot.")

    try:
        with open(path, "rb") as f:
            loaded = tomli.load(f)
    except tomli.TOMLDecodeError as e:
        raise ConfigError(f"Failed to load {path}: {e}") from e

    return _merge_defaults(DEFAULT_CONFIG, loaded)


def get_api_key(config: Dict[str, Any], section: str, env_var: str) -> Optional[str]:
    #environment wins over the file
    key = os.getenv(env_var) or config.get(section, {}).get("api_key")
    if not key or key.startswith("YOUR_"):
        return None
    return key
