import copy
import json
import os
from pathlib import Path
from typing import Optional

from netaccess.errors import ConfigError

CONFIG_ENV = "NETACCESS_CONFIG"
DEFAULT_CONFIG_PATH = Path("config") / "settings.json"

DURATIONS = {"hour": 1, "day": 2, "month": 3}
MIN_POLL_INTERVAL = 30

DEFAULT_CONFIG: dict = {
    "log_level": "INFO",
    "log_dir": "logs",
    "portal": {
        "base_url": "https://netaccess.iitm.ac.in",
        "verify_tls": True,
    },
    "http": {
        "timeout_seconds": 5,
    },
    "approve": {
        "duration": "day",
    },
    "monitor": {
        "poll_interval_seconds": 300,
        "max_backoff_seconds": 3600,
        "check_expiry": True,
    },
    "address": {
        "probe_host": "netaccess.iitm.ac.in",
        "static": "",
    },
    "debug": {
        "save_response": False,
        "response_dir": "logs/portal_responses",
        "max_response_bytes": 32768,
    },
}


def resolve_config_path(path: Optional[Path] = None) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get(CONFIG_ENV)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def merge_config(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_config(config: dict) -> dict:
    duration = config["approve"].get("duration")
    if duration not in DURATIONS:
        raise ConfigError(
            f"approve.duration must be one of {', '.join(DURATIONS)}, got {duration!r}"
        )

    try:
        timeout = float(config["http"]["timeout_seconds"])
        poll_interval = float(config["monitor"]["poll_interval_seconds"])
        max_backoff = float(config["monitor"]["max_backoff_seconds"])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric setting: {exc}") from exc

    if timeout <= 0:
        raise ConfigError("http.timeout_seconds must be positive")
    if poll_interval < MIN_POLL_INTERVAL:
        raise ConfigError(
            f"monitor.poll_interval_seconds is less than minimum allowed {MIN_POLL_INTERVAL}"
        )
    if max_backoff < poll_interval:
        raise ConfigError("monitor.max_backoff_seconds must not be below the poll interval")
    return config


def load_config(path: Optional[Path] = None) -> dict:
    config_path = resolve_config_path(path)
    if not config_path.is_file():
        if path:
            raise ConfigError(f"Config file not found: {config_path}")
        return validate_config(copy.deepcopy(DEFAULT_CONFIG))

    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Failed to read config {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be an object: {config_path}")
    return validate_config(merge_config(DEFAULT_CONFIG, data))
