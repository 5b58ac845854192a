"""Configuration loading and validation for the tile proxy."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, TypedDict

from typing_extensions import NotRequired

from tileproxy.credentials import EARTHENGINE_READONLY_SCOPE
from tileproxy.utils import normalize_proxy_prefix

logger = logging.getLogger("ee_tile_proxy")


class ProxySettings(TypedDict):
    """Type definition for the validated proxy configuration."""

    project_id: str
    api_base_url: str
    proxy_prefix: str  # e.g. "/api/ee-tiles"
    scopes: List[str]
    request_timeout: float  # seconds, applied to every upstream call
    sweep_interval: float  # seconds between expiry sweeps, 0 disables
    config_path: NotRequired[str]  # Only when loaded from a file


DEFAULT_PROJECT_ID = "california-weather-maps"
DEFAULT_API_BASE_URL = "https://earthengine.googleapis.com"
DEFAULT_PROXY_PREFIX = "/api/ee-tiles"
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_SWEEP_INTERVAL = 0.0

KNOWN_KEYS = (
    "project_id",
    "api_base_url",
    "proxy_prefix",
    "scopes",
    "request_timeout",
    "sweep_interval",
)

# Environment variable -> settings key
ENV_OVERRIDES = {
    "GCP_PROJECT_ID": "project_id",
    "EE_API_BASE_URL": "api_base_url",
    "TILE_PROXY_PREFIX": "proxy_prefix",
    "TILE_REQUEST_TIMEOUT": "request_timeout",
    "SESSION_SWEEP_INTERVAL": "sweep_interval",
}


def default_settings() -> Dict[str, Any]:
    return {
        "project_id": DEFAULT_PROJECT_ID,
        "api_base_url": DEFAULT_API_BASE_URL,
        "proxy_prefix": DEFAULT_PROXY_PREFIX,
        "scopes": [EARTHENGINE_READONLY_SCOPE],
        "request_timeout": DEFAULT_REQUEST_TIMEOUT,
        "sweep_interval": DEFAULT_SWEEP_INTERVAL,
    }


def _read_config_file(config_path: str) -> Dict[str, Any]:
    config_file = Path(config_path)
    if not config_file.exists():
        raise ValueError(f"Config file not found: {config_path}")

    try:
        with open(config_file, "r") as f:
            config_data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}")
    except Exception as e:
        raise ValueError(f"Error reading config file: {e}")

    if not isinstance(config_data, dict):
        raise ValueError("Config file must contain a JSON object")
    return config_data


def _env_values(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for var, key in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        if key in ("request_timeout", "sweep_interval"):
            try:
                values[key] = float(raw)
            except ValueError:
                values[key] = raw  # reported by validation
        else:
            values[key] = raw
    return values


def validate_settings(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Validate a merged settings mapping.

    Returns:
        Validated settings (proxy_prefix normalized, numbers as float).

    Raises:
        ValueError: Listing every problem found, not just the first one.
    """
    errors: List[str] = []
    validated: Dict[str, Any] = {}

    for key in ("project_id", "api_base_url"):
        value = raw.get(key)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"• '{key}' must be a non-empty string, got {value!r}")
        else:
            validated[key] = value.strip()

    api_base_url = validated.get("api_base_url")
    if api_base_url and not api_base_url.startswith(("http://", "https://")):
        errors.append(f"• 'api_base_url' must be an http(s) URL, got {api_base_url!r}")

    prefix = raw.get("proxy_prefix")
    if not isinstance(prefix, str):
        errors.append(f"• 'proxy_prefix' must be a string, got {type(prefix).__name__}")
    else:
        try:
            validated["proxy_prefix"] = normalize_proxy_prefix(prefix)
        except ValueError as e:
            errors.append(f"• 'proxy_prefix': {e}")

    scopes = raw.get("scopes")
    if (
        not isinstance(scopes, list)
        or not scopes
        or not all(isinstance(s, str) and s for s in scopes)
    ):
        errors.append("• 'scopes' must be a non-empty list of strings")
    else:
        validated["scopes"] = list(scopes)

    timeout = raw.get("request_timeout")
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        errors.append(f"• 'request_timeout' must be a positive number, got {timeout!r}")
    else:
        validated["request_timeout"] = float(timeout)

    sweep = raw.get("sweep_interval")
    if isinstance(sweep, bool) or not isinstance(sweep, (int, float)) or sweep < 0:
        errors.append(f"• 'sweep_interval' must be a number >= 0, got {sweep!r}")
    else:
        validated["sweep_interval"] = float(sweep)

    if errors:
        error_count = len(errors)
        error_summary = f"Found {error_count} configuration error{'s' if error_count > 1 else ''}:\n\n"
        raise ValueError(error_summary + "\n".join(errors))

    return validated


def load_proxy_config(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    show_warnings: bool = True,
) -> ProxySettings:
    """
    Load proxy settings from defaults, an optional JSON file and the environment.

    Later sources win: defaults < config file < environment variables.

    Expected file format (every key optional):
    {
        "project_id": "my-gcp-project",
        "api_base_url": "https://earthengine.googleapis.com",
        "proxy_prefix": "/api/ee-tiles",
        "scopes": ["https://www.googleapis.com/auth/earthengine.readonly"],
        "request_timeout": 30,
        "sweep_interval": 0
    }

    Raises:
        ValueError: If the file is missing/invalid or any value fails validation.
    """
    if environ is None:
        environ = os.environ

    merged = default_settings()
    warnings: List[str] = []

    if config_path:
        file_values = _read_config_file(config_path)
        for key in file_values:
            if key not in KNOWN_KEYS:
                warnings.append(f"• Unknown config key '{key}' is ignored")
        merged.update({k: v for k, v in file_values.items() if k in KNOWN_KEYS})

    merged.update(_env_values(environ))

    validated = validate_settings(merged)
    if config_path:
        validated["config_path"] = str(Path(config_path).resolve())

    if warnings and show_warnings:
        logger.warning("Configuration warnings:")
        for warning in warnings:
            logger.warning(warning)

    settings: ProxySettings = validated  # type: ignore[assignment]
    return settings
