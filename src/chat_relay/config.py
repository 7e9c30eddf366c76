"""Configuration loading utilities for the chat relay.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CHAT_RELAY_CONFIG
3. Fallback to "config/default.yaml"

It also supports overrides from environment variables with prefix
``CHAT_RELAY__`` (e.g., CHAT_RELAY__INFERENCE__MODEL=llama-3.1-8b-instant).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "CHAT_RELAY__"

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful, friendly assistant. Provide concise and accurate responses."
)

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "inference": {
        "base_url": "http://127.0.0.1:8080/v1/chat/completions",
        "model": "llama-3.3-70b-instruct",
        "api_key_env": "INFERENCE_API_KEY",
        "max_tokens": 1024,
        "temperature": 0.7,
        "timeout": 60.0,
    },
    "relay": {
        "system_prompt": DEFAULT_SYSTEM_PROMPT,
        "turn_timeout": 30.0,
        "shutdown_timeout": 10.0,
    },
    "memory": {"data_dir": "data/sessions"},
}


def _coerce(value: str) -> Any:
    # Attempt to parse simple types (bool, int, float)
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix CHAT_RELAY__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., CHAT_RELAY__RELAY__TURN_TIMEOUT -> cfg["relay"]["turn_timeout"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)
    return cfg


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the chat relay.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CHAT_RELAY_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Built-in defaults merged with the file contents, with environment
        overrides applied last.
    """
    if path is None:
        path = os.environ.get("CHAT_RELAY_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, cfg))
